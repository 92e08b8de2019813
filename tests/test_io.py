import unittest
import numpy as np
import nibabel as nib
import os
import shutil
from fads.dataset import DynamicDataSet
from fads.io import (
    data_set_name_from_path,
    load_dynamic_series,
    load_frame_times,
    load_nifti_file,
    save_nifti_image,
)

# Helper function to create a dummy NIfTI file
def create_dummy_nifti(filename, data_shape, affine=np.eye(4), zooms=None, dtype=np.float32):
    """Creates a dummy NIfTI file for testing."""
    os.makedirs(os.path.dirname(filename), exist_ok=True)
    data = np.random.rand(*data_shape).astype(dtype)
    img = nib.Nifti1Image(data, affine)
    if zooms is not None:
        img.header.set_zooms(zooms)
    nib.save(img, filename)
    return filename

# Helper function to write a frame timing file
def create_timing_file(filename, content):
    os.makedirs(os.path.dirname(filename), exist_ok=True)
    with open(filename, 'w') as f:
        f.write(content)
    return filename

class TestIO(unittest.TestCase):
    def setUp(self):
        self.test_dir = "test_nifti_data_fads_io" # Use a unique name for this test suite
        os.makedirs(self.test_dir, exist_ok=True)

        self.nifti_3d_file = create_dummy_nifti(
            os.path.join(self.test_dir, "static.nii.gz"), (4, 3, 2)
        )
        self.nifti_4d_file = create_dummy_nifti(
            os.path.join(self.test_dir, "dynamic_series.nii.gz"), (4, 3, 2, 6),
            affine=np.diag([2.0, 2.0, 3.0, 1.0]), zooms=(2.0, 2.0, 3.0, 5.0)
        )
        self.invalid_nifti_format_file = create_timing_file(
            os.path.join(self.test_dir, "invalid_format.nii.gz"), "This is not a nifti file"
        )

    def tearDown(self):
        if os.path.exists(self.test_dir):
            shutil.rmtree(self.test_dir)

    # --- Tests for load_nifti_file ---
    def test_load_nifti_valid(self):
        img = load_nifti_file(self.nifti_3d_file)
        self.assertIsInstance(img, nib.Nifti1Image)
        self.assertEqual(img.shape, (4, 3, 2))

    def test_load_nifti_non_existent(self):
        with self.assertRaises(FileNotFoundError):
            load_nifti_file(os.path.join(self.test_dir, "non_existent.nii.gz"))

    def test_load_nifti_invalid_format_file(self):
        with self.assertRaises(ValueError):
            load_nifti_file(self.invalid_nifti_format_file)

    def test_data_set_name_from_path(self):
        self.assertEqual(data_set_name_from_path("/data/study_01.nii.gz"), "study_01")
        self.assertEqual(data_set_name_from_path("study.nii"), "study")
        self.assertEqual(data_set_name_from_path("series.img"), "series")

    # --- Tests for load_dynamic_series ---
    def test_load_dynamic_series_valid_4d(self):
        ds = load_dynamic_series(self.nifti_4d_file, modality="PET")
        self.assertIsInstance(ds, DynamicDataSet)
        self.assertEqual(ds.dim, (4, 3, 2, 6))
        self.assertEqual(ds.name, "dynamic_series")
        self.assertEqual(ds.modality, "PET")
        self.assertEqual(ds.voxel_size, (2.0, 2.0, 3.0))
        np.testing.assert_array_almost_equal(ds.affine, np.diag([2.0, 2.0, 3.0, 1.0]))
        # frame duration from pixdim[4]
        np.testing.assert_array_almost_equal(ds.frame_durations, np.full(6, 5.0))
        self.assertAlmostEqual(ds.get_midpoint_time(1), 7.5)

    def test_load_dynamic_series_explicit_frame_duration(self):
        ds = load_dynamic_series(self.nifti_4d_file, frame_duration=30.0)
        np.testing.assert_array_almost_equal(ds.frame_start_times, np.arange(6) * 30.0)

    def test_load_dynamic_series_zero_pixdim_defaults_to_one_second(self):
        path = create_dummy_nifti(
            os.path.join(self.test_dir, "no_timing.nii.gz"), (2, 2, 2, 3), zooms=(1.0, 1.0, 1.0, 0.0)
        )
        ds = load_dynamic_series(path)
        np.testing.assert_array_almost_equal(ds.frame_durations, np.ones(3))

    def test_load_dynamic_series_frame_times(self):
        start_times = np.array([0.0, 10.0, 20.0, 40.0, 60.0, 120.0])
        durations = np.array([10.0, 10.0, 20.0, 20.0, 60.0, 60.0])
        ds = load_dynamic_series(self.nifti_4d_file, frame_times=(start_times, durations))
        np.testing.assert_array_almost_equal(ds.frame_midpoints(), start_times + durations / 2.0)

    def test_load_dynamic_series_frame_times_length_mismatch(self):
        with self.assertRaises(ValueError):
            load_dynamic_series(self.nifti_4d_file, frame_times=(np.zeros(3), np.ones(3)))

    def test_load_dynamic_series_rejects_3d(self):
        with self.assertRaises(ValueError):
            load_dynamic_series(self.nifti_3d_file)

    def test_load_dynamic_series_non_existent(self):
        with self.assertRaises(FileNotFoundError):
            load_dynamic_series(os.path.join(self.test_dir, "non_existent_series.nii.gz"))

    def test_load_dynamic_series_invalid_file(self):
        with self.assertRaises(ValueError): # Expecting error from load_nifti_file
            load_dynamic_series(self.invalid_nifti_format_file)

    # --- Tests for load_frame_times ---
    def test_load_frame_times_csv_with_header(self):
        path = create_timing_file(
            os.path.join(self.test_dir, "timing.csv"), "start,duration\n0,30\n30,30\n60,60\n"
        )
        start_times, durations = load_frame_times(path)
        np.testing.assert_array_equal(start_times, [0.0, 30.0, 60.0])
        np.testing.assert_array_equal(durations, [30.0, 30.0, 60.0])

    def test_load_frame_times_txt_whitespace(self):
        path = create_timing_file(
            os.path.join(self.test_dir, "timing.txt"), "0 10\n\n10\t10\n  20   40\n"
        )
        start_times, durations = load_frame_times(path)
        np.testing.assert_array_equal(start_times, [0.0, 10.0, 20.0])
        np.testing.assert_array_equal(durations, [10.0, 10.0, 40.0])

    def test_load_frame_times_wrong_column_count(self):
        path = create_timing_file(os.path.join(self.test_dir, "three.csv"), "0,10,5\n")
        with self.assertRaises(ValueError):
            load_frame_times(path)

    def test_load_frame_times_non_numeric(self):
        path = create_timing_file(os.path.join(self.test_dir, "bad.csv"), "0,10\n10,abc\n")
        with self.assertRaises(ValueError):
            load_frame_times(path)
        path = create_timing_file(os.path.join(self.test_dir, "bad_start.txt"), "0 10\nten 10\n")
        with self.assertRaises(ValueError):
            load_frame_times(path)

    def test_load_frame_times_empty(self):
        path = create_timing_file(os.path.join(self.test_dir, "empty.csv"), "start,duration\n")
        with self.assertRaises(ValueError):
            load_frame_times(path)

    def test_load_frame_times_negative_duration(self):
        path = create_timing_file(os.path.join(self.test_dir, "negative.csv"), "0,10\n10,-5\n")
        with self.assertRaises(ValueError):
            load_frame_times(path)

    def test_load_frame_times_non_existent(self):
        with self.assertRaises(FileNotFoundError):
            load_frame_times(os.path.join(self.test_dir, "non_existent.csv"))

    # --- Tests for save_nifti_image ---
    def test_save_single_frame_image_as_3d(self):
        affine = np.diag([2.0, 2.0, 3.0, 1.0])
        data_to_save = np.random.rand(4, 3, 2).astype(np.float32)
        ds = DynamicDataSet(data_to_save, name="factor 1", affine=affine, voxel_size=(2.0, 2.0, 3.0))
        output_path = os.path.join(self.test_dir, "factor_1.nii.gz")

        save_nifti_image(ds, output_path)
        self.assertTrue(os.path.exists(output_path))

        loaded_img = nib.load(output_path)
        self.assertEqual(loaded_img.shape, (4, 3, 2))
        np.testing.assert_array_almost_equal(loaded_img.get_fdata(), data_to_save, decimal=5)
        np.testing.assert_array_almost_equal(loaded_img.affine, affine)
        self.assertEqual(loaded_img.header.get_data_dtype(), np.float32)
        self.assertEqual(len(loaded_img.header.get_zooms()), 3)

    def test_save_dynamic_image_as_4d(self):
        data_to_save = np.random.rand(4, 3, 2, 5)
        ds = DynamicDataSet(data_to_save, frame_durations=12.0)
        output_path = os.path.join(self.test_dir, "dynamic_out.nii.gz")

        save_nifti_image(ds, output_path)
        loaded_img = nib.load(output_path)
        self.assertEqual(loaded_img.shape, (4, 3, 2, 5))
        np.testing.assert_array_almost_equal(loaded_img.get_fdata(), data_to_save, decimal=5)
        self.assertAlmostEqual(float(loaded_img.header.get_zooms()[3]), 12.0)

    def test_save_round_trip_through_loader(self):
        output_path = os.path.join(self.test_dir, "round_trip.nii.gz")
        original = load_dynamic_series(self.nifti_4d_file)
        save_nifti_image(original, output_path)
        reloaded = load_dynamic_series(output_path)
        np.testing.assert_array_almost_equal(reloaded.data, original.data, decimal=5)
        np.testing.assert_array_almost_equal(reloaded.frame_durations, original.frame_durations)

    def test_save_to_missing_directory_raises(self):
        ds = DynamicDataSet(np.zeros((2, 2, 2)))
        with self.assertRaises(IOError):
            save_nifti_image(ds, os.path.join(self.test_dir, "missing", "out.nii.gz"))


if __name__ == "__main__":
    unittest.main()
