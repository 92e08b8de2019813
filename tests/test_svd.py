import unittest
from unittest import mock
import numpy as np
from scipy import linalg
from fads.dataset import DynamicDataSet
from fads.svd import SVDResult, svd_factors


class TestSvdFactors(unittest.TestCase):
    def setUp(self):
        rng = np.random.default_rng(7)
        # rank 2 data: 5 x 4 x 3 voxels, 6 frames
        curves = rng.uniform(0.0, 10.0, size=(2, 6))
        weights = rng.uniform(0.0, 1.0, size=(60, 2))
        self.matrix = weights @ curves
        self.ds = DynamicDataSet(self.matrix.reshape((5, 4, 3, 6), order='F'))

    def test_static_data_set_returns_none(self):
        ds = DynamicDataSet(np.ones((3, 3, 3)))
        with self.assertLogs('fads.svd', level='WARNING') as cm:
            self.assertIsNone(svd_factors(ds))
        self.assertIn("need dynamic data set in order to perform factor analysis", cm.output[0])

    def test_singular_values_match_full_decomposition(self):
        result = svd_factors(self.ds)
        self.assertIsInstance(result, SVDResult)
        self.assertEqual(result.count, 6)
        expected = np.linalg.svd(self.matrix, compute_uv=False)
        np.testing.assert_allclose(result.factors, expected, rtol=1e-10, atol=1e-8)

    def test_rank_is_visible_in_singular_values(self):
        result = svd_factors(self.ds)
        self.assertGreater(result.factors[1], 1.0)
        np.testing.assert_allclose(result.factors[2:], 0.0, atol=1e-8 * result.factors[0])

    def test_fewer_voxels_than_frames_pads_with_zeros(self):
        data = np.arange(1.0, 1.0 + 2 * 5).reshape((2, 1, 1, 5))
        result = svd_factors(DynamicDataSet(data))
        self.assertEqual(result.count, 5)
        np.testing.assert_allclose(result.factors[2:], 0.0)
        expected = np.linalg.svd(data.reshape((2, 5)), compute_uv=False)
        np.testing.assert_allclose(result.factors[:2], expected)

    def test_decomposition_error_returns_none(self):
        with mock.patch.object(linalg, 'svdvals', side_effect=linalg.LinAlgError("SVD did not converge")), \
                self.assertLogs('fads.svd', level='WARNING') as cm:
            self.assertIsNone(svd_factors(self.ds))
        self.assertIn("SV decomp returned error: SVD did not converge", cm.output[0])

    def test_memory_error_building_matrix_returns_none(self):
        with mock.patch.object(DynamicDataSet, 'voxel_matrix', side_effect=MemoryError), \
                self.assertLogs('fads.svd', level='WARNING') as cm:
            self.assertIsNone(svd_factors(self.ds))
        self.assertIn("Failed to allocate 60x6 array", cm.output[0])

    def test_memory_error_in_factorization_returns_none(self):
        with mock.patch.object(linalg, 'qr', side_effect=MemoryError), \
                self.assertLogs('fads.svd', level='WARNING') as cm:
            self.assertIsNone(svd_factors(self.ds))
        self.assertIn("Failed to allocate 6x6 array", cm.output[0])

    def test_input_is_not_modified(self):
        before = self.ds.data.copy()
        svd_factors(self.ds)
        np.testing.assert_array_equal(self.ds.data, before)


if __name__ == '__main__':
    unittest.main()
