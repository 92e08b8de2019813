import csv
import os

import nibabel as nib
import numpy as np

from .dataset import DEFAULT_MODALITY, DynamicDataSet

"""
This module provides input/output functions for the factor analysis tool.

NIfTI (Neuroimaging Informatics Technology Initiative) files are used for
both the dynamic input series and the factor images. The functions handle:
- Loading generic NIfTI files.
- Loading a 4D dynamic series into a `DynamicDataSet`, with the frame
  duration taken from the header (pixdim[4]) or given explicitly.
- Loading per-frame timing (start time and duration) from a text/CSV file.
- Saving a single-frame `DynamicDataSet` (e.g. a factor image) as NIfTI.
"""

_NIFTI_EXTENSIONS = (".nii.gz", ".nii")


def load_nifti_file(filepath: str):
    """
    Loads a NIfTI file.

    Args:
        filepath (str): Path to the NIfTI file.

    Returns:
        nibabel.nifti1.Nifti1Image: The loaded NIfTI image object.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not a valid NIfTI file.
    """
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"NIfTI file not found at: {filepath}")
    try:
        img = nib.load(filepath)
        return img
    except Exception as e:
        raise ValueError(f"Invalid NIfTI file: {filepath}. Error: {e}")


def data_set_name_from_path(filepath: str) -> str:
    """Returns the file name of `filepath` without its NIfTI extension."""
    name = os.path.basename(filepath)
    for extension in _NIFTI_EXTENSIONS:
        if name.lower().endswith(extension):
            return name[:-len(extension)]
    return os.path.splitext(name)[0]


def load_dynamic_series(filepath: str, frame_duration: float = None,
                        frame_times: tuple = None,
                        modality: str = DEFAULT_MODALITY) -> DynamicDataSet:
    """
    Loads a 4D NIfTI series as a `DynamicDataSet`.

    Args:
        filepath (str): Path to the 4D NIfTI file.
        frame_duration (float, optional): Duration of every frame in seconds.
            Defaults to the header's pixdim[4], or 1.0 s if that is not positive.
        frame_times (tuple, optional): (start_times, durations) arrays, e.g.
            from `load_frame_times`. Takes precedence over `frame_duration`.
        modality (str, optional): Modality label for the data set.

    Returns:
        DynamicDataSet: The loaded data set, named after the file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not a valid 4D NIfTI file or the frame
                    timing does not match the number of frames.
    """
    img = load_nifti_file(filepath)
    if img.ndim != 4:
        raise ValueError("Dynamic series must be a 4D NIfTI image.")

    zooms = img.header.get_zooms()
    if frame_times is not None:
        start_times, durations = frame_times
    else:
        start_times = None
        if frame_duration is None:
            frame_duration = float(zooms[3]) if len(zooms) > 3 and zooms[3] > 0 else 1.0
        durations = frame_duration

    return DynamicDataSet(
        img.get_fdata(),
        name=data_set_name_from_path(filepath),
        frame_start_times=start_times,
        frame_durations=durations,
        affine=img.affine,
        voxel_size=tuple(float(z) for z in zooms[:3]),
        modality=modality,
    )


def load_frame_times(filepath: str) -> tuple[np.ndarray, np.ndarray]:
    """
    Loads per-frame timing from a CSV or text file.

    The file should contain two columns: frame start time and frame duration
    (both in seconds), one row per frame. It can optionally have a header row.

    Args:
        filepath (str): Path to the frame timing file.

    Returns:
        tuple[np.ndarray, np.ndarray]: (start_times, durations).

    Raises:
        FileNotFoundError: If the specified file does not exist.
        ValueError: If the file format is incorrect, data is non-numeric,
                    durations are negative, or the file contains no data.
    """
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"Frame timing file not found at: {filepath}")

    start_times, durations = [], []
    try:
        with open(filepath, 'r', newline='') as f:
            if filepath.lower().endswith(".csv"):
                rows = list(csv.reader(f))
            else:
                rows = [line.split() for line in f]
    except OSError as e:
        raise ValueError(f"Error reading frame timing file {filepath}: {e}")

    for line_num, row in enumerate(rows, start=1):
        row = [part.strip() for part in row if part.strip()]
        if not row:  # Skip empty lines
            continue
        try:
            float(row[0])
        except ValueError:
            if not start_times:
                continue  # header row
            raise ValueError(f"Non-numeric data found in frame timing file: {filepath} at line {line_num}.")
        if len(row) != 2:
            raise ValueError(
                f"Incorrect format in frame timing file: {filepath} at line {line_num}. "
                f"Expected 2 columns, got {len(row)}."
            )
        try:
            start_times.append(float(row[0]))
            durations.append(float(row[1]))
        except ValueError:
            raise ValueError(f"Non-numeric data found in frame timing file: {filepath} at line {line_num}.")

    if not start_times:
        raise ValueError(f"No numeric data found in frame timing file: {filepath}")
    durations = np.array(durations)
    if np.any(durations < 0):
        raise ValueError(f"Frame durations must be non-negative in frame timing file: {filepath}")
    return np.array(start_times), durations


def save_nifti_image(data_set: DynamicDataSet, output_filepath: str):
    """
    Saves a data set as a NIfTI file using its own affine and voxel size.

    Single-frame data sets are written as 3D images, dynamic ones as 4D.
    The data type of the saved image is float32.

    Args:
        data_set (DynamicDataSet): The data set to save.
        output_filepath (str): The path where the NIfTI file will be saved.

    Raises:
        IOError: If the file could not be written.
    """
    data = data_set.data
    if data.shape[3] == 1:
        data = data[..., 0]

    header = nib.Nifti1Header()
    header.set_data_dtype(np.float32)
    new_nifti_image = nib.Nifti1Image(data.astype(np.float32), data_set.affine, header=header)
    zooms = list(data_set.voxel_size)
    if data.ndim == 4:
        zooms.append(float(data_set.frame_durations[0]))
    new_nifti_image.header.set_zooms(zooms)

    try:
        nib.save(new_nifti_image, output_filepath)
    except Exception as e:
        raise IOError(f"Could not save NIfTI image to {output_filepath}. Error: {e}")
