import logging
import os
import time

import numpy as np

from . import io
from .minimizer import STATUS_MESSAGES, STATUS_SUCCESS, STATUS_TERMINATED

"""
This module turns the outcome of a factor analysis into its two products:

- One single-frame image per factor holding that factor's coefficient at every
  voxel, attached to the source data set as a derived child.
- A plain-text report listing the factor curves frame by frame, preceded by
  a header naming the source data set and recording how the minimization
  ended.

It also provides a helper to save the factor images as NIfTI files.
"""

logger = logging.getLogger(__name__)

PROGRAM_NAME = "fads"


def create_factor_images(data_set, coefficients: np.ndarray) -> list:
    """
    Creates one image per factor from the coefficient block and attaches
    them to `data_set`.

    Each image is named "factor N" (1-based), carries the geometry, voxel
    size and modality of `data_set`, and has its display thresholds set to
    its own minimum and maximum.

    Args:
        data_set (DynamicDataSet): The analysed data set.
        coefficients (np.ndarray): (num_voxels, num_factors) coefficient matrix,
                                   voxels ordered x fastest, then y, then z.

    Returns:
        list[DynamicDataSet]: The factor images, in factor order.

    Raises:
        ValueError: If `coefficients` does not have one row per voxel.
        MemoryError: If an image cannot be allocated. No image is attached
                     to `data_set` in that case.
    """
    coefficients = np.asarray(coefficients)
    if coefficients.ndim != 2 or coefficients.shape[0] != data_set.num_voxels:
        raise ValueError(
            f"coefficients must have shape ({data_set.num_voxels}, num_factors), got {coefficients.shape}."
        )

    images = []
    for f in range(coefficients.shape[1]):
        volume = data_set.volume_from_voxel_vector(coefficients[:, f]).astype(np.float32)
        image = data_set.new_derived(volume, name=f"factor {f + 1}")
        image.calc_max_min()
        image.set_thresholds(image.global_min, image.global_max)
        images.append(image)

    # attach only once every image exists, so a failure leaves no children behind
    for image in images:
        data_set.add_child(image)
    return images


def format_status_lines(status: str, iterations: int) -> list[str]:
    """Returns the report lines recording how the minimization ended."""
    if status == STATUS_SUCCESS:
        return [f"# found minimal after {iterations} iterations"]
    if status == STATUS_TERMINATED:
        return [f"# user terminated minization after {iterations} iterations."]
    return [
        f"# No minimum after {iterations} iterations, exited with:",
        f"#    {STATUS_MESSAGES.get(status, status)}",
    ]


def format_factor_report(data_set_name: str, frame_midpoints, factors: np.ndarray,
                         status: str, iterations: int, generated: float = None) -> str:
    """
    Formats the factor curve report.

    Args:
        data_set_name (str): Name of the analysed data set.
        frame_midpoints (array-like): Midpoint time (s) of every frame.
        factors (np.ndarray): (num_factors, num_frames) factor curves.
        status (str): Terminal status of the run.
        iterations (int): Number of iterations performed.
        generated (float, optional): Generation time (seconds since the
            epoch). Defaults to now.

    Returns:
        str: The report text.
    """
    factors = np.atleast_2d(np.asarray(factors, dtype=float))
    if generated is None:
        generated = time.time()

    lines = [
        f"# {PROGRAM_NAME}: FADS Analysis File for {data_set_name}",
        f"# generated on {time.ctime(generated)}",
        "#",
    ]
    lines.extend(format_status_lines(status, iterations))
    lines.append("#")
    lines.append("# frame\ttime midpt (s)\tfactor:")
    lines.append("#\t" + "".join(f"\t\t{f + 1}" for f in range(factors.shape[0])))

    for t, midpoint in enumerate(frame_midpoints):
        row = f"  {t}\t{midpoint:g}\t"
        row += "".join(f"\t{value:g}" for value in factors[:, t])
        lines.append(row)
    return "\n".join(lines) + "\n"


def write_factor_report(filepath: str, data_set, result) -> bool:
    """
    Writes the factor curve report for a finished analysis.

    Args:
        filepath (str): Path of the report file.
        data_set (DynamicDataSet): The analysed data set.
        result (FactorResult): The analysis result.

    Returns:
        bool: True if the report was written, False if the file could not be
              opened (a warning is logged).
    """
    report = format_factor_report(
        data_set.name, data_set.frame_midpoints(), result.factors,
        result.status, result.iterations,
    )
    try:
        with open(filepath, 'w') as f:
            f.write(report)
    except OSError as e:
        logger.warning("couldn't open: %s for writing fads analyses (%s)", filepath, e)
        return False
    return True


def save_factor_images(images: list, out_dir: str) -> list[str]:
    """
    Saves factor images as NIfTI files named after the images
    (e.g. "factor 1" -> "factor_1.nii.gz").

    Args:
        images (list[DynamicDataSet]): The factor images.
        out_dir (str): Output directory. Must exist.

    Returns:
        list[str]: Paths of the written files.
    """
    paths = []
    for image in images:
        output_filepath = os.path.join(out_dir, image.name.replace(" ", "_") + ".nii.gz")
        io.save_nifti_image(image, output_filepath)
        paths.append(output_filepath)
    return paths
