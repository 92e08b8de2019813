import logging

import numpy as np
from scipy import linalg

"""
This module estimates how many factors a dynamic data set supports.

The data set is arranged as a (num_voxels x num_frames) matrix and its
singular values are returned; large singular values indicate factors that are
well supported by the data. Since the matrix is tall (many more voxels than
frames), it is first reduced with a QR factorization and the singular values
are taken from the small (num_frames x num_frames) triangular factor.
"""

logger = logging.getLogger(__name__)


class SVDResult:
    """
    Singular values of a dynamic data set.

    Attributes:
        factors (np.ndarray): The singular values, in the order the
            decomposition returns them.
        count (int): Number of singular values (the number of frames), which
            is also the largest number of factors that can be requested.
    """

    def __init__(self, factors: np.ndarray):
        self.factors = np.asarray(factors, dtype=np.float64)
        self.count = int(self.factors.size)

    def __repr__(self):
        return f"SVDResult(count={self.count}, factors={self.factors!r})"


def svd_factors(data_set) -> SVDResult | None:
    """
    Computes the singular values of a dynamic data set's voxel-by-frame matrix.

    Args:
        data_set (DynamicDataSet): The dynamic data set. Must have more than one frame.

    Returns:
        SVDResult | None: The singular values, or None if the data set is
                          static, the working matrices could not be
                          allocated, or the decomposition failed. A warning
                          is logged in each of those cases.
    """
    num_frames = data_set.num_frames
    num_voxels = data_set.num_voxels

    if num_frames == 1:
        logger.warning("need dynamic data set in order to perform factor analysis")
        return None

    try:
        matrix_a = data_set.voxel_matrix()
    except MemoryError:
        logger.warning("Failed to allocate %dx%d array", num_voxels, num_frames)
        return None

    try:
        if num_voxels > num_frames:
            # Reduce the tall matrix to its (n x n) triangular factor first
            (matrix_r,) = linalg.qr(matrix_a, mode='r', check_finite=False)
            matrix_r = matrix_r[:num_frames, :]
        else:
            matrix_r = matrix_a
        singular_values = linalg.svdvals(matrix_r, check_finite=False)
    except MemoryError:
        logger.warning("Failed to allocate %dx%d array", num_frames, num_frames)
        return None
    except linalg.LinAlgError as e:
        logger.warning("SV decomp returned error: %s", e)
        return None

    if singular_values.size < num_frames:
        # fewer voxels than frames: the remaining singular values are zero
        singular_values = np.concatenate((singular_values, np.zeros(num_frames - singular_values.size)))

    return SVDResult(singular_values)
