"""Factor Analysis of Dynamic Structures (FADS) for 4D medical image data.

This package extracts a small number of time-activity factor curves and
per-voxel mixing coefficients from a dynamic image series. It provides:
- `DynamicDataSet`, the in-memory 4D data set with frame timing.
- `svd_factors`, a singular value based estimate of the number of factors.
- `fads_pls`, the penalized least squares factor analysis (Sitek, et al.,
  IEEE Trans. Med. Imag., 2002), producing one coefficient image per factor
  and a text report of the factor curves.
- NIfTI loading and saving helpers in `fads.io`.
"""

from .dataset import DynamicDataSet
from .objective import PenalizedLeastSquares, PenaltyTerms, PenaltyWeights
from .pls import FADS_METHODS, FactorResult, PlsFactorAnalysis, fads_pls
from .svd import SVDResult, svd_factors
from .validators import FadsInputError

__version__ = "1.0.0"
__all__ = [
    "DynamicDataSet",
    "PenalizedLeastSquares",
    "PenaltyTerms",
    "PenaltyWeights",
    "FADS_METHODS",
    "FactorResult",
    "PlsFactorAnalysis",
    "fads_pls",
    "SVDResult",
    "svd_factors",
    "FadsInputError",
]
