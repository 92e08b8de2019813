import numpy as np

"""
This module implements the penalized least squares objective used for
Factor Analysis of Dynamic Structures (FADS), following the method described
by Sitek, et al., IEEE Trans. Med. Imag., 21, 2002, pages 216-225.

The optimization works on a single flat parameter vector laid out as

    [factor(1,1) ... factor(1,T)  ...  factor(F,1) ... factor(F,T)
     coef(1,1)   ... coef(1,F)    ...  coef(M,1)   ... coef(M,F)]

with F factors, T frames and M voxels. The factor block holds the F
time-activity curves, the coefficient block the per-voxel mixing weights
(all F coefficients of one voxel are contiguous).

The objective is the sum of four terms:

1.  **ls**: least squares reconstruction error of the data.
2.  **neg**: non-negativity penalty on every entry, plus an upper bound of
    1.0 on the coefficients, weighted by `a`.
3.  **uni**: orthogonality penalty between the coefficient columns of every
    pair of factors, weighted by `b`.
4.  **blood**: deviation of factor 0 (the blood curve) from known values at
    selected frames, weighted by `c`.

Both the objective and its analytic gradient are vectorized over voxels and
frames with NumPy.
"""

NEGATIVITY_WEIGHT_SCALE = 1.0e5
"""Scale applied to the data set's global maximum to obtain weights `a` and `c`."""

INITIAL_ORTHOGONALITY_WEIGHT = 100.0
"""Starting value of `b`, before it is rebalanced against the other terms."""


class PenaltyWeights:
    """Weights of the non-negativity (a), orthogonality (b) and blood curve (c) terms."""

    def __init__(self, a: float, b: float = INITIAL_ORTHOGONALITY_WEIGHT, c: float = None):
        self.a = float(a)
        self.b = float(b)
        self.c = float(a if c is None else c)

    @classmethod
    def for_global_max(cls, global_max: float) -> "PenaltyWeights":
        """Default weights for data whose largest intensity is `global_max`."""
        a = global_max * NEGATIVITY_WEIGHT_SCALE
        return cls(a=a, b=INITIAL_ORTHOGONALITY_WEIGHT, c=a)

    def __repr__(self):
        return f"PenaltyWeights(a={self.a:g}, b={self.b:g}, c={self.c:g})"


class PenaltyTerms:
    """Breakdown of the last objective evaluation (each term already weighted)."""

    def __init__(self, ls: float = 1.0, neg: float = 1.0, uni: float = 1.0, blood: float = 1.0):
        self.ls = ls
        self.neg = neg
        self.uni = uni
        self.blood = blood

    @property
    def total(self) -> float:
        return self.ls + self.neg + self.uni + self.blood

    def as_dict(self) -> dict:
        return {"ls": self.ls, "neg": self.neg, "uni": self.uni, "blood": self.blood}

    def __repr__(self):
        return f"PenaltyTerms(ls={self.ls:g}, neg={self.neg:g}, uni={self.uni:g}, blood={self.blood:g})"


class PenalizedLeastSquares:
    """
    Penalized least squares objective and gradient for a voxel-by-frame matrix.

    Args:
        observed (np.ndarray): (num_voxels, num_frames) matrix of measured
            intensities, voxels ordered x fastest, then y, then z.
        num_factors (int): Number of factors F.
        weights (PenaltyWeights): Penalty weights. `weights.b` is read on every
            evaluation, so it can be rebalanced between evaluations.
        blood_curve_constraints (iterable, optional): (frame, value) pairs
            pinning factor 0 at the given frames. Defaults to none.

    Attributes:
        terms (PenaltyTerms): Breakdown of the most recent `evaluate` call.
    """

    def __init__(self, observed: np.ndarray, num_factors: int, weights: PenaltyWeights,
                 blood_curve_constraints=()):
        self.observed = np.asarray(observed, dtype=np.float64)
        if self.observed.ndim != 2:
            raise ValueError("observed data must be a (num_voxels, num_frames) matrix.")
        self.num_voxels, self.num_frames = self.observed.shape
        self.num_factors = int(num_factors)
        self.coef_offset = self.num_factors * self.num_frames
        self.num_variables = self.coef_offset + self.num_voxels * self.num_factors
        self.weights = weights

        constraints = list(blood_curve_constraints)
        self.constraint_frames = np.array([frame for frame, _ in constraints], dtype=int)
        self.constraint_values = np.array([value for _, value in constraints], dtype=np.float64)

        self.terms = PenaltyTerms()

    @classmethod
    def from_data_set(cls, data_set, num_factors: int, blood_curve_constraints=(),
                      weights: PenaltyWeights = None) -> "PenalizedLeastSquares":
        """Builds the objective for a `DynamicDataSet`, with default weights unless given."""
        if weights is None:
            weights = PenaltyWeights.for_global_max(data_set.global_max)
        return cls(data_set.voxel_matrix(), num_factors, weights, blood_curve_constraints)

    # --- Parameter vector layout ---
    def split(self, v: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """
        Returns views of the factor block (F, T) and coefficient block (M, F) of `v`.
        """
        v = np.asarray(v, dtype=np.float64)
        if v.shape != (self.num_variables,):
            raise ValueError(
                f"Parameter vector must have length {self.num_variables}, got {v.shape}."
            )
        factors = v[:self.coef_offset].reshape(self.num_factors, self.num_frames)
        coefs = v[self.coef_offset:].reshape(self.num_voxels, self.num_factors)
        return factors, coefs

    def join(self, factors: np.ndarray, coefs: np.ndarray) -> np.ndarray:
        """Inverse of `split`: packs factor and coefficient blocks into one vector."""
        return np.concatenate((np.ravel(factors), np.ravel(coefs))).astype(np.float64)

    # --- Shared pieces ---
    def _residual(self, factors: np.ndarray, coefs: np.ndarray) -> np.ndarray:
        # predicted - observed, for every voxel and frame
        return coefs @ factors - self.observed

    @staticmethod
    def _norms(coefs: np.ndarray) -> np.ndarray:
        return np.sqrt(np.sum(coefs * coefs, axis=0))

    def _terms(self, factors, coefs, residual) -> PenaltyTerms:
        w = self.weights
        ls = float(np.sum(residual * residual))

        negative = np.minimum(factors, 0.0)
        neg = float(np.sum(negative * negative))
        negative = np.minimum(coefs, 0.0)
        over = np.maximum(coefs - 1.0, 0.0)  # coefficients are bounded by 1.0
        neg += float(np.sum(negative * negative) + np.sum(over * over))
        neg *= w.a

        uni = 0.0
        if self.num_factors > 1:
            norms = self._norms(coefs)
            sums = np.sum(coefs, axis=0)
            f, q = np.triu_indices(self.num_factors, k=1)
            # sum over voxels of coef_f + coef_q, divided by the product of norms
            with np.errstate(divide='ignore', invalid='ignore'):
                uni = float(np.sum((sums[f] + sums[q]) / (norms[f] * norms[q])))
        uni *= w.b

        blood = 0.0
        if self.constraint_frames.size:
            deviation = factors[0, self.constraint_frames] - self.constraint_values
            blood = float(np.sum(deviation * deviation))
        blood *= w.c

        return PenaltyTerms(ls=ls, neg=neg, uni=uni, blood=blood)

    def _gradient(self, factors, coefs, residual) -> np.ndarray:
        w = self.weights

        # Factor variables
        d_factors = 2.0 * (coefs.T @ residual)
        d_factors += 2.0 * w.a * np.minimum(factors, 0.0)
        if self.constraint_frames.size:
            deviation = factors[0, self.constraint_frames] - self.constraint_values
            # repeated constraints on one frame add up, matching the blood term
            np.add.at(d_factors[0], self.constraint_frames, 2.0 * w.c * deviation)

        # Coefficient variables
        d_coefs = 2.0 * (residual @ factors.T)
        d_coefs += 2.0 * w.a * (np.minimum(coefs, 0.0) + np.maximum(coefs - 1.0, 0.0))

        if self.num_factors > 1:
            norms = self._norms(coefs)
            with np.errstate(divide='ignore', invalid='ignore'):
                scaled = coefs / norms
                # sum over the other factors of coef_f / norm_f
                others = np.sum(scaled, axis=1, keepdims=True) - scaled
                d_uni = others * (1.0 / norms - 0.5 * coefs * coefs / (norms * norms * norms))
            d_coefs += 0.5 * w.b * d_uni

        return self.join(d_factors, d_coefs)

    # --- Public interface ---
    def evaluate(self, v: np.ndarray) -> float:
        """
        Computes the objective value at `v` and records the term breakdown in `terms`.
        """
        factors, coefs = self.split(v)
        self.terms = self._terms(factors, coefs, self._residual(factors, coefs))
        return self.terms.total

    def gradient(self, v: np.ndarray) -> np.ndarray:
        """Computes the analytic gradient of the objective at `v`."""
        factors, coefs = self.split(v)
        return self._gradient(factors, coefs, self._residual(factors, coefs))

    def evaluate_with_gradient(self, v: np.ndarray) -> tuple[float, np.ndarray]:
        """Computes the objective value and gradient together, sharing the residual."""
        factors, coefs = self.split(v)
        residual = self._residual(factors, coefs)
        self.terms = self._terms(factors, coefs, residual)
        return self.terms.total, self._gradient(factors, coefs, residual)
