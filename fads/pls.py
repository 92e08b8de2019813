import logging

import numpy as np

from . import reporting
from .minimizer import (
    STATUS_CONTINUE,
    STATUS_MESSAGES,
    STATUS_SUCCESS,
    STATUS_TERMINATED,
    ConjugateGradientMinimizer,
)
from .objective import PenalizedLeastSquares, PenaltyWeights
from .validators import (
    FadsInputError,
    validate_blood_curve_constraints,
    validate_dynamic,
    validate_num_factors,
    validate_num_iterations,
)

"""
This module runs the penalized least squares factor analysis of a dynamic
data set (Sitek, et al., IEEE Trans. Med. Imag., 21, 2002, pages 216-225).

The analysis:
1.  Validates the request (dynamic data, 1 <= F <= T, blood curve frames
    within the data set) before allocating anything.
2.  Seeds the factor curves with alternating falling/rising exponentials
    scaled by each frame's maximum, and every coefficient with 1/F.
3.  Minimizes the penalized least squares objective with a Polak-Ribiere
    conjugate gradient minimizer, one iteration at a time. After every
    iteration the orthogonality weight `b` is rebalanced against the least
    squares and non-negativity terms using a slow moving average, progress
    is reported, and cancellation through the progress callback is honored.
4.  Emits one coefficient image per factor (attached to the data set) and a
    text report of the factor curves.
"""

logger = logging.getLogger(__name__)

FADS_PLS = "pls"

FADS_METHODS = {
    FADS_PLS: {
        "name": "Penalized Least Squares - Sitek, et al.",
        "explanation": (
            "Principle component analysis with positivity constraints "
            "and a penalized least squares objective, as described "
            "by Sitek, et al., IEEE Trans. Med. Imag., 2002"
        ),
    },
}
"""The factor analysis methods available, keyed by method identifier."""

DEFAULT_NUM_ITERATIONS = 1000
DEFAULT_STOPPING_CRITERIA = 1e-2
INITIAL_STEP_SIZE = 0.1
TIME_CONSTANT_FRACTION = 100.0  # initial time constant is study length / 100
ORTHOGONALITY_BALANCE = 0.1  # target ratio of uni to (ls + neg)
ORTHOGONALITY_WEIGHT_FLOOR = 0.1  # b when the orthogonality term vanishes
END_OF_PROGRESS = 2.0


class FactorResult:
    """
    Outcome of a penalized least squares factor analysis.

    Attributes:
        status (str): Terminal status (STATUS_SUCCESS, STATUS_TERMINATED,
            STATUS_CONTINUE when the iteration budget ran out, or
            STATUS_NO_PROGRESS).
        iterations (int): Number of iterations performed.
        factors (np.ndarray): (num_factors, num_frames) factor curves.
        coefficients (np.ndarray): (num_voxels, num_factors) coefficients.
        vector (np.ndarray): The final parameter vector.
        value (float): Objective value at the final parameter vector.
        terms (PenaltyTerms): Objective breakdown of the last evaluation.
        weights (PenaltyWeights): Penalty weights at the end of the run.
        images (list[DynamicDataSet]): Factor images (set by `fads_pls`).
        report_path (str | None): Path of the written report, or None.
    """

    def __init__(self, status, iterations, factors, coefficients, vector, value, terms, weights):
        self.status = status
        self.iterations = iterations
        self.factors = factors
        self.coefficients = coefficients
        self.vector = vector
        self.value = value
        self.terms = terms
        self.weights = weights
        self.images = []
        self.report_path = None

    @property
    def num_factors(self) -> int:
        return self.factors.shape[0]

    @property
    def converged(self) -> bool:
        return self.status == STATUS_SUCCESS

    @property
    def terminated(self) -> bool:
        return self.status == STATUS_TERMINATED

    @property
    def reason(self) -> str:
        return STATUS_MESSAGES.get(self.status, self.status)

    def __repr__(self):
        return (f"FactorResult(status={self.status!r}, iterations={self.iterations}, "
                f"num_factors={self.num_factors})")


class PlsFactorAnalysis:
    """
    Penalized least squares factor analysis of one dynamic data set.

    Construction validates the request; nothing is allocated for an invalid one.

    Args:
        data_set (DynamicDataSet): The dynamic data set (at least 2 frames).
        num_factors (int): Number of factors, 1 <= num_factors <= num_frames.
        blood_curve_constraints (iterable, optional): (frame, value) pairs
            pinning factor 0 (the blood curve).
        weights (PenaltyWeights, optional): Starting penalty weights. Defaults
            to weights derived from the data set's global maximum.

    Raises:
        FadsInputError: If the request fails validation.
    """

    def __init__(self, data_set, num_factors: int, blood_curve_constraints=(), weights: PenaltyWeights = None):
        validate_dynamic(data_set)
        validate_num_factors(num_factors, data_set.num_frames)
        self.blood_curve_constraints = validate_blood_curve_constraints(
            blood_curve_constraints, data_set.num_frames
        )
        self.data_set = data_set
        self.num_factors = int(num_factors)
        self.objective = PenalizedLeastSquares.from_data_set(
            data_set, self.num_factors, self.blood_curve_constraints, weights=weights
        )

    @property
    def weights(self) -> PenaltyWeights:
        return self.objective.weights

    @property
    def num_variables(self) -> int:
        return self.objective.num_variables

    @property
    def coef_offset(self) -> int:
        return self.objective.coef_offset

    def initial_vector(self) -> np.ndarray:
        """
        Returns the starting parameter vector.

        Factor f is seeded with exp(-(t - t0)/tau) for even f and
        1 - exp(-(t - t0)/tau) for odd f, evaluated at the frame midpoints and
        scaled by each frame's maximum; tau starts at 1/100 of the study
        length and doubles after every odd factor. Every coefficient is 1/F.
        """
        data_set = self.data_set
        midpoints = data_set.frame_midpoints()
        frame_maxima = data_set.frame_maxima()
        elapsed = midpoints - midpoints[0]
        time_constant = data_set.get_end_time(data_set.num_frames - 1) / TIME_CONSTANT_FRACTION

        factors = np.empty((self.num_factors, data_set.num_frames))
        for f in range(self.num_factors):
            decay = np.exp(-elapsed / time_constant)
            factors[f] = (1.0 - decay if f & 1 else decay) * frame_maxima
            if f & 1:
                time_constant *= 2.0

        coefs = np.full((data_set.num_voxels, self.num_factors), 1.0 / self.num_factors)
        return self.objective.join(factors, coefs)

    def _rebalance(self, smoothing: bool):
        """Rebalances the orthogonality weight against the last evaluated terms."""
        terms = self.objective.terms
        weights = self.objective.weights
        if terms.uni == 0.0:
            weights.b = ORTHOGONALITY_WEIGHT_FLOOR
            return
        target = ORTHOGONALITY_BALANCE * weights.b * (terms.ls + terms.neg) / terms.uni
        if smoothing:
            # slow moving average to avoid stalling the minimization
            weights.b = (9.0 * weights.b + target) / 10.0
        else:
            weights.b = target

    def run(self, num_iterations: int = DEFAULT_NUM_ITERATIONS,
            stopping_criteria: float = DEFAULT_STOPPING_CRITERIA,
            progress=None, initial: np.ndarray = None) -> FactorResult:
        """
        Runs the minimization.

        Args:
            num_iterations (int, optional): Maximum number of iterations.
            stopping_criteria (float, optional): Gradient norm below which the
                minimization is considered converged.
            progress (callable, optional): `progress(message, fraction) -> bool`.
                Called with a message and 0.0 before the first iteration, with
                `iteration/num_iterations` after every iteration, and with 2.0
                at the end. Returning False stops the minimization after the
                current iteration.
            initial (np.ndarray, optional): Starting parameter vector.
                Defaults to `initial_vector()`.

        Returns:
            FactorResult: The outcome of the run (no images or report yet).

        Raises:
            FadsInputError: If `num_iterations` < 1 or `initial` has the wrong length.
        """
        validate_num_iterations(num_iterations)
        v = self.initial_vector() if initial is None else np.array(initial, dtype=np.float64)
        if v.shape != (self.num_variables,):
            raise FadsInputError(
                f"initial parameter vector must have length {self.num_variables}, got {v.shape}"
            )

        # evaluate once so b can be balanced against the other terms
        self.objective.evaluate(v)
        self._rebalance(smoothing=False)

        minimizer = ConjugateGradientMinimizer(
            self.objective.evaluate_with_gradient, v, step_size=INITIAL_STEP_SIZE
        )
        continue_work = True
        if progress is not None:
            continue_work = progress(
                f"Calculating Penalized Least Squares Factor Analysis:\n   {self.data_set.name}", 0.0
            )

        iteration = 0
        while True:
            iteration += 1
            status = minimizer.iterate()
            if status == STATUS_CONTINUE:
                status = minimizer.test_gradient(stopping_criteria)

            if progress is not None:
                continue_work = progress(None, iteration / num_iterations)

            terms = self.objective.terms
            logger.debug(
                "iter %d, b=%g\t%g=%g+%g+%g+%g", iteration, self.weights.b,
                minimizer.f, terms.ls, terms.neg, terms.uni, terms.blood,
            )

            self._rebalance(smoothing=True)

            if status != STATUS_CONTINUE or iteration >= num_iterations or not continue_work:
                break
            minimizer.refresh()

        if progress is not None:
            progress(None, END_OF_PROGRESS)

        if status != STATUS_SUCCESS and not continue_work:
            status = STATUS_TERMINATED

        if status == STATUS_SUCCESS:
            logger.info("Minimum found after %d iterations", iteration)
        elif status == STATUS_TERMINATED:
            logger.info("terminated minimization after %d iterations", iteration)
        else:
            logger.info("No minimum found after %d iterations, exited with: %s",
                        iteration, STATUS_MESSAGES[status])

        x = minimizer.x.copy()
        factors, coefs = self.objective.split(x)
        return FactorResult(
            status=status,
            iterations=iteration,
            factors=factors.copy(),
            coefficients=coefs.copy(),
            vector=x,
            value=minimizer.f,
            terms=self.objective.terms,
            weights=PenaltyWeights(self.weights.a, self.weights.b, self.weights.c),
        )


def fads_pls(data_set, num_factors: int, num_iterations: int = DEFAULT_NUM_ITERATIONS,
             stopping_criteria: float = DEFAULT_STOPPING_CRITERIA, output_filename: str = None,
             blood_curve_constraints=(), progress=None) -> FactorResult | None:
    """
    Runs the penalized least squares factor analysis and emits its results.

    On completion (converged, stopped through `progress`, out of iterations,
    or no longer making progress) one image per factor is attached to
    `data_set` and, when `output_filename` is given, the factor curve report
    is written there.

    Args:
        data_set (DynamicDataSet): The dynamic data set to analyse.
        num_factors (int): Number of factors (1 <= num_factors <= num_frames).
        num_iterations (int, optional): Maximum number of iterations.
        stopping_criteria (float, optional): Gradient norm tolerance.
        output_filename (str, optional): Path of the factor curve report.
        blood_curve_constraints (iterable, optional): (frame, value) pairs.
        progress (callable, optional): `progress(message, fraction) -> bool`.

    Returns:
        FactorResult | None: The result, or None if the request was invalid
                             or memory could not be allocated (a warning is
                             logged; nothing is emitted).
    """
    try:
        validate_num_iterations(num_iterations)
        analysis = PlsFactorAnalysis(data_set, num_factors, blood_curve_constraints)
        result = analysis.run(num_iterations, stopping_criteria, progress=progress)
    except FadsInputError as e:
        logger.warning("%s", e)
        return None
    except MemoryError:
        logger.warning("Failed to allocate memory for factor analysis of %s", data_set.name)
        return None

    try:
        result.images = reporting.create_factor_images(data_set, result.coefficients)
    except MemoryError:
        logger.warning("failed to allocate factor images for %s", data_set.name)
        return None

    if output_filename is not None:
        if reporting.write_factor_report(output_filename, data_set, result):
            result.report_path = output_filename
    return result
