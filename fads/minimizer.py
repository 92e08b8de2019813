import warnings

import numpy as np
from scipy.optimize import line_search

"""
This module provides a step-wise Polak-Ribiere nonlinear conjugate gradient
minimizer.

`scipy.optimize.minimize(method='CG')` runs to completion inside a single
call; the factor analysis instead needs to take one iteration at a time so
that it can rebalance penalty weights, report progress and honor
cancellation between iterations. The minimizer here keeps its state (current
point, value, gradient, search direction and step length) between calls to
`iterate()`, and uses `scipy.optimize.line_search` (strong Wolfe conditions)
along each search direction, falling back to step halving when the Wolfe
search does not find an acceptable point.
"""

# Iteration status values
STATUS_SUCCESS = "success"
STATUS_CONTINUE = "continue"
STATUS_NO_PROGRESS = "no_progress"
STATUS_TERMINATED = "terminated"  # stopped through the progress callback

STATUS_MESSAGES = {
    STATUS_SUCCESS: "success",
    STATUS_CONTINUE: "the iteration has not converged yet",
    STATUS_NO_PROGRESS: "iteration is not making progress towards solution",
    STATUS_TERMINATED: "user terminated",
}

MAX_STEP_HALVINGS = 40
WOLFE_C2 = 0.4  # curvature condition, as used by scipy's own CG


class _CachedEvaluation:
    """Wraps a value-and-gradient function so the line search evaluates each point once."""

    def __init__(self, fdf):
        self._fdf = fdf
        self._x = None
        self._f = None
        self._g = None
        self.num_evaluations = 0

    def __call__(self, x: np.ndarray) -> tuple[float, np.ndarray]:
        if self._x is None or not np.array_equal(x, self._x):
            f, g = self._fdf(x)
            self._x = np.array(x, dtype=np.float64, copy=True)
            self._f = float(f)
            self._g = np.array(g, dtype=np.float64, copy=True)
            self.num_evaluations += 1
        return self._f, self._g.copy()

    def value(self, x):
        return self(x)[0]

    def gradient(self, x):
        return self(x)[1]

    def invalidate(self):
        self._x = None


class ConjugateGradientMinimizer:
    """
    Polak-Ribiere conjugate gradient minimizer driven one iteration at a time.

    Args:
        fdf (callable): Function mapping a point `x` to `(value, gradient)`.
        x0 (np.ndarray): Starting point.
        step_size (float, optional): Length of the first trial step along
            each search direction. Defaults to 0.1.

    Attributes:
        x (np.ndarray): Current point.
        f (float): Objective value at `x`.
        gradient (np.ndarray): Gradient at `x`.
        iteration (int): Number of successful iterations taken.
    """

    def __init__(self, fdf, x0: np.ndarray, step_size: float = 0.1):
        if step_size <= 0:
            raise ValueError(f"step_size must be positive, got {step_size}")
        self._evaluate = _CachedEvaluation(fdf)
        self.step = float(step_size)
        self.x = np.array(x0, dtype=np.float64, copy=True)
        self.f, self.gradient = self._evaluate(self.x)
        self.direction = -self.gradient
        self.iteration = 0

    @property
    def num_evaluations(self) -> int:
        return self._evaluate.num_evaluations

    def refresh(self):
        """
        Re-evaluates the objective at the current point.

        Call this after changing parameters of the objective function (such
        as penalty weights) between iterations. The search direction is kept.
        """
        self._evaluate.invalidate()
        self.f, self.gradient = self._evaluate(self.x)

    def gradient_norm(self) -> float:
        return float(np.linalg.norm(self.gradient))

    def _wolfe_step(self, pk: np.ndarray):
        with warnings.catch_warnings():
            # a failed search is reported through alpha=None
            warnings.simplefilter("ignore")
            alpha, _, _, new_f, _, _ = line_search(
                self._evaluate.value, self._evaluate.gradient, self.x, pk,
                gfk=self.gradient, old_fval=self.f, c2=WOLFE_C2,
            )
        if alpha is None or new_f is None or not np.isfinite(new_f) or new_f >= self.f:
            return None
        return alpha

    def _halving_step(self, pk: np.ndarray):
        alpha = 1.0
        for _ in range(MAX_STEP_HALVINGS):
            trial = self._evaluate.value(self.x + alpha * pk)
            if np.isfinite(trial) and trial < self.f:
                return alpha
            alpha *= 0.5
        return None

    def _line_minimize(self, direction: np.ndarray):
        """Returns (alpha, pk) for an accepted step along `direction`, or None."""
        d_norm = np.linalg.norm(direction)
        if d_norm == 0.0 or not np.isfinite(d_norm):
            return None
        # scale so that alpha=1 is a step of the current step length
        pk = direction * (self.step / d_norm)
        alpha = self._wolfe_step(pk)
        if alpha is None:
            alpha = self._halving_step(pk)
        if alpha is None:
            return None
        return alpha, pk

    def iterate(self) -> str:
        """
        Takes one conjugate gradient iteration.

        Returns:
            str: STATUS_CONTINUE when a step was taken, STATUS_NO_PROGRESS when
                 no point with a lower objective value could be found.
        """
        g = self.gradient
        g_norm_sq = float(np.dot(g, g))
        if g_norm_sq == 0.0:
            return STATUS_NO_PROGRESS

        direction = self.direction
        steepest = not np.dot(direction, g) < 0.0
        if steepest:
            # not a descent direction, restart along the gradient
            direction = -g

        accepted = self._line_minimize(direction)
        if accepted is None and not steepest:
            direction = -g
            accepted = self._line_minimize(direction)
        if accepted is None:
            return STATUS_NO_PROGRESS

        alpha, pk = accepted
        x_new = self.x + alpha * pk
        f_new, g_new = self._evaluate(x_new)

        beta = float(np.dot(g_new, g_new - g)) / g_norm_sq
        self.direction = -g_new + max(beta, 0.0) * direction
        self.step = max(alpha * self.step, np.finfo(np.float64).eps)

        self.x, self.f, self.gradient = x_new, f_new, g_new
        self.iteration += 1
        return STATUS_CONTINUE

    def test_gradient(self, epsabs: float) -> str:
        """Returns STATUS_SUCCESS if the gradient norm is below `epsabs`, else STATUS_CONTINUE."""
        if epsabs < 0.0:
            raise ValueError(f"absolute tolerance is negative: {epsabs}")
        if np.linalg.norm(self.gradient) < epsabs:
            return STATUS_SUCCESS
        return STATUS_CONTINUE
