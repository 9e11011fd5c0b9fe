from __future__ import annotations

import logging
import numpy as np
from dataclasses import dataclass
from typing import Callable, Tuple

from .errors import CurveCalibrationError, NonConvergenceError, SingularJacobianError

logger = logging.getLogger(__name__)

# evaluate(x) -> (F(x), dF/dx(x))
FunctionAndJacobian = Callable[[np.ndarray], Tuple[np.ndarray, np.ndarray]]

# beyond 1/eps a Newton step carries no reliable digits
MAX_CONDITION = 1.0 / np.finfo(float).eps


@dataclass(frozen=True, eq=False)
class RootResult:
    x: np.ndarray
    residuals: np.ndarray
    jacobian: np.ndarray
    iterations: int


class NewtonVectorRootFinder:
    """
    Newton iteration for F(x) = 0 with an analytic Jacobian.

    Converged when max|F(x)| and the size of the step that produced x are both
    below the tolerance; the returned Jacobian is the one evaluated at the
    returned x. A Jacobian whose condition number exceeds max_condition is
    treated as singular. Arithmetic failures while evaluating F (overflow, a
    curve pushed outside its domain) end the iteration as non-convergence.
    """

    def __init__(self, tolerance: float = 1e-10, max_iterations: int = 100, max_condition: float = MAX_CONDITION):
        if tolerance <= 0.0:
            raise ValueError("tolerance must be positive")
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.tolerance = float(tolerance)
        self.max_iterations = int(max_iterations)
        self.max_condition = float(max_condition)

    def _evaluate(self, evaluate: FunctionAndJacobian, x: np.ndarray, label: str, iteration: int):
        try:
            f, jac = evaluate(x)
        except CurveCalibrationError:
            raise
        except ArithmeticError as exc:
            raise NonConvergenceError(
                f"{label}: evaluation failed at iteration {iteration} ({exc}).",
                last_iterate=x, residual_norm=np.inf, iterations=iteration,
            ) from exc
        f = np.asarray(f, dtype=float)
        jac = np.asarray(jac, dtype=float)
        if f.shape != x.shape or jac.shape != (len(x), len(x)):
            raise ValueError(
                f"{label}: residuals {f.shape} and Jacobian {jac.shape} do not match unknowns {x.shape}."
            )
        f_norm = float(np.max(np.abs(f))) if len(f) else 0.0
        return f, jac, f_norm

    def solve(self, evaluate: FunctionAndJacobian, x0, label: str = "system") -> RootResult:
        x = np.array(x0, dtype=float)
        step_norm = np.inf

        for iteration in range(1, self.max_iterations + 1):
            f, jac, f_norm = self._evaluate(evaluate, x, label, iteration)
            if not np.isfinite(f_norm):
                raise NonConvergenceError(
                    f"{label}: non-finite residuals at iteration {iteration}.",
                    last_iterate=x, residual_norm=f_norm, iterations=iteration,
                )

            logger.debug("%s iteration %d: max|F|=%.3e max|step|=%.3e", label, iteration, f_norm, step_norm)
            if f_norm < self.tolerance and step_norm < self.tolerance:
                return RootResult(x, f, jac, iteration)

            if len(x):
                cond = float(np.linalg.cond(jac))
                if not cond <= self.max_condition:
                    raise SingularJacobianError(
                        f"{label}: Jacobian condition number {cond:.3e} at iteration {iteration}.", iteration
                    )
            try:
                step = np.linalg.solve(jac, -f)
            except np.linalg.LinAlgError as exc:
                raise SingularJacobianError(
                    f"{label}: singular Jacobian at iteration {iteration} ({exc}).", iteration
                ) from exc
            if not np.all(np.isfinite(step)):
                raise SingularJacobianError(f"{label}: non-finite Newton step at iteration {iteration}.", iteration)

            x = x + step
            step_norm = float(np.max(np.abs(step))) if len(step) else 0.0

        # report the residual at the iterate handed back, not the one before the last step
        _, _, f_norm = self._evaluate(evaluate, x, label, self.max_iterations)
        raise NonConvergenceError(
            f"{label}: no convergence after {self.max_iterations} iterations (max|F|={f_norm:.3e}).",
            last_iterate=x, residual_norm=f_norm, iterations=self.max_iterations,
        )
