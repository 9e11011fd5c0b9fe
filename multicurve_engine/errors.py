from __future__ import annotations

from typing import Optional

import numpy as np


class CurveCalibrationError(Exception):
    """Base class for every failure raised while calibrating a plan."""


class MalformedPlanError(CurveCalibrationError, ValueError):
    """Plan cannot be solved as declared (names, roles, counts)."""


class UnresolvedDependencyError(CurveCalibrationError, KeyError):
    """A curve, role or currency is absent from the market context."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the message readable.
        return str(self.args[0]) if self.args else ""


class NonConvergenceError(CurveCalibrationError, RuntimeError):
    def __init__(
        self,
        message: str,
        last_iterate: Optional[np.ndarray] = None,
        residual_norm: float = float("nan"),
        iterations: int = 0,
    ):
        super().__init__(message)
        self.last_iterate = None if last_iterate is None else np.array(last_iterate, dtype=float)
        self.residual_norm = float(residual_norm)
        self.iterations = int(iterations)


class SingularJacobianError(CurveCalibrationError, ArithmeticError):
    def __init__(self, message: str, iteration: int = 0):
        super().__init__(message)
        self.iteration = int(iteration)


class CurveDomainError(ArithmeticError, ValueError):
    """A curve was evaluated with parameters outside its domain, e.g. a non-positive discount factor."""
