"""
Multi-curve Calibration Engine

Modules:
- parameterization: curve schemes (interpolated yield / discount factor,
  anchored, Nelson-Siegel, additive, segmented, spread)
- curves: calibrated curve objects + parameter sensitivities
- market: market context (curves by role, FX, fixings)
- instruments: market-quote calibration instruments
- plan: curve slots, stages, calibration plans
- calibration: stage solver + plan driver
- sensitivity: quote-to-parameter sensitivity bundle
- risk: market quote risk through the bundle
- utils: day count + schedule helpers
"""
from .calibration import CalibrationPlanDriver, CalibrationResult, run
from .config import CalibrationConfig
from .errors import (
    CurveCalibrationError,
    CurveDomainError,
    MalformedPlanError,
    NonConvergenceError,
    SingularJacobianError,
    UnresolvedDependencyError,
)
from .market import Discounting, FxMatrix, MarketContext, OvernightForward, TermForward
from .plan import CalibrationPlan, CurveSlot, Stage
from .sensitivity import SensitivityBlock, SensitivityBundle
