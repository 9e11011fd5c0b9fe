from __future__ import annotations

import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional, Tuple

from .errors import CurveDomainError
from .interpolation import Interpolator, LinearInterpolator

# {curve name: d(quantity)/d(that curve's parameters)}
Sensitivity = Dict[str, np.ndarray]


def add_scaled(target: Sensitivity, source: Mapping[str, np.ndarray], scale: float = 1.0) -> Sensitivity:
    """target += scale * source, curve by curve (in place)."""
    for name, grad in source.items():
        grad = np.asarray(grad, dtype=float)
        if name in target:
            target[name] = target[name] + scale * grad
        else:
            target[name] = scale * grad
    return target


def scaled(source: Mapping[str, np.ndarray], scale: float) -> Sensitivity:
    return add_scaled({}, source, scale)


class YieldCurve:
    """
    A calibrated curve: continuously compounded zero rate r(t) with
    D(t) = exp(-r(t) * t).

    zero_rate_sensitivity(t) reports dr(t)/dp for every curve whose parameters
    r(t) depends on, keyed by curve name. A curve's own parameters are keyed by
    its own name.
    """
    name: str

    @property
    def parameters(self) -> np.ndarray:
        raise NotImplementedError

    @property
    def parameter_count(self) -> int:
        return len(self.parameters)

    def zero_rate(self, t: float) -> float:
        raise NotImplementedError

    def zero_rate_sensitivity(self, t: float) -> Sensitivity:
        raise NotImplementedError

    def discount_factor(self, t: float) -> float:
        t = float(t)
        if t <= 0.0:
            return 1.0
        return float(np.exp(-self.zero_rate(t) * t))

    def discount_factor_sensitivity(self, t: float) -> Sensitivity:
        t = float(t)
        if t <= 0.0:
            return {}
        df = self.discount_factor(t)
        return scaled(self.zero_rate_sensitivity(t), -t * df)

    def forward_rate(self, t1: float, t2: float) -> float:
        """Simple (money-market) forward rate over [t1, t2]."""
        tau = t2 - t1
        if tau <= 0.0:
            raise ValueError("Forward period must have positive length.")
        return (self.discount_factor(t1) / self.discount_factor(t2) - 1.0) / tau

    def forward_rate_sensitivity(self, t1: float, t2: float) -> Sensitivity:
        tau = t2 - t1
        p1, p2 = self.discount_factor(t1), self.discount_factor(t2)
        out: Sensitivity = {}
        add_scaled(out, self.discount_factor_sensitivity(t1), 1.0 / (p2 * tau))
        add_scaled(out, self.discount_factor_sensitivity(t2), -p1 / (p2 * p2 * tau))
        return out


def _free_mask(n: int, fixed: Optional[Tuple[bool, ...]]) -> np.ndarray:
    if fixed is None:
        return np.ones(n, dtype=bool)
    if len(fixed) != n:
        raise ValueError("fixed mask must match the number of nodes")
    return ~np.asarray(fixed, dtype=bool)


@dataclass(frozen=True, eq=False)
class InterpolatedYieldCurve(YieldCurve):
    """
    Zero rates interpolated between node times.

    - compounding=None: node values are continuously compounded zero rates.
    - compounding=m: node values are rates compounded m times a year,
      r_cc = m * log(1 + r_m / m) after interpolation.
    - fixed: optional per-node flags; flagged nodes keep their value and are
      not parameters of the curve (anchors).
    """
    name: str
    node_times: np.ndarray
    node_values: np.ndarray
    interpolator: Interpolator = field(default_factory=LinearInterpolator)
    compounding: Optional[int] = None
    fixed: Optional[Tuple[bool, ...]] = None

    def __post_init__(self):
        times = np.asarray(self.node_times, dtype=float)
        values = np.asarray(self.node_values, dtype=float)
        if times.ndim != 1 or len(times) == 0 or len(times) != len(values):
            raise ValueError(f"{self.name}: node times and values must be non-empty and aligned.")
        if np.any(np.diff(times) <= 0.0):
            raise ValueError(f"{self.name}: node times must be strictly increasing.")
        object.__setattr__(self, "node_times", times)
        object.__setattr__(self, "node_values", values)

    @property
    def parameters(self) -> np.ndarray:
        return self.node_values[_free_mask(len(self.node_values), self.fixed)]

    def _interpolated(self, t: float) -> Tuple[float, np.ndarray]:
        w = self.interpolator.weights(self.node_times, float(t))
        return float(w @ self.node_values), w

    def zero_rate(self, t: float) -> float:
        r, _ = self._interpolated(t)
        if self.compounding is None:
            return r
        m = float(self.compounding)
        return m * float(np.log1p(r / m))

    def zero_rate_sensitivity(self, t: float) -> Sensitivity:
        r, w = self._interpolated(t)
        if self.compounding is not None:
            w = w / (1.0 + r / float(self.compounding))
        return {self.name: w[_free_mask(len(w), self.fixed)]}


@dataclass(frozen=True, eq=False)
class InterpolatedDiscountCurve(YieldCurve):
    """
    Discount factors at node times, interpolated in log discount factor space.

    - Within node range: interpolation of log D.
    - Short end (before the first node): flat cc zero implied by the first node.
    - Long end (after the last node): flat cc zero implied by the last node.
    """
    name: str
    node_times: np.ndarray
    node_values: np.ndarray
    interpolator: Interpolator = field(default_factory=LinearInterpolator)

    def __post_init__(self):
        times = np.asarray(self.node_times, dtype=float)
        values = np.asarray(self.node_values, dtype=float)
        if times.ndim != 1 or len(times) == 0 or len(times) != len(values):
            raise ValueError(f"{self.name}: node times and values must be non-empty and aligned.")
        if np.any(times <= 0.0):
            raise ValueError(f"{self.name}: discount factor nodes must be after time 0.")
        if np.any(np.diff(times) <= 0.0):
            raise ValueError(f"{self.name}: node times must be strictly increasing.")
        object.__setattr__(self, "node_times", times)
        object.__setattr__(self, "node_values", values)

    @property
    def parameters(self) -> np.ndarray:
        return self.node_values

    def _check_positive(self):
        if np.any(self.node_values <= 0.0):
            raise CurveDomainError(f"{self.name}: discount factors must be positive.")

    def zero_rate(self, t: float) -> float:
        self._check_positive()
        t = float(t)
        times, dfs = self.node_times, self.node_values
        if t <= times[0]:
            return float(-np.log(dfs[0]) / times[0])
        if t >= times[-1]:
            return float(-np.log(dfs[-1]) / times[-1])
        w = self.interpolator.weights(times, t)
        return float(-(w @ np.log(dfs)) / t)

    def zero_rate_sensitivity(self, t: float) -> Sensitivity:
        self._check_positive()
        t = float(t)
        times, dfs = self.node_times, self.node_values
        grad = np.zeros(len(dfs), dtype=float)
        if t <= times[0]:
            grad[0] = -1.0 / (dfs[0] * times[0])
        elif t >= times[-1]:
            grad[-1] = -1.0 / (dfs[-1] * times[-1])
        else:
            w = self.interpolator.weights(times, t)
            grad = -w / (dfs * t)
        return {self.name: grad}


def nelson_siegel_loadings(t: float, decay: float) -> np.ndarray:
    """[level, slope, curvature] loadings; the t -> 0 limit is [1, 1, 0]."""
    lt = decay * float(t)
    if lt < 1e-10:
        return np.array([1.0, 1.0, 0.0])
    e = np.exp(-lt)
    s = (1.0 - e) / lt
    return np.array([1.0, s, s - e])


@dataclass(frozen=True, eq=False)
class NelsonSiegelCurve(YieldCurve):
    """r(t) = b0 + b1 * S(t) + b2 * C(t) with a fixed decay."""
    name: str
    betas: np.ndarray
    decay: float = 1.0

    def __post_init__(self):
        betas = np.asarray(self.betas, dtype=float)
        if betas.shape != (3,):
            raise ValueError(f"{self.name}: Nelson-Siegel needs exactly 3 parameters.")
        if self.decay <= 0.0:
            raise ValueError(f"{self.name}: decay must be positive.")
        object.__setattr__(self, "betas", betas)

    @property
    def parameters(self) -> np.ndarray:
        return self.betas

    def zero_rate(self, t: float) -> float:
        return float(nelson_siegel_loadings(t, self.decay) @ self.betas)

    def zero_rate_sensitivity(self, t: float) -> Sensitivity:
        return {self.name: nelson_siegel_loadings(t, self.decay)}


@dataclass(frozen=True, eq=False)
class FixedCurve(YieldCurve):
    """A deterministic curve that contributes no parameters and no risk."""
    name: str
    curve: YieldCurve

    @property
    def parameters(self) -> np.ndarray:
        return np.zeros(0)

    def zero_rate(self, t: float) -> float:
        return self.curve.zero_rate(t)

    def zero_rate_sensitivity(self, t: float) -> Sensitivity:
        return {self.name: np.zeros(0)}


@dataclass(frozen=True, eq=False)
class SpreadCurve(YieldCurve):
    """
    r(t) = base.r(t) + spread.r(t).

    Only the spread's parameters belong to this curve; dependence on the base
    curve is reported under the base curve's own name(s).
    """
    name: str
    base: YieldCurve
    spread: YieldCurve

    @property
    def parameters(self) -> np.ndarray:
        return self.spread.parameters

    def zero_rate(self, t: float) -> float:
        return self.base.zero_rate(t) + self.spread.zero_rate(t)

    def zero_rate_sensitivity(self, t: float) -> Sensitivity:
        out = dict(self.base.zero_rate_sensitivity(t))
        spread_sens = dict(self.spread.zero_rate_sensitivity(t))
        own = spread_sens.pop(self.spread.name, np.zeros(self.spread.parameter_count))
        add_scaled(out, spread_sens)
        out[self.name] = np.asarray(own, dtype=float)
        return out


class _CompositeCurve(YieldCurve):
    """Curves whose own parameter vector is the concatenation of their parts'."""
    name: str
    parts: Tuple[YieldCurve, ...]

    @property
    def parameters(self) -> np.ndarray:
        if not self.parts:
            return np.zeros(0)
        return np.concatenate([p.parameters for p in self.parts])

    def _offsets(self) -> np.ndarray:
        return np.concatenate([[0], np.cumsum([p.parameter_count for p in self.parts])]).astype(int)

    def _collect(self, contributions: Iterable[Tuple[int, Sensitivity]]) -> Sensitivity:
        offsets = self._offsets()
        own = np.zeros(offsets[-1], dtype=float)
        out: Sensitivity = {}
        for i, sens in contributions:
            sens = dict(sens)
            part = self.parts[i]
            grad = sens.pop(part.name, None)
            if grad is not None and len(grad):
                own[offsets[i]:offsets[i + 1]] += grad
            add_scaled(out, sens)
        out[self.name] = own
        return out


@dataclass(frozen=True, eq=False)
class AdditiveCurve(_CompositeCurve):
    """r(t) = sum of the parts' zero rates."""
    name: str
    parts: Tuple[YieldCurve, ...]

    def zero_rate(self, t: float) -> float:
        return float(sum(p.zero_rate(t) for p in self.parts))

    def zero_rate_sensitivity(self, t: float) -> Sensitivity:
        return self._collect((i, p.zero_rate_sensitivity(t)) for i, p in enumerate(self.parts))


@dataclass(frozen=True, eq=False)
class SegmentedCurve(_CompositeCurve):
    """
    Part i answers for times in (boundaries[i-1], boundaries[i]]; the last
    part also answers beyond its boundary.
    """
    name: str
    parts: Tuple[YieldCurve, ...]
    boundaries: Tuple[float, ...]

    def __post_init__(self):
        if len(self.parts) != len(self.boundaries) or not self.parts:
            raise ValueError(f"{self.name}: one boundary per segment is required.")
        if np.any(np.diff(self.boundaries) <= 0.0):
            raise ValueError(f"{self.name}: segment boundaries must be increasing.")

    def segment_index(self, t: float) -> int:
        i = int(np.searchsorted(np.asarray(self.boundaries, dtype=float), float(t), side="left"))
        return min(i, len(self.parts) - 1)

    def zero_rate(self, t: float) -> float:
        return self.parts[self.segment_index(t)].zero_rate(t)

    def zero_rate_sensitivity(self, t: float) -> Sensitivity:
        i = self.segment_index(t)
        return self._collect([(i, self.parts[i].zero_rate_sensitivity(t))])


def curve_qc_report(curve: YieldCurve, times: Iterable[float]) -> pd.DataFrame:
    times = np.asarray(list(times), dtype=float)
    zeros = np.array([curve.zero_rate(t) for t in times], dtype=float)
    dfs = np.array([curve.discount_factor(t) for t in times], dtype=float)

    return pd.DataFrame(
        {
            "time": times,
            "zero_cc": zeros,
            "df": dfs,
            "df_positive": dfs > 0,
            "df_monotone": np.r_[True, np.diff(dfs) <= 1e-10],
        }
    )
