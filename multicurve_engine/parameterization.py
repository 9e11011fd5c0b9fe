"""
Curve parameterizations: how a slot's parameter vector becomes a curve.

Every scheme offers the same capabilities:

- adapt(instruments): fix the scheme to the instruments of one curve slot
  (node times, instrument split between parts) and return the adapted copy.
  Incompatible instrument sets raise MalformedPlanError.
- initial_guess(raw): map instrument-level rate guesses to the scheme's own
  parameter guess.
- parameter_count: number of free parameters once adapted.
- build_curve(name, parameters, context): the curve for a parameter vector.
"""
from __future__ import annotations

import numpy as np
from dataclasses import dataclass, field, replace
from typing import Optional, Sequence, Tuple

from .curves import (
    AdditiveCurve,
    FixedCurve,
    InterpolatedDiscountCurve,
    InterpolatedYieldCurve,
    NelsonSiegelCurve,
    SegmentedCurve,
    SpreadCurve,
    YieldCurve,
)
from .errors import MalformedPlanError
from .interpolation import get_interpolator


def instrument_times(instruments: Sequence) -> np.ndarray:
    times = np.array([float(inst.maturity) for inst in instruments], dtype=float)
    if len(times) and np.any(np.diff(times) <= 0.0):
        raise MalformedPlanError(
            "Instrument maturities must be strictly increasing within a curve slot: "
            f"{times.tolist()}"
        )
    return times


class CurveParameterization:
    # Functional forms own a fixed number of parameters; interpolated schemes
    # take one parameter per instrument.
    fixed_parameter_count: Optional[int] = None
    # True when some parameter direction moves the whole curve by a constant
    # rate. Two such parts in one sum cannot be told apart by any quote.
    absorbs_parallel_shift: bool = False

    def adapt(self, instruments: Sequence) -> "CurveParameterization":
        raise NotImplementedError

    @property
    def parameter_count(self) -> int:
        raise NotImplementedError

    def initial_guess(self, raw: Sequence[float]) -> np.ndarray:
        return np.asarray(raw, dtype=float)

    def build_curve(self, name: str, parameters: np.ndarray, context=None) -> YieldCurve:
        raise NotImplementedError

    @property
    def dependencies(self) -> Tuple[str, ...]:
        """Names of other curves the built curve is expressed over."""
        return ()

    def _check_parameters(self, name: str, parameters) -> np.ndarray:
        p = np.asarray(parameters, dtype=float)
        if p.shape != (self.parameter_count,):
            raise ValueError(f"{name}: expected {self.parameter_count} parameters, got {p.shape}.")
        return p


class _NodeScheme(CurveParameterization):
    # set by adapt(): one node per instrument maturity
    node_times: Optional[Tuple[float, ...]]
    # interpolation weights sum to one and extrapolation is flat
    absorbs_parallel_shift = True

    @property
    def parameter_count(self) -> int:
        if self.node_times is None:
            raise MalformedPlanError(f"{type(self).__name__} used before adapt().")
        return len(self.node_times)

    def adapt(self, instruments: Sequence) -> "CurveParameterization":
        times = instrument_times(instruments)
        if len(times) == 0:
            raise MalformedPlanError(f"{type(self).__name__} needs at least one instrument.")
        return replace(self, node_times=tuple(times.tolist()))


@dataclass(frozen=True)
class InterpolatedYield(_NodeScheme):
    """
    Zero rates at the instruments' maturities.

    compounding=None interpolates continuously compounded rates; an integer m
    interpolates rates compounded m times a year.
    """
    interpolator: str = "linear"
    compounding: Optional[int] = None
    node_times: Optional[Tuple[float, ...]] = None

    def initial_guess(self, raw: Sequence[float]) -> np.ndarray:
        r = np.asarray(raw, dtype=float)
        if self.compounding is None:
            return r
        m = float(self.compounding)
        return m * np.expm1(r / m)

    def build_curve(self, name: str, parameters: np.ndarray, context=None) -> YieldCurve:
        p = self._check_parameters(name, parameters)
        return InterpolatedYieldCurve(
            name,
            np.asarray(self.node_times, dtype=float),
            p,
            get_interpolator(self.interpolator),
            self.compounding,
        )


@dataclass(frozen=True)
class InterpolatedDiscountFactor(_NodeScheme):
    """Discount factors at the instruments' maturities, log-interpolated."""
    interpolator: str = "linear"
    node_times: Optional[Tuple[float, ...]] = None

    def initial_guess(self, raw: Sequence[float]) -> np.ndarray:
        r = np.asarray(raw, dtype=float)
        return np.exp(-r * np.asarray(self.node_times, dtype=float))

    def build_curve(self, name: str, parameters: np.ndarray, context=None) -> YieldCurve:
        p = self._check_parameters(name, parameters)
        return InterpolatedDiscountCurve(
            name, np.asarray(self.node_times, dtype=float), p, get_interpolator(self.interpolator)
        )


@dataclass(frozen=True)
class AnchoredInterpolatedYield(_NodeScheme):
    """
    Interpolated zero rates with one extra node pinned at anchor_time.

    The anchor node is not solved for, so the parameter count still equals the
    number of instruments. The pinned node also keeps the scheme from
    absorbing a parallel shift, which makes it the residual part to pair with
    a functional form in an Additive curve.
    """
    absorbs_parallel_shift = False

    anchor_time: float = 0.0
    anchor_value: float = 0.0
    interpolator: str = "linear"
    node_times: Optional[Tuple[float, ...]] = None

    def adapt(self, instruments: Sequence) -> "CurveParameterization":
        adapted = super().adapt(instruments)
        if np.any(np.isclose(adapted.node_times, self.anchor_time, rtol=0.0, atol=1e-12)):
            raise MalformedPlanError(
                f"Anchor time {self.anchor_time} coincides with an instrument maturity."
            )
        return adapted

    def build_curve(self, name: str, parameters: np.ndarray, context=None) -> YieldCurve:
        p = self._check_parameters(name, parameters)
        times = np.asarray(self.node_times, dtype=float)
        k = int(np.searchsorted(times, self.anchor_time))
        all_times = np.insert(times, k, self.anchor_time)
        all_values = np.insert(p, k, self.anchor_value)
        fixed = tuple(i == k for i in range(len(all_times)))
        return InterpolatedYieldCurve(
            name, all_times, all_values, get_interpolator(self.interpolator), None, fixed
        )


@dataclass(frozen=True)
class NelsonSiegel(CurveParameterization):
    """Level/slope/curvature form with a fixed decay: exactly 3 parameters."""
    decay: float = 1.0
    fixed_parameter_count = 3
    absorbs_parallel_shift = True

    @property
    def parameter_count(self) -> int:
        return 3

    def adapt(self, instruments: Sequence) -> "CurveParameterization":
        instrument_times(instruments)
        if len(instruments) != self.parameter_count:
            raise MalformedPlanError(
                f"Nelson-Siegel has {self.parameter_count} degrees of freedom "
                f"but {len(instruments)} instruments were assigned."
            )
        return self

    def initial_guess(self, raw: Sequence[float]) -> np.ndarray:
        r = np.asarray(raw, dtype=float)
        if len(r) == 0:
            return np.zeros(3)
        return np.array([r[-1], r[0] - r[-1], 0.0])

    def build_curve(self, name: str, parameters: np.ndarray, context=None) -> YieldCurve:
        return NelsonSiegelCurve(name, self._check_parameters(name, parameters), self.decay)


@dataclass(frozen=True)
class FixedAdjustment(CurveParameterization):
    """A deterministic curve (e.g. a turn-of-year adjustment); no parameters."""
    curve: YieldCurve = None
    fixed_parameter_count = 0

    @property
    def parameter_count(self) -> int:
        return 0

    def adapt(self, instruments: Sequence) -> "CurveParameterization":
        if self.curve is None:
            raise MalformedPlanError("FixedAdjustment requires a curve.")
        if len(instruments):
            raise MalformedPlanError("A fixed adjustment cannot absorb calibration instruments.")
        return self

    def initial_guess(self, raw: Sequence[float]) -> np.ndarray:
        return np.zeros(0)

    def build_curve(self, name: str, parameters: np.ndarray, context=None) -> YieldCurve:
        self._check_parameters(name, parameters)
        return FixedCurve(name, self.curve)


def _part_name(name: str, i: int) -> str:
    return f"{name}[{i}]"


@dataclass(frozen=True)
class _CompositeScheme(CurveParameterization):
    parts: Tuple[CurveParameterization, ...] = ()
    # instruments given to each part, fixed by adapt()
    instrument_counts: Optional[Tuple[int, ...]] = None

    @property
    def parameter_count(self) -> int:
        return sum(p.parameter_count for p in self.parts)

    @property
    def dependencies(self) -> Tuple[str, ...]:
        deps = []
        for p in self.parts:
            deps.extend(d for d in p.dependencies if d not in deps)
        return tuple(deps)

    def _adapt_parts(self, instruments: Sequence, counts: Sequence[int]) -> "CurveParameterization":
        parts = []
        start = 0
        for part, n in zip(self.parts, counts):
            parts.append(part.adapt(list(instruments[start:start + n])))
            start += n
        return replace(self, parts=tuple(parts), instrument_counts=tuple(counts))

    def _split_parameters(self, name: str, parameters) -> list:
        p = self._check_parameters(name, parameters)
        out = []
        start = 0
        for part in self.parts:
            out.append(p[start:start + part.parameter_count])
            start += part.parameter_count
        return out

    def _split_raw(self, raw: Sequence[float]) -> list:
        r = np.asarray(raw, dtype=float)
        counts = self.instrument_counts or tuple(0 for _ in self.parts)
        offsets = np.concatenate([[0], np.cumsum(counts)]).astype(int)
        return [r[offsets[i]:offsets[i + 1]] for i in range(len(self.parts))]

    def _built_parts(self, name: str, parameters, context) -> Tuple[YieldCurve, ...]:
        return tuple(
            part.build_curve(_part_name(name, i), p, context)
            for i, (part, p) in enumerate(zip(self.parts, self._split_parameters(name, parameters)))
        )


@dataclass(frozen=True)
class Additive(_CompositeScheme):
    """
    Curve = sum of independently parameterized parts.

    Instruments are handed to the parts in order: parts with a fixed parameter
    count (functional forms, fixed adjustments) take that many, and the single
    remaining part takes the rest. Pass instrument_counts to split explicitly.

    At most one part may absorb a parallel shift: a functional form plus an
    interpolated residual needs the residual pinned (AnchoredInterpolatedYield),
    otherwise the level is shared between the parts and the stage is singular.
    """

    @property
    def absorbs_parallel_shift(self) -> bool:
        return any(p.absorbs_parallel_shift for p in self.parts)

    def adapt(self, instruments: Sequence) -> "CurveParameterization":
        if not self.parts:
            raise MalformedPlanError("An additive curve needs at least one part.")
        counts = self.instrument_counts
        if counts is None:
            flexible = [i for i, p in enumerate(self.parts) if p.fixed_parameter_count is None]
            if len(flexible) > 1:
                raise MalformedPlanError(
                    "More than one part has a free instrument count; give instrument_counts."
                )
            fixed_total = sum(p.fixed_parameter_count or 0 for p in self.parts)
            rest = len(instruments) - fixed_total
            if rest < 0 or (rest > 0 and not flexible):
                raise MalformedPlanError(
                    f"Additive curve parts need {fixed_total} instruments plus the free part's; "
                    f"{len(instruments)} were assigned."
                )
            counts = tuple(
                rest if p.fixed_parameter_count is None else p.fixed_parameter_count
                for p in self.parts
            )
        if len(counts) != len(self.parts) or sum(counts) != len(instruments):
            raise MalformedPlanError("instrument_counts must cover every instrument exactly once.")
        shifting = [type(p).__name__ for p in self.parts if p.absorbs_parallel_shift]
        if len(shifting) > 1:
            raise MalformedPlanError(
                f"Additive parts {shifting} can each absorb a parallel shift, so their levels "
                "cannot be identified; pin all but one (e.g. AnchoredInterpolatedYield)."
            )
        return self._adapt_parts(instruments, counts)

    def initial_guess(self, raw: Sequence[float]) -> np.ndarray:
        # the first part carrying parameters takes the rate guesses; later
        # parts start from zero as corrections to it
        guesses = []
        seeded = False
        for part, r in zip(self.parts, self._split_raw(raw)):
            g = part.initial_guess(r)
            if seeded:
                g = part.initial_guess(np.zeros(len(r)))
            seeded = seeded or len(g) > 0
            guesses.append(g)
        return np.concatenate(guesses) if guesses else np.zeros(0)

    def build_curve(self, name: str, parameters: np.ndarray, context=None) -> YieldCurve:
        return AdditiveCurve(name, self._built_parts(name, parameters, context))


@dataclass(frozen=True)
class Segmented(_CompositeScheme):
    """
    Different schemes on different time ranges.

    Part i covers maturities in (boundaries[i-1], boundaries[i]] and is adapted
    to the instruments maturing there; the last boundary may be inf.
    """
    boundaries: Tuple[float, ...] = ()

    @property
    def absorbs_parallel_shift(self) -> bool:
        return bool(self.parts) and all(p.absorbs_parallel_shift for p in self.parts)

    def adapt(self, instruments: Sequence) -> "CurveParameterization":
        if not self.parts or len(self.parts) != len(self.boundaries):
            raise MalformedPlanError("A segmented curve needs one boundary per part.")
        if np.any(np.diff(self.boundaries) <= 0.0):
            raise MalformedPlanError("Segment boundaries must be increasing.")
        times = instrument_times(instruments)
        if len(times) and times[-1] > self.boundaries[-1]:
            raise MalformedPlanError("An instrument matures beyond the last segment boundary.")
        edges = np.searchsorted(times, np.asarray(self.boundaries, dtype=float), side="right")
        counts = tuple(int(c) for c in np.diff(np.concatenate([[0], edges])))
        return self._adapt_parts(instruments, counts)

    def initial_guess(self, raw: Sequence[float]) -> np.ndarray:
        guesses = [part.initial_guess(r) for part, r in zip(self.parts, self._split_raw(raw))]
        return np.concatenate(guesses) if guesses else np.zeros(0)

    def build_curve(self, name: str, parameters: np.ndarray, context=None) -> YieldCurve:
        return SegmentedCurve(name, self._built_parts(name, parameters, context), tuple(self.boundaries))


@dataclass(frozen=True)
class Spread(CurveParameterization):
    """
    Curve = an already resolved curve (by name) + a parameterized spread.

    Only the spread is calibrated; the base contributes its sensitivities
    through the chain rule.
    """
    base: str = ""
    spread: CurveParameterization = field(default_factory=InterpolatedYield)

    @property
    def parameter_count(self) -> int:
        return self.spread.parameter_count

    @property
    def absorbs_parallel_shift(self) -> bool:
        return self.spread.absorbs_parallel_shift

    @property
    def dependencies(self) -> Tuple[str, ...]:
        return (self.base,) + tuple(d for d in self.spread.dependencies if d != self.base)

    def adapt(self, instruments: Sequence) -> "CurveParameterization":
        if not self.base:
            raise MalformedPlanError("A spread curve needs the name of its base curve.")
        return replace(self, spread=self.spread.adapt(instruments))

    def initial_guess(self, raw: Sequence[float]) -> np.ndarray:
        # the base already carries the level of rates
        return self.spread.initial_guess(np.zeros(len(raw)))

    def build_curve(self, name: str, parameters: np.ndarray, context=None) -> YieldCurve:
        if context is None:
            raise ValueError(f"{name}: a market context is needed to resolve '{self.base}'.")
        base = context.curve_by_name(self.base)
        spread = self.spread.build_curve(f"{name}[spread]", self._check_parameters(name, parameters), context)
        return SpreadCurve(name, base, spread)
