from __future__ import annotations

import numpy as np
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from .errors import MalformedPlanError, UnresolvedDependencyError
from .instruments import CalibrationInstrument, par_spread, par_spread_sensitivity
from .parameterization import CurveParameterization, InterpolatedYield

# Instrument-level guess used when a slot does not provide one.
DEFAULT_RATE_GUESS = 0.01


@dataclass(frozen=True)
class CurveSlot:
    """
    One curve to calibrate: its unique name, the instruments that pin it
    (in declaration order), the scheme that turns parameters into a curve, the
    roles the curve fills once resolved, and optional instrument-level rate
    guesses.
    """
    name: str
    instruments: Tuple[CalibrationInstrument, ...]
    parameterization: CurveParameterization = field(default_factory=InterpolatedYield)
    roles: Tuple[object, ...] = ()
    initial_guess: Optional[Tuple[float, ...]] = None

    def __post_init__(self):
        object.__setattr__(self, "instruments", tuple(self.instruments))
        object.__setattr__(self, "roles", tuple(self.roles))
        if self.initial_guess is not None:
            object.__setattr__(self, "initial_guess", tuple(float(v) for v in self.initial_guess))

    @property
    def quote_count(self) -> int:
        return len(self.instruments)


@dataclass(frozen=True)
class Stage:
    """Curve slots solved jointly as a single root-finding problem."""
    slots: Tuple[CurveSlot, ...]

    def __post_init__(self):
        object.__setattr__(self, "slots", tuple(self.slots))

    @classmethod
    def of(cls, *slots: CurveSlot) -> "Stage":
        return cls(tuple(slots))

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(s.name for s in self.slots)

    @property
    def instruments(self) -> Tuple[CalibrationInstrument, ...]:
        return tuple(inst for s in self.slots for inst in s.instruments)


@dataclass(frozen=True, eq=False)
class AdaptedSlot:
    """A slot with its parameterization fixed to its instruments."""
    slot: CurveSlot
    parameterization: CurveParameterization
    guess: np.ndarray

    @property
    def name(self) -> str:
        return self.slot.name

    @property
    def parameter_count(self) -> int:
        return self.parameterization.parameter_count

    @property
    def instruments(self) -> Tuple[CalibrationInstrument, ...]:
        return self.slot.instruments


@dataclass(frozen=True)
class CalibrationPlan:
    """
    Ordered stages plus the residual and sensitivity functions used to
    evaluate every instrument.
    """
    stages: Tuple[Stage, ...]
    residual_function: Callable = par_spread
    sensitivity_function: Callable = par_spread_sensitivity

    def __post_init__(self):
        object.__setattr__(self, "stages", tuple(self.stages))

    @classmethod
    def sequential(cls, *slots: CurveSlot, **kwargs) -> "CalibrationPlan":
        """One stage per slot, in the given order."""
        return cls(tuple(Stage.of(s) for s in slots), **kwargs)

    @classmethod
    def joint(cls, *slots: CurveSlot, **kwargs) -> "CalibrationPlan":
        """All slots in a single stage."""
        return cls((Stage.of(*slots),), **kwargs)

    @property
    def slots(self) -> Tuple[CurveSlot, ...]:
        return tuple(s for stage in self.stages for s in stage.slots)

    def adapt(self, known_names: Iterable[str] = (), known_roles: Iterable[object] = ()) -> List[List[AdaptedSlot]]:
        """
        Validate the plan against the known data and adapt every slot.

        Raises MalformedPlanError for duplicate names or roles, bad guesses,
        incompatible instruments and equation/unknown count mismatches, and
        UnresolvedDependencyError when a slot is expressed over a curve that is
        neither known nor built earlier.
        """
        if not self.stages:
            raise MalformedPlanError("A calibration plan needs at least one stage.")

        available = set(known_names)
        taken_roles = set(known_roles)
        seen = set()
        adapted: List[List[AdaptedSlot]] = []

        for k, stage in enumerate(self.stages):
            if not stage.slots:
                raise MalformedPlanError(f"Stage {k} has no curve slots.")
            stage_slots: List[AdaptedSlot] = []
            for slot in stage.slots:
                if slot.name in seen or slot.name in available:
                    raise MalformedPlanError(f"Duplicate curve name '{slot.name}'.")
                seen.add(slot.name)
                for role in slot.roles:
                    if role in taken_roles:
                        raise MalformedPlanError(f"Role {role} is filled more than once.")
                    taken_roles.add(role)

                for dep in slot.parameterization.dependencies:
                    if dep not in available:
                        raise UnresolvedDependencyError(
                            f"Curve '{slot.name}' is built over '{dep}', which is neither "
                            "known data nor calibrated before it."
                        )

                stage_slots.append(_adapt_slot(slot))
                available.add(slot.name)

            unknowns = sum(s.parameter_count for s in stage_slots)
            equations = sum(len(s.instruments) for s in stage_slots)
            if unknowns == 0:
                raise MalformedPlanError(f"Stage {k} has no parameters to solve for.")
            if unknowns != equations:
                raise MalformedPlanError(
                    f"Stage {k} has {equations} instruments for {unknowns} parameters."
                )
            adapted.append(stage_slots)

        return adapted


def _adapt_slot(slot: CurveSlot) -> AdaptedSlot:
    pz = slot.parameterization.adapt(slot.instruments)
    n = len(slot.instruments)
    if slot.initial_guess is None:
        raw = np.full(n, DEFAULT_RATE_GUESS)
    else:
        raw = np.asarray(slot.initial_guess, dtype=float)
        if len(raw) != n:
            raise MalformedPlanError(
                f"Curve '{slot.name}': {len(raw)} initial guesses for {n} instruments."
            )
    guess = np.asarray(pz.initial_guess(raw), dtype=float)
    if guess.shape != (pz.parameter_count,):
        raise MalformedPlanError(
            f"Curve '{slot.name}': initial guess maps to {guess.shape}, expected {pz.parameter_count} parameters."
        )
    return AdaptedSlot(slot, pz, guess)


def quote_labels(slots: Sequence[AdaptedSlot]) -> List[str]:
    return [f"{s.name}:{inst.name}" for s in slots for inst in s.instruments]
