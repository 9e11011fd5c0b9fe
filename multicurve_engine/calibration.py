from __future__ import annotations

import logging
import numpy as np
from concurrent.futures import Executor, ThreadPoolExecutor
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from .config import CalibrationConfig
from .curves import Sensitivity, YieldCurve
from .market import MarketContext, roles_for
from .plan import AdaptedSlot, CalibrationPlan, quote_labels
from .rootfinding import NewtonVectorRootFinder
from .sensitivity import SensitivityBundle, assemble_stage_blocks

logger = logging.getLogger(__name__)


class CalibrationResult(NamedTuple):
    context: MarketContext
    bundle: SensitivityBundle


@dataclass(frozen=True, eq=False)
class StageResult:
    curves: Dict[str, YieldCurve]
    context: MarketContext
    parameters: np.ndarray
    jacobian: np.ndarray
    gradients: List[Sensitivity]
    iterations: int


class StageProblem:
    """
    F(x) and dF/dx for one stage.

    x is the concatenation of the slots' parameters in slot order; F stacks
    every slot's instruments in declaration order, evaluated against the prior
    context extended with the curves rebuilt from x.
    """

    def __init__(
        self,
        slots: Sequence[AdaptedSlot],
        context: MarketContext,
        residual_function: Callable,
        sensitivity_function: Callable,
        executor: Optional[Executor] = None,
    ):
        self.slots = list(slots)
        self.context = context
        self.residual_function = residual_function
        self.sensitivity_function = sensitivity_function
        self.executor = executor
        self.instruments = [inst for s in self.slots for inst in s.instruments]

        counts = [s.parameter_count for s in self.slots]
        self.offsets = np.concatenate([[0], np.cumsum(counts)]).astype(int)
        self.size = int(self.offsets[-1])

    @property
    def initial_guess(self) -> np.ndarray:
        return np.concatenate([s.guess for s in self.slots])

    def build(self, x: np.ndarray) -> Tuple[Dict[str, YieldCurve], MarketContext]:
        # slots are added one by one so a later slot may be built over an
        # earlier slot of the same stage
        curves: Dict[str, YieldCurve] = {}
        ctx = self.context
        for j, s in enumerate(self.slots):
            params = x[self.offsets[j]:self.offsets[j + 1]]
            curve = s.parameterization.build_curve(s.name, params, ctx)
            curves[s.name] = curve
            ctx = ctx.with_added({s.name: curve}, roles_for(s.name, s.slot.roles))
        return curves, ctx

    def _visit(self, ctx: MarketContext):
        def one(inst):
            # errstate is per thread, so it is set inside each visit
            with np.errstate(over="raise", divide="raise"):
                return float(self.residual_function(inst, ctx)), dict(self.sensitivity_function(inst, ctx))

        if self.executor is None:
            return [one(inst) for inst in self.instruments]
        return list(self.executor.map(one, self.instruments))

    def evaluate(self, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray, List[Sensitivity], Dict[str, YieldCurve], MarketContext]:
        curves, ctx = self.build(x)
        visited = self._visit(ctx)

        f = np.array([r for r, _ in visited], dtype=float)
        jac = np.zeros((len(self.instruments), self.size), dtype=float)
        for i, (_, grads) in enumerate(visited):
            for j, s in enumerate(self.slots):
                grad = grads.get(s.name)
                if grad is None:
                    continue
                grad = np.asarray(grad, dtype=float)
                if grad.shape != (s.parameter_count,):
                    raise ValueError(
                        f"Sensitivity of {self.instruments[i].name} to '{s.name}' has shape "
                        f"{grad.shape}, expected ({s.parameter_count},)."
                    )
                jac[i, self.offsets[j]:self.offsets[j + 1]] = grad
        return f, jac, [g for _, g in visited], curves, ctx

    def __call__(self, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        f, jac, _, _, _ = self.evaluate(x)
        return f, jac


class StageSolver:
    def __init__(self, config: Optional[CalibrationConfig] = None):
        self.config = config or CalibrationConfig()
        self.root_finder = NewtonVectorRootFinder(self.config.root_tolerance, self.config.max_iterations)

    def solve(
        self,
        slots: Sequence[AdaptedSlot],
        context: MarketContext,
        residual_function: Callable,
        sensitivity_function: Callable,
        executor: Optional[Executor] = None,
        label: str = "stage",
    ) -> StageResult:
        problem = StageProblem(slots, context, residual_function, sensitivity_function, executor)
        root = self.root_finder.solve(problem, problem.initial_guess, label=label)
        # one more pass at the root for the full gradients, including the
        # dependence on curves resolved before this stage
        _, jac, gradients, curves, ctx = problem.evaluate(root.x)
        return StageResult(curves, ctx, root.x, jac, gradients, root.iterations)


class CalibrationPlanDriver:
    """
    Runs the stages of a plan in order.

    Each run starts from the given known data and threads an immutable market
    context and sensitivity bundle through the stages, so runs share no state
    and may execute concurrently.
    """

    def __init__(self, config: Optional[CalibrationConfig] = None):
        self.config = config or CalibrationConfig()
        self.stage_solver = StageSolver(self.config)

    def run(
        self,
        plan: CalibrationPlan,
        known_data: Optional[MarketContext] = None,
        fixings: Optional[Mapping[str, Mapping[float, float]]] = None,
        known_bundle: Optional[SensitivityBundle] = None,
    ) -> CalibrationResult:
        context = known_data if known_data is not None else MarketContext()
        if fixings is not None:
            context = context.with_fixings(fixings)
        bundle = known_bundle if known_bundle is not None else SensitivityBundle()

        stages = plan.adapt(context.names, context.roles)

        with ExitStack() as stack:
            executor = None
            if self.config.max_workers is not None and self.config.max_workers > 1:
                executor = stack.enter_context(ThreadPoolExecutor(max_workers=self.config.max_workers))

            for k, slots in enumerate(stages):
                names = [s.name for s in slots]
                result = self.stage_solver.solve(
                    slots, context, plan.residual_function, plan.sensitivity_function,
                    executor=executor, label=f"stage {k} {names}",
                )
                bundle = assemble_stage_blocks(
                    bundle,
                    [(s.name, s.parameter_count, len(s.instruments)) for s in slots],
                    result.jacobian,
                    result.gradients,
                    quote_labels(slots),
                )
                roles = {}
                for s in slots:
                    roles.update(roles_for(s.name, s.slot.roles))
                context = context.with_added(result.curves, roles)
                logger.info(
                    "Calibrated stage %d %s in %d iterations (%d quote columns)",
                    k, names, result.iterations, bundle.quote_count,
                )

        return CalibrationResult(context, bundle)


def run(
    plan: CalibrationPlan,
    known_data: Optional[MarketContext] = None,
    fixings: Optional[Mapping[str, Mapping[float, float]]] = None,
    known_bundle: Optional[SensitivityBundle] = None,
    config: Optional[CalibrationConfig] = None,
) -> CalibrationResult:
    """Calibrate `plan`; returns the final market context and sensitivity bundle."""
    return CalibrationPlanDriver(config).run(plan, known_data, fixings, known_bundle)
