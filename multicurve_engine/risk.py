from __future__ import annotations

import numpy as np
import pandas as pd
from dataclasses import replace
from typing import Mapping

from .calibration import run
from .market import MarketContext
from .plan import CalibrationPlan, Stage
from .sensitivity import SensitivityBundle


def market_quote_sensitivity(parameter_sensitivity: Mapping[str, np.ndarray], bundle: SensitivityBundle) -> np.ndarray:
    """
    Chain a {curve: dV/dparams} gradient through the bundle to dV/dquotes
    over the bundle's full quote vector. Curves without a block are ignored.
    """
    out = np.zeros(bundle.quote_count, dtype=float)
    for name, grad in parameter_sensitivity.items():
        if name not in bundle:
            continue
        g = np.asarray(grad, dtype=float)
        out += g @ bundle.padded(name)
    return out


def instrument_quote_sensitivity(instrument, context: MarketContext, bundle: SensitivityBundle) -> np.ndarray:
    """d(model quote)/d(market quotes) for any instrument priced off the context."""
    return market_quote_sensitivity(instrument.model_quote_sensitivity(context), bundle)


def sensitivity_frame(bundle: SensitivityBundle, name: str) -> pd.DataFrame:
    """One curve's block as a DataFrame: rows are parameters, columns quotes."""
    block = bundle[name]
    labels = list(bundle.quote_labels[: block.width])
    index = [f"{name}[{i}]" for i in range(block.parameter_count)]
    return pd.DataFrame(block.matrix, index=index, columns=labels)


# ---- bump-and-recalibrate ----

def plan_with_quote(plan: CalibrationPlan, quote_index: int, quote: float) -> CalibrationPlan:
    """
    Copy of `plan` with the quote at position quote_index replaced.

    Positions follow plan order (stage, slot, instrument), which is also the
    bundle's column order when no known bundle is supplied.
    """
    position = 0
    stages = []
    for stage in plan.stages:
        slots = []
        for slot in stage.slots:
            instruments = list(slot.instruments)
            for i, inst in enumerate(instruments):
                if position == quote_index:
                    instruments[i] = inst.with_quote(quote)
                position += 1
            slots.append(replace(slot, instruments=tuple(instruments)))
        stages.append(Stage(tuple(slots)))
    if quote_index < 0 or quote_index >= position:
        raise IndexError(f"Quote index {quote_index} out of range for a plan with {position} quotes.")
    return replace(plan, stages=tuple(stages))


def plan_quotes(plan: CalibrationPlan) -> np.ndarray:
    return np.array([inst.quote for slot in plan.slots for inst in slot.instruments], dtype=float)


def finite_difference_parameter_sensitivity(
    plan: CalibrationPlan,
    curve_name: str,
    quote_index: int,
    bump: float = 1e-6,
    **run_kwargs,
) -> np.ndarray:
    """
    Central difference of a calibrated curve's parameters with respect to one
    quote of the plan, re-running the full plan for each bump.
    """
    q = plan_quotes(plan)[quote_index]
    up = run(plan_with_quote(plan, quote_index, q + bump), **run_kwargs).context.curve_by_name(curve_name)
    down = run(plan_with_quote(plan, quote_index, q - bump), **run_kwargs).context.curve_by_name(curve_name)
    return (up.parameters - down.parameters) / (2.0 * bump)
