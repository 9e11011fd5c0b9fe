"""
Calibration instruments quoted in market-quote convention.

Each instrument computes its model quote (par rate, forward points) from a
MarketContext together with the exact gradient of that quote with respect to
the parameters of every curve involved. The calibration residual is

    residual = model quote - market quote

so d(residual)/d(market quote) = -1 for every instrument.
"""
from __future__ import annotations

import pandas as pd
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

from .curves import Sensitivity, add_scaled
from .market import Discounting, MarketContext, OvernightForward, TermForward
from .utils import accrual_periods, as_time


class CalibrationInstrument:
    quote: float
    label: Optional[str]

    @property
    def maturity(self) -> float:
        """Node time this instrument pins on the curve it calibrates."""
        return float(self.end)

    def model_quote(self, context: MarketContext) -> float:
        raise NotImplementedError

    def model_quote_sensitivity(self, context: MarketContext) -> Sensitivity:
        raise NotImplementedError

    def residual(self, context: MarketContext) -> float:
        return self.model_quote(context) - self.quote

    def sensitivity(self, context: MarketContext) -> Sensitivity:
        return self.model_quote_sensitivity(context)

    def with_quote(self, quote: float) -> "CalibrationInstrument":
        return replace(self, quote=float(quote))

    @property
    def name(self) -> str:
        if self.label:
            return self.label
        return f"{type(self).__name__}({self.maturity:g})"


def par_spread(instrument: CalibrationInstrument, context: MarketContext) -> float:
    """Default residual function: model quote minus market quote."""
    return instrument.residual(context)


def par_spread_sensitivity(instrument: CalibrationInstrument, context: MarketContext) -> Sensitivity:
    """Default sensitivity function: gradient of the model quote."""
    return instrument.sensitivity(context)


# ---- shared leg computations ----

def _annuity(context: MarketContext, currency: str, periods) -> Tuple[float, Sensitivity]:
    disc = context.curve(Discounting(currency))
    value = 0.0
    sens: Sensitivity = {}
    for _, end, tau in periods:
        value += tau * disc.discount_factor(end)
        add_scaled(sens, disc.discount_factor_sensitivity(end), tau)
    return value, sens


def _floating_leg(
    context: MarketContext,
    currency: str,
    role,
    periods,
    fixing: Optional[float] = None,
) -> Tuple[float, Sensitivity]:
    """
    PV of a unit-notional floating leg paying the simple forward of `role`.

    When `fixing` is given it replaces the first period's forward rate.
    """
    disc = context.curve(Discounting(currency))
    fwd = context.curve(role)
    value = 0.0
    sens: Sensitivity = {}
    for i, (start, end, tau) in enumerate(periods):
        p = disc.discount_factor(end)
        dp = disc.discount_factor_sensitivity(end)
        if i == 0 and fixing is not None:
            f, df = fixing, {}
        else:
            f, df = fwd.forward_rate(start, end), fwd.forward_rate_sensitivity(start, end)
        value += tau * f * p
        add_scaled(sens, dp, tau * f)
        add_scaled(sens, df, tau * p)
    return value, sens


def _ratio(num: float, dnum: Sensitivity, den: float, dden: Sensitivity) -> Tuple[float, Sensitivity]:
    value = num / den
    sens: Sensitivity = {}
    add_scaled(sens, dnum, 1.0 / den)
    add_scaled(sens, dden, -value / den)
    return value, sens


# ---- instruments ----

@dataclass(frozen=True)
class Deposit(CalibrationInstrument):
    """Money-market deposit; the simple rate of the discounting curve."""
    currency: str
    start: float
    end: float
    quote: float
    label: Optional[str] = None

    def model_quote(self, context: MarketContext) -> float:
        return context.curve(Discounting(self.currency)).forward_rate(self.start, self.end)

    def model_quote_sensitivity(self, context: MarketContext) -> Sensitivity:
        return context.curve(Discounting(self.currency)).forward_rate_sensitivity(self.start, self.end)


@dataclass(frozen=True)
class ForwardRateAgreement(CalibrationInstrument):
    """FRA on a term index; the par rate does not depend on discounting."""
    index: str
    start: float
    end: float
    quote: float
    label: Optional[str] = None

    def model_quote(self, context: MarketContext) -> float:
        return context.forward_rate(TermForward(self.index), self.start, self.end)

    def model_quote_sensitivity(self, context: MarketContext) -> Sensitivity:
        return context.curve(TermForward(self.index)).forward_rate_sensitivity(self.start, self.end)


@dataclass(frozen=True)
class OvernightIndexSwap(CalibrationInstrument):
    """Fixed vs compounded overnight; both legs pay with `frequency`."""
    currency: str
    index: str
    start: float
    end: float
    quote: float
    frequency: int = 1
    label: Optional[str] = None

    def _par(self, context: MarketContext) -> Tuple[float, Sensitivity]:
        periods = accrual_periods(self.start, self.end, self.frequency)
        annuity, d_annuity = _annuity(context, self.currency, periods)
        floating, d_floating = _floating_leg(context, self.currency, OvernightForward(self.index), periods)
        return _ratio(floating, d_floating, annuity, d_annuity)

    def model_quote(self, context: MarketContext) -> float:
        return self._par(context)[0]

    def model_quote_sensitivity(self, context: MarketContext) -> Sensitivity:
        return self._par(context)[1]


@dataclass(frozen=True)
class InterestRateSwap(CalibrationInstrument):
    """
    Fixed vs term-index floating swap.

    If the market context holds a fixing of the index at the swap start (a
    same-day fixing), the first floating coupon uses it instead of the curve.
    """
    currency: str
    index: str
    start: float
    end: float
    quote: float
    fixed_frequency: int = 1
    float_frequency: int = 4
    label: Optional[str] = None

    def _par(self, context: MarketContext) -> Tuple[float, Sensitivity]:
        fixed = accrual_periods(self.start, self.end, self.fixed_frequency)
        floating = accrual_periods(self.start, self.end, self.float_frequency)
        annuity, d_annuity = _annuity(context, self.currency, fixed)
        fixing = context.fixing(self.index, self.start)
        leg, d_leg = _floating_leg(context, self.currency, TermForward(self.index), floating, fixing)
        return _ratio(leg, d_leg, annuity, d_annuity)

    def model_quote(self, context: MarketContext) -> float:
        return self._par(context)[0]

    def model_quote_sensitivity(self, context: MarketContext) -> Sensitivity:
        return self._par(context)[1]


@dataclass(frozen=True)
class FxForwardPoints(CalibrationInstrument):
    """
    Forward points of foreign/domestic to `end`:

        points = S * (D_foreign(T) / D_domestic(T) - 1)

    with S the spot in units of domestic per unit of foreign.
    """
    domestic: str
    foreign: str
    end: float
    quote: float
    label: Optional[str] = None

    def _points(self, context: MarketContext) -> Tuple[float, Sensitivity]:
        spot = context.fx_rate(self.foreign, self.domestic)
        dom = context.curve(Discounting(self.domestic))
        fgn = context.curve(Discounting(self.foreign))
        p_d, p_f = dom.discount_factor(self.end), fgn.discount_factor(self.end)
        value = spot * (p_f / p_d - 1.0)
        sens: Sensitivity = {}
        add_scaled(sens, fgn.discount_factor_sensitivity(self.end), spot / p_d)
        add_scaled(sens, dom.discount_factor_sensitivity(self.end), -spot * p_f / (p_d * p_d))
        return value, sens

    def model_quote(self, context: MarketContext) -> float:
        return self._points(context)[0]

    def model_quote_sensitivity(self, context: MarketContext) -> Sensitivity:
        return self._points(context)[1]


def _opt_str(row, key: str, default: Optional[str] = None) -> Optional[str]:
    v = row.get(key, default)
    if v is None or pd.isna(v):
        return default
    return str(v)


def _opt_int(row, key: str, default: int) -> int:
    v = row.get(key, default)
    if v is None or pd.isna(v):
        return default
    return int(v)


def instruments_from_frame(
    market: pd.DataFrame,
    val_date: Optional[pd.Timestamp] = None,
    day_count: str = "ACT/365",
) -> List[CalibrationInstrument]:
    """
    Build instruments from a quote table, one row per instrument, in row order.

    Columns: type (deposit / fra / ois / irs / fx_points), end, quote and, as
    needed, start (default 0), currency, index, foreign, frequency,
    fixed_freq, float_freq, label. start/end may be year fractions or dates;
    dates need val_date.
    """
    out: List[CalibrationInstrument] = []
    for _, row in market.iterrows():
        kind = str(row["type"]).lower()
        raw_start = row.get("start", 0.0)
        if raw_start is None or pd.isna(raw_start):
            raw_start = 0.0
        start = as_time(raw_start, val_date, day_count)
        end = as_time(row["end"], val_date, day_count)
        quote = float(row["quote"])
        label = _opt_str(row, "label")

        if kind == "deposit":
            out.append(Deposit(str(row["currency"]), start, end, quote, label))
        elif kind == "fra":
            out.append(ForwardRateAgreement(str(row["index"]), start, end, quote, label))
        elif kind == "ois":
            out.append(
                OvernightIndexSwap(
                    str(row["currency"]), str(row["index"]), start, end, quote,
                    _opt_int(row, "frequency", 1), label,
                )
            )
        elif kind == "irs":
            out.append(
                InterestRateSwap(
                    str(row["currency"]), str(row["index"]), start, end, quote,
                    _opt_int(row, "fixed_freq", 1), _opt_int(row, "float_freq", 4), label,
                )
            )
        elif kind == "fx_points":
            out.append(FxForwardPoints(str(row["currency"]), str(row["foreign"]), end, quote, label))
        else:
            raise ValueError(f"Unsupported instrument type: {row['type']}")
    return out
