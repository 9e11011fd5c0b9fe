import numpy as np
import pandas as pd
import pytest

from multicurve_engine import (
    Discounting,
    FxMatrix,
    MalformedPlanError,
    MarketContext,
    OvernightForward,
    TermForward,
    UnresolvedDependencyError,
)
from multicurve_engine.curves import InterpolatedYieldCurve
from multicurve_engine.instruments import (
    Deposit,
    ForwardRateAgreement,
    FxForwardPoints,
    InterestRateSwap,
    OvernightIndexSwap,
    instruments_from_frame,
)
from multicurve_engine.utils import accrual_periods, as_time, period_times, yearfrac

TIMES = np.array([0.25, 0.5, 1.0, 2.0, 5.0])


def usd_curve(values):
    return InterpolatedYieldCurve("USD-OIS", TIMES, values)


def libor_curve(values):
    return InterpolatedYieldCurve("USD-LIBOR3M", TIMES, values)


def eur_curve(values):
    return InterpolatedYieldCurve("EUR-OIS", TIMES, values)


USD = np.array([0.040, 0.041, 0.042, 0.043, 0.044])
LIBOR = np.array([0.045, 0.046, 0.047, 0.0475, 0.048])
EUR = np.array([0.020, 0.021, 0.022, 0.023, 0.025])

ROLES = {
    Discounting("USD"): "USD-OIS",
    OvernightForward("USD-SOFR"): "USD-OIS",
    TermForward("USD-LIBOR3M"): "USD-LIBOR3M",
    Discounting("EUR"): "EUR-OIS",
}


def context(usd=USD, libor=LIBOR, eur=EUR, fixings=None):
    curves = {"USD-OIS": usd_curve(usd), "USD-LIBOR3M": libor_curve(libor), "EUR-OIS": eur_curve(eur)}
    return MarketContext(curves, ROLES, FxMatrix("USD", {"EUR": 1.10}), fixings)


@pytest.fixture(scope="module")
def ctx():
    return context()


# ---- market context ----

def test_roles_resolve_to_curves(ctx):
    assert ctx.curve(Discounting("USD")).name == "USD-OIS"
    assert ctx.resolve(OvernightForward("USD-SOFR")) is ctx.curve_by_name("USD-OIS")
    assert "EUR-OIS" in ctx
    assert set(ctx.names) == {"USD-OIS", "USD-LIBOR3M", "EUR-OIS"}


def test_missing_role_or_curve(ctx):
    with pytest.raises(UnresolvedDependencyError, match="GBP"):
        ctx.curve(Discounting("GBP"))
    with pytest.raises(UnresolvedDependencyError):
        ctx.curve_by_name("GBP-OIS")
    with pytest.raises(UnresolvedDependencyError):
        MarketContext({}, {Discounting("USD"): "USD-OIS"})


def test_with_added_returns_a_new_context(ctx):
    extra = InterpolatedYieldCurve("GBP-OIS", TIMES, EUR)
    bigger = ctx.with_added({"GBP-OIS": extra}, {Discounting("GBP"): "GBP-OIS"})

    assert bigger.curve(Discounting("GBP")) is extra
    assert "GBP-OIS" not in ctx
    assert bigger.fx is ctx.fx

    with pytest.raises(MalformedPlanError):
        bigger.with_added({"GBP-OIS": extra})
    with pytest.raises(MalformedPlanError):
        ctx.with_added({"OTHER": extra}, {Discounting("USD"): "OTHER"})
    # existing curves can never be overwritten
    with pytest.raises(TypeError):
        bigger.with_added({"GBP-OIS": extra}, replace=True)


def test_context_views_are_read_only(ctx):
    with pytest.raises(TypeError):
        ctx.curves["X"] = None
    with pytest.raises(TypeError):
        ctx.roles[Discounting("X")] = "X"


def test_fx_matrix_cross_rates():
    fx = FxMatrix("USD", {"EUR": 1.10, "GBP": 1.25})
    assert fx.rate("EUR", "USD") == pytest.approx(1.10)
    assert fx.rate("USD", "EUR") == pytest.approx(1.0 / 1.10)
    assert fx.rate("GBP", "EUR") == pytest.approx(1.25 / 1.10)
    assert fx.convert(100.0, "EUR", "USD") == pytest.approx(110.0)
    with pytest.raises(UnresolvedDependencyError):
        fx.rate("JPY", "USD")
    with pytest.raises(ValueError):
        FxMatrix("USD", {"EUR": -1.0})


def test_context_convenience_lookups(ctx):
    usd = ctx.curve_by_name("USD-OIS")
    assert ctx.discount_factor("USD", 2.0) == usd.discount_factor(2.0)
    assert ctx.forward_rate(OvernightForward("USD-SOFR"), 1.0, 2.0) == usd.forward_rate(1.0, 2.0)
    assert ctx.fx_convert(100.0, "EUR", "USD") == pytest.approx(110.0)
    assert ctx.fx_rate("USD", "EUR") == pytest.approx(1.0 / 1.10)


def test_fixings_lookup():
    ctx = context(fixings={"USD-LIBOR3M": {0.0: 0.0449, 0.25: 0.0452}})
    assert ctx.fixing("USD-LIBOR3M", 0.0) == 0.0449
    assert ctx.fixing("USD-LIBOR3M", 0.25 + 1e-12) == 0.0452
    assert ctx.fixing("USD-LIBOR3M", 0.5) is None
    assert ctx.fixing("EUR-6M", 0.0) is None
    assert ctx.with_fixings(None).fixing("USD-LIBOR3M", 0.0) is None


# ---- instrument gradients ----

def bumped(instrument, which, values, h=1e-7):
    grad = np.zeros(len(values))
    for i in range(len(values)):
        up, down = values.copy(), values.copy()
        up[i] += h
        down[i] -= h
        grad[i] = (instrument.model_quote(context(**{which: up})) - instrument.model_quote(context(**{which: down}))) / (2 * h)
    return grad


INSTRUMENTS = [
    Deposit("USD", 0.0, 0.5, 0.041),
    Deposit("USD", 0.25, 0.75, 0.041),
    ForwardRateAgreement("USD-LIBOR3M", 0.5, 0.75, 0.046),
    OvernightIndexSwap("USD", "USD-SOFR", 0.0, 3.0, 0.042),
    OvernightIndexSwap("USD", "USD-SOFR", 0.0, 2.0, 0.042, frequency=2),
    InterestRateSwap("USD", "USD-LIBOR3M", 0.0, 3.0, 0.047),
    InterestRateSwap("USD", "USD-LIBOR3M", 0.5, 2.5, 0.047, fixed_frequency=2, float_frequency=4),
    FxForwardPoints("USD", "EUR", 2.0, 0.04),
]


@pytest.mark.parametrize("instrument", INSTRUMENTS, ids=lambda inst: inst.name)
def test_model_quote_gradients_match_bumps(ctx, instrument):
    sens = instrument.model_quote_sensitivity(ctx)
    for which, name, values in (("usd", "USD-OIS", USD), ("libor", "USD-LIBOR3M", LIBOR), ("eur", "EUR-OIS", EUR)):
        fd = bumped(instrument, which, values)
        analytic = sens.get(name, np.zeros(len(values)))
        np.testing.assert_allclose(analytic, fd, atol=1e-7, err_msg=f"{instrument.name} vs {name}")


def test_fra_does_not_depend_on_discounting(ctx):
    sens = ForwardRateAgreement("USD-LIBOR3M", 0.5, 0.75, 0.046).model_quote_sensitivity(ctx)
    assert set(sens) == {"USD-LIBOR3M"}


def test_residual_is_model_minus_market(ctx):
    dep = Deposit("USD", 0.0, 1.0, 0.05)
    assert dep.residual(ctx) == pytest.approx(dep.model_quote(ctx) - 0.05)
    assert dep.with_quote(0.03).quote == 0.03
    assert dep.name == "Deposit(1)"
    assert Deposit("USD", 0.0, 1.0, 0.05, label="1Y").name == "1Y"


def test_ois_par_rate_single_curve(ctx):
    ois = OvernightIndexSwap("USD", "USD-SOFR", 0.0, 2.0, 0.0)
    disc = ctx.curve(Discounting("USD"))
    annuity = disc.discount_factor(1.0) + disc.discount_factor(2.0)
    assert ois.model_quote(ctx) == pytest.approx((1.0 - disc.discount_factor(2.0)) / annuity)


def test_swap_uses_fixing_for_first_coupon():
    irs = InterestRateSwap("USD", "USD-LIBOR3M", 0.0, 2.0, 0.047)
    plain = irs.model_quote(context())
    fixed = irs.model_quote(context(fixings={"USD-LIBOR3M": {0.0: 0.10}}))
    assert fixed > plain

    # the fixed coupon carries no forward-curve risk for the first period
    sens = irs.model_quote_sensitivity(context(fixings={"USD-LIBOR3M": {0.0: 0.10}}))
    single_period = (
        InterestRateSwap("USD", "USD-LIBOR3M", 0.0, 0.25, 0.0, float_frequency=4)
        .model_quote_sensitivity(context(fixings={"USD-LIBOR3M": {0.0: 0.10}}))
    )
    assert "USD-LIBOR3M" not in single_period
    assert "USD-LIBOR3M" in sens


def test_fx_points_sign(ctx):
    pts = FxForwardPoints("USD", "EUR", 1.0, 0.0)
    # EUR rates below USD rates: EUR trades at a forward premium
    assert pts.model_quote(ctx) > 0.0


# ---- quote tables ----

def test_instruments_from_frame_with_dates():
    val_date = pd.Timestamp("2026-02-13")
    market = pd.DataFrame(
        [
            {"type": "deposit", "currency": "USD", "end": pd.Timestamp("2026-08-13"), "quote": 0.041, "label": "6M"},
            {"type": "fra", "index": "USD-LIBOR3M", "start": pd.Timestamp("2026-05-13"),
             "end": pd.Timestamp("2026-08-13"), "quote": 0.046},
            {"type": "irs", "currency": "USD", "index": "USD-LIBOR3M", "end": pd.Timestamp("2029-02-13"),
             "quote": 0.047, "fixed_freq": 2},
            {"type": "fx_points", "currency": "USD", "foreign": "EUR", "end": pd.Timestamp("2027-02-13"), "quote": 0.02},
        ]
    )
    deposit, fra, irs, pts = instruments_from_frame(market, val_date)

    assert isinstance(deposit, Deposit) and deposit.label == "6M"
    assert deposit.start == 0.0
    assert deposit.end == pytest.approx(yearfrac(val_date, pd.Timestamp("2026-08-13")))
    assert isinstance(fra, ForwardRateAgreement)
    assert fra.start == pytest.approx(89 / 365)
    assert isinstance(irs, InterestRateSwap)
    assert irs.fixed_frequency == 2 and irs.float_frequency == 4
    assert isinstance(pts, FxForwardPoints) and pts.foreign == "EUR" and pts.domestic == "USD"


def test_instruments_from_frame_rejects_unknown_types():
    with pytest.raises(ValueError, match="Unsupported instrument type"):
        instruments_from_frame(pd.DataFrame([{"type": "cap", "end": 1.0, "quote": 0.01}]))


def test_dates_need_a_valuation_date():
    with pytest.raises(ValueError):
        as_time(pd.Timestamp("2027-01-01"))
    assert as_time(1.5) == 1.5


# ---- schedules and day counts ----

def test_schedule_steps_back_from_maturity():
    assert period_times(0.0, 2.0, 1) == [1.0, 2.0]
    assert period_times(0.0, 1.25, 2) == pytest.approx([0.25, 0.75, 1.25])
    periods = accrual_periods(0.0, 1.25, 2)
    assert periods[0] == pytest.approx((0.0, 0.25, 0.25))
    assert sum(tau for _, _, tau in periods) == pytest.approx(1.25)
    with pytest.raises(ValueError):
        period_times(1.0, 1.0, 4)


def test_yearfrac_conventions():
    start, end = pd.Timestamp("2026-01-31"), pd.Timestamp("2026-07-31")
    assert yearfrac(start, end, "ACT/365") == pytest.approx(181 / 365)
    assert yearfrac(start, end, "ACT/360") == pytest.approx(181 / 360)
    assert yearfrac(start, end, "30/360") == pytest.approx(0.5)
    with pytest.raises(ValueError):
        yearfrac(end, start)
    with pytest.raises(ValueError):
        yearfrac(start, end, "BUS/252")
