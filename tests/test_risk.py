import numpy as np
import pytest

from market_data import LIBOR_INDEX, LIBOR_NAME, OIS_NAME, libor_slot, ois_slot
from multicurve_engine import CalibrationPlan, run
from multicurve_engine.instruments import InterestRateSwap
from multicurve_engine.risk import (
    instrument_quote_sensitivity,
    market_quote_sensitivity,
    plan_quotes,
    plan_with_quote,
    sensitivity_frame,
)


@pytest.fixture(scope="module")
def plan():
    return CalibrationPlan.sequential(ois_slot(), libor_slot())


@pytest.fixture(scope="module")
def calibrated(plan):
    return run(plan)


def test_calibration_instruments_have_unit_quote_risk(plan, calibrated):
    # every calibration instrument reprices to its own quote whatever the quotes are
    position = 0
    for slot in plan.slots:
        for inst in slot.instruments:
            risk = instrument_quote_sensitivity(inst, calibrated.context, calibrated.bundle)
            expected = np.zeros(calibrated.bundle.quote_count)
            expected[position] = 1.0
            np.testing.assert_allclose(risk, expected, atol=1e-8, err_msg=f"{slot.name}:{inst.name}")
            position += 1


def test_off_grid_swap_risk_matches_recalibration(plan, calibrated):
    swap = InterestRateSwap("USD", LIBOR_INDEX, 0.0, 4.0, 0.0)
    risk = instrument_quote_sensitivity(swap, calibrated.context, calibrated.bundle)

    # a 4Y swap is spanned by the 3Y and 5Y swaps and the discount quotes
    assert risk[16] > 0.1 and risk[17] > 0.1
    assert abs(risk[18]) < 1e-10

    bump = 1e-6
    for quote_index in (5, 16, 17):
        q = plan_quotes(plan)[quote_index]
        up = swap.model_quote(run(plan_with_quote(plan, quote_index, q + bump)).context)
        down = swap.model_quote(run(plan_with_quote(plan, quote_index, q - bump)).context)
        assert risk[quote_index] == pytest.approx((up - down) / (2 * bump), abs=1e-6)


def test_market_quote_sensitivity_ignores_curves_without_blocks(calibrated):
    grads = {OIS_NAME: np.ones(12), "UNKNOWN": np.ones(3)}
    out = market_quote_sensitivity(grads, calibrated.bundle)
    np.testing.assert_allclose(out, np.ones(12) @ calibrated.bundle.padded(OIS_NAME))


def test_sensitivity_frame_labels(calibrated):
    frame = sensitivity_frame(calibrated.bundle, LIBOR_NAME)
    assert frame.shape == (8, 20)
    assert frame.index[0] == f"{LIBOR_NAME}[0]"
    assert frame.columns[12].startswith(f"{LIBOR_NAME}:")
    assert frame.columns[0].startswith(f"{OIS_NAME}:")


def test_plan_with_quote_replaces_one_quote(plan):
    quotes = plan_quotes(plan)
    shifted = plan_quotes(plan_with_quote(plan, 13, 0.05))
    assert shifted[13] == 0.05
    np.testing.assert_array_equal(np.delete(shifted, 13), np.delete(quotes, 13))
    with pytest.raises(IndexError):
        plan_with_quote(plan, 20, 0.05)
    with pytest.raises(IndexError):
        plan_with_quote(plan, -1, 0.05)


def test_bundle_mapping_interface(calibrated):
    bundle = calibrated.bundle
    assert list(bundle) == [OIS_NAME, LIBOR_NAME]
    assert len(bundle) == 2
    offset, matrix = bundle.block(LIBOR_NAME)
    assert offset == 12 and matrix.shape == (8, 20)
    assert bundle.padded(OIS_NAME).shape == (12, 20)
    with pytest.raises(ValueError):
        bundle[LIBOR_NAME].padded(10)
