import pandas as pd

from multicurve_engine.instruments import instruments_from_frame
from multicurve_engine.market import Discounting, OvernightForward, TermForward
from multicurve_engine.parameterization import InterpolatedYield
from multicurve_engine.plan import CurveSlot

OIS_NAME = "USD-OIS"
LIBOR_NAME = "USD-LIBOR3M"
LIBOR_INDEX = "USD-LIBOR3M"


def ois_frame() -> pd.DataFrame:
    """12 quotes: 3 deposits + 9 annual OIS."""
    rows = [
        {"type": "deposit", "end": 1 / 12, "quote": 0.0400},
        {"type": "deposit", "end": 0.25, "quote": 0.0405},
        {"type": "deposit", "end": 0.5, "quote": 0.0410},
    ]
    for end, quote in [(1, 0.0415), (2, 0.0420), (3, 0.0425), (4, 0.0428), (5, 0.0430),
                       (7, 0.0433), (10, 0.0436), (15, 0.0438), (20, 0.0440)]:
        rows.append({"type": "ois", "end": float(end), "quote": quote, "index": "USD-SOFR", "frequency": 1})
    market = pd.DataFrame(rows)
    market["currency"] = "USD"
    market["start"] = 0.0
    return market


def libor_frame() -> pd.DataFrame:
    """8 quotes: 3 FRAs + 5 swaps (annual fixed vs quarterly 3M)."""
    rows = [
        {"type": "fra", "start": 0.0, "end": 0.25, "quote": 0.0450},
        {"type": "fra", "start": 0.25, "end": 0.5, "quote": 0.0455},
        {"type": "fra", "start": 0.5, "end": 0.75, "quote": 0.0458},
    ]
    for end, quote in [(2, 0.0462), (3, 0.0465), (5, 0.0468), (7, 0.0470), (10, 0.0472)]:
        rows.append({"type": "irs", "start": 0.0, "end": float(end), "quote": quote,
                     "fixed_freq": 1, "float_freq": 4})
    market = pd.DataFrame(rows)
    market["currency"] = "USD"
    market["index"] = LIBOR_INDEX
    return market


def fra_only_frame() -> pd.DataFrame:
    rows = [
        {"type": "fra", "start": 0.0, "end": 0.25, "quote": 0.0450},
        {"type": "fra", "start": 0.25, "end": 0.5, "quote": 0.0455},
        {"type": "fra", "start": 0.5, "end": 0.75, "quote": 0.0458},
        {"type": "fra", "start": 0.75, "end": 1.0, "quote": 0.0461},
    ]
    market = pd.DataFrame(rows)
    market["index"] = LIBOR_INDEX
    return market


def ois_slot(parameterization=None, frame=None) -> CurveSlot:
    return CurveSlot(
        OIS_NAME,
        instruments_from_frame(ois_frame() if frame is None else frame),
        parameterization or InterpolatedYield(),
        roles=(Discounting("USD"), OvernightForward("USD-SOFR")),
    )


def libor_slot(parameterization=None, frame=None) -> CurveSlot:
    return CurveSlot(
        LIBOR_NAME,
        instruments_from_frame(libor_frame() if frame is None else frame),
        parameterization or InterpolatedYield(),
        roles=(TermForward(LIBOR_INDEX),),
    )


