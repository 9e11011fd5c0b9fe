from __future__ import annotations

import numpy as np
import pandas as pd
from typing import List

# Schedule times closer than this are treated as the same date.
TIME_EPS = 1e-9


def yearfrac(start: pd.Timestamp, end: pd.Timestamp, convention: str = "ACT/365") -> float:
    """
    Year fraction between two dates under a day count convention.

    Supported:
    - ACT/365, ACT/365F
    - ACT/360
    - 30/360, 30/360US (US bond basis)
    """
    start = pd.Timestamp(start)
    end = pd.Timestamp(end)

    convention = convention.upper().replace(" ", "")
    if end < start:
        raise ValueError(f"end < start: {start=} {end=}")

    if convention in ("ACT/365", "ACT/365F"):
        return (end - start).days / 365.0

    if convention == "ACT/360":
        return (end - start).days / 360.0

    if convention in ("30/360", "30/360US"):
        y1, m1, d1 = start.year, start.month, start.day
        y2, m2, d2 = end.year, end.month, end.day

        if d1 == 31:
            d1 = 30
        if d2 == 31 and d1 == 30:
            d2 = 30

        return ((y2 - y1) * 360 + (m2 - m1) * 30 + (d2 - d1)) / 360.0

    raise ValueError(f"Unsupported day count convention: {convention}")


def as_time(value, val_date=None, convention: str = "ACT/365") -> float:
    """Accept either a year fraction or a date (measured from val_date)."""
    if isinstance(value, (pd.Timestamp, np.datetime64)) or hasattr(value, "year"):
        if val_date is None:
            raise ValueError("A valuation date is required to convert dates to times.")
        return yearfrac(val_date, value, convention)
    return float(value)


def period_times(start: float, end: float, frequency: int) -> List[float]:
    """
    Payment times strictly AFTER start, ending at end, stepping back from end.

    The schedule is anchored at the end time, so any short stub sits at the
    front. A stub shorter than TIME_EPS is merged into the first full period.
    """
    if frequency <= 0:
        raise ValueError("frequency must be positive")
    if end <= start + TIME_EPS:
        raise ValueError("end must be after start")

    step = 1.0 / frequency
    times: List[float] = []
    k = 0
    t = end
    while t > start + TIME_EPS:
        times.append(t)
        k += 1
        t = end - k * step

    times.reverse()
    return times


def accrual_periods(start: float, end: float, frequency: int) -> List[tuple]:
    """(period start, period end, accrual fraction) for each payment."""
    pay = period_times(start, end, frequency)
    starts = [start] + pay[:-1]
    return [(s, e, e - s) for s, e in zip(starts, pay)]
