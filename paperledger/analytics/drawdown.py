from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from paperledger.common.timeutils import to_utc


@dataclass(frozen=True, slots=True)
class EquityPoint:
    ts: datetime
    equity: Decimal


def compute_max_drawdown(points: Iterable[EquityPoint]) -> Decimal:
    """
    Maximum peak-to-trough decline, in percent points.

    Conventions:
    - points are ordered by timestamp (stable, so equal timestamps keep input order)
    - peak_i is the running maximum of equity up to and including point i
    - drawdown_i = (peak_i - equity_i) / peak_i * 100, only where peak_i > 0
    - returns 0 when there are no points

    Example: [100, 120, 90, 130, 80] -> max(25.0, 38.46...) = 38.46...
    """
    ordered = sorted(points, key=lambda p: to_utc(p.ts))
    peak: Decimal | None = None
    worst = Decimal("0")
    for p in ordered:
        peak = p.equity if peak is None else max(peak, p.equity)
        if peak <= 0:
            continue
        dd = (peak - p.equity) / peak * Decimal("100")
        if dd > worst:
            worst = dd
    return worst
