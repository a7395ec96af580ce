from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from paperledger.common.timeutils import to_utc

_WEEK = timedelta(days=7)


@dataclass(frozen=True, slots=True)
class WeeklyProgress:
    """
    Time-proportional progress toward a weekly return target (all in percent).

    expected_return_pct scales the target by the elapsed fraction of the week,
    clamped to [0, 1]: before week_start nothing is expected yet.
    """

    expected_return_pct: Decimal
    actual_return_pct: Decimal
    time_progress_pct: Decimal
    on_track: bool
    progress_ratio: Decimal


def compute_weekly_progress(
    *,
    current_return_pct: Decimal,
    weekly_target_pct: Decimal,
    week_start: datetime,
    now: datetime,
) -> WeeklyProgress:
    elapsed = to_utc(now) - to_utc(week_start)
    fraction = Decimal(str(elapsed.total_seconds())) / Decimal(str(_WEEK.total_seconds()))
    fraction = min(max(fraction, Decimal("0")), Decimal("1"))

    expected = weekly_target_pct * fraction
    ratio = (current_return_pct / expected) if expected > 0 else Decimal("0")
    return WeeklyProgress(
        expected_return_pct=expected,
        actual_return_pct=current_return_pct,
        time_progress_pct=fraction * Decimal("100"),
        on_track=current_return_pct >= expected,
        progress_ratio=ratio,
    )
