"""
Performance analytics over the ledger's append-only logs.

Exports are re-derived on every call; nothing here is persisted.
"""

from .drawdown import EquityPoint, compute_max_drawdown
from .pairing import TradePair, pair_trades
from .performance import PerformanceReport, compute_performance_report, present_report
from .progress import WeeklyProgress, compute_weekly_progress

__all__ = [
    "EquityPoint",
    "PerformanceReport",
    "TradePair",
    "WeeklyProgress",
    "compute_max_drawdown",
    "compute_performance_report",
    "compute_weekly_progress",
    "pair_trades",
    "present_report",
]
