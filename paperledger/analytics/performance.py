from __future__ import annotations

"""
Performance analytics over the trade and snapshot logs.

Every figure is re-derived from the logs on each call; nothing is stored, so a
report is always reproducible from source data.

Fee handling matches the ledger transitions:
- gross_amount excludes fees; fees are subtracted separately per pair
- cost basis folds BUY fees into the acquisition cost

Neutral values:
- any ratio with an empty set or a zero denominator is 0, never NaN or an error

Precision:
- `compute_performance_report` returns full-precision Decimals; rounding happens
  only in `present_report`, so repeated computations compare exactly.
"""

from dataclasses import asdict, dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Optional, Sequence

from paperledger.common.config import DEFAULT_RISK_FREE_RATE
from paperledger.ledger.models import Balance, Side, Snapshot, Trade

from .drawdown import EquityPoint, compute_max_drawdown
from .pairing import TradePair, pair_trades

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


@dataclass(frozen=True, slots=True)
class PerformanceReport:
    total_trades: int
    total_sell_trades: int
    pair_count: int
    profitable_trades_count: int

    total_fees: Decimal
    avg_trade_size: Decimal
    total_volume: Decimal
    daily_volume: Decimal

    win_rate: Decimal  # percent of pairs with net_profit > 0
    success_rate: Decimal  # percent of SELL trades that closed a profitable pair
    avg_return: Decimal  # percent, mean pair return
    sharpe_ratio: Decimal
    max_drawdown: Decimal  # percent
    total_return: Decimal  # percent vs. initial cash

    cost_basis: Decimal
    realized_profit: Decimal
    unrealized_profit: Decimal
    total_profit: Decimal

    current_price: Optional[Decimal]
    current_total_value: Decimal


def _mean(values: Sequence[Decimal]) -> Decimal:
    if not values:
        return _ZERO
    return sum(values, _ZERO) / Decimal(len(values))


def _pstdev(values: Sequence[Decimal], mean: Decimal) -> Decimal:
    # Population standard deviation (divides by n). A sample estimate (n - 1)
    # gives a larger value, and so a smaller Sharpe, when there are few pairs.
    if not values:
        return _ZERO
    variance = sum(((v - mean) ** 2 for v in values), _ZERO) / Decimal(len(values))
    return variance.sqrt()


def _cost_basis(trades: Sequence[Trade]) -> Decimal:
    """Weighted average entry price over all BUYs, fees included."""
    buys = [t for t in trades if t.side is Side.BUY]
    qty = sum((t.asset_quantity for t in buys), _ZERO)
    if qty <= 0:
        return _ZERO
    cost = sum((t.asset_quantity * t.unit_price + t.fee for t in buys), _ZERO)
    return cost / qty


def sharpe_ratio(returns: Sequence[Decimal], *, risk_free_rate: Decimal = DEFAULT_RISK_FREE_RATE) -> Decimal:
    """
    (mean - risk_free_rate) / stddev over pair returns (percent units).

    Uses the population standard deviation, not the n - 1 sample estimate.
    0 when fewer than two returns exist or the returns have no dispersion.
    """
    if len(returns) < 2:
        return _ZERO
    mean = _mean(returns)
    std = _pstdev(returns, mean)
    if std == 0:
        return _ZERO
    return (mean - risk_free_rate) / std


def compute_performance_report(
    *,
    trades: Iterable[Trade],
    snapshots: Iterable[Snapshot],
    balance: Balance,
    current_price: Optional[Decimal],
    initial_cash: Decimal,
    today: date,
    risk_free_rate: Decimal = DEFAULT_RISK_FREE_RATE,
) -> PerformanceReport:
    """
    Derive all metrics from the logs plus the current balance and price.

    `current_price` may be None only while nothing is held (valuation is then
    the cash balance alone). `today` selects the UTC calendar day for
    `daily_volume`.
    """
    trade_list = list(trades)
    if current_price is None and balance.asset_quantity != 0:
        raise ValueError("current_price is required while the ledger holds the asset")
    if initial_cash <= 0:
        raise ValueError("initial_cash must be > 0")

    pairs: list[TradePair] = pair_trades(trade_list)
    profitable = sum(1 for p in pairs if p.net_profit > 0)
    sells = sum(1 for t in trade_list if t.side is Side.SELL)
    returns = [p.return_pct for p in pairs if p.buy.gross_amount > 0]

    total_fees = sum((t.fee for t in trade_list), _ZERO)
    total_volume = sum((t.gross_amount for t in trade_list), _ZERO)
    daily_volume = sum((t.gross_amount for t in trade_list if t.timestamp.date() == today), _ZERO)
    avg_size = _mean([t.asset_quantity for t in trade_list])

    cost_basis = _cost_basis(trade_list)
    realized = sum((p.net_profit for p in pairs), _ZERO)
    if current_price is None:
        unrealized = _ZERO
        current_value = balance.cash_quantity
    else:
        unrealized = balance.asset_quantity * (current_price - cost_basis)
        current_value = balance.total_value(current_price)

    max_dd = compute_max_drawdown(EquityPoint(ts=s.timestamp, equity=s.total_value) for s in snapshots)

    return PerformanceReport(
        total_trades=len(trade_list),
        total_sell_trades=sells,
        pair_count=len(pairs),
        profitable_trades_count=profitable,
        total_fees=total_fees,
        avg_trade_size=avg_size,
        total_volume=total_volume,
        daily_volume=daily_volume,
        win_rate=(Decimal(profitable) * _HUNDRED / Decimal(len(pairs))) if pairs else _ZERO,
        success_rate=(Decimal(profitable) * _HUNDRED / Decimal(sells)) if sells else _ZERO,
        avg_return=_mean(returns),
        sharpe_ratio=sharpe_ratio(returns, risk_free_rate=risk_free_rate),
        max_drawdown=max_dd,
        total_return=(current_value - initial_cash) / initial_cash * _HUNDRED,
        cost_basis=cost_basis,
        realized_profit=realized,
        unrealized_profit=unrealized,
        total_profit=realized + unrealized,
        current_price=current_price,
        current_total_value=current_value,
    )


# Presentation precision (decimal places). Counts are passed through unchanged.
REPORT_PRECISION: dict[str, int] = {
    "win_rate": 1,
    "success_rate": 1,
    "max_drawdown": 1,
    "avg_return": 2,
    "sharpe_ratio": 2,
    "total_return": 2,
    "realized_profit": 2,
    "unrealized_profit": 2,
    "total_profit": 2,
    "cost_basis": 2,
    "total_fees": 2,
    "total_volume": 2,
    "daily_volume": 2,
    "current_price": 2,
    "current_total_value": 2,
    "avg_trade_size": 8,
}


def _round(v: Decimal, places: int) -> float:
    return float(v.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP))


def present_report(report: PerformanceReport) -> dict[str, Any]:
    """JSON-friendly view with fixed rounding (see REPORT_PRECISION)."""
    out: dict[str, Any] = {}
    for key, value in asdict(report).items():
        if isinstance(value, Decimal):
            out[key] = _round(value, REPORT_PRECISION.get(key, 2))
        else:
            out[key] = value
    return out
