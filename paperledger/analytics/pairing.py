from __future__ import annotations

"""
Positional BUY/SELL pairing.

Rule:
- Split the log into BUYs and SELLs, each ordered by (timestamp, id) and
  numbered 1..N independently.
- Pair the k-th BUY with the k-th SELL for every k where both exist.

This is not inventory/FIFO lot matching: quantities are ignored, and surplus
BUYs or SELLs stay unpaired. Downstream numbers depend on exactly this rule.

Per pair:
- net_profit = sell.gross - buy.gross - sell.fee - buy.fee
- return_pct = net_profit / buy.gross * 100   (0 when buy.gross == 0)
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from paperledger.ledger.models import Side, Trade


@dataclass(frozen=True, slots=True)
class TradePair:
    k: int  # 1-based position shared by the paired BUY and SELL
    buy: Trade
    sell: Trade
    net_profit: Decimal
    return_pct: Decimal


def _trade_sort_key(t: Trade) -> tuple:
    # Timestamps can collide; the monotonic id keeps ordering deterministic.
    return (t.timestamp, t.id)


def pair_trades(trades: Iterable[Trade]) -> list[TradePair]:
    ordered = sorted(trades, key=_trade_sort_key)
    buys = [t for t in ordered if t.side is Side.BUY]
    sells = [t for t in ordered if t.side is Side.SELL]

    out: list[TradePair] = []
    for k, (buy, sell) in enumerate(zip(buys, sells), start=1):
        net = sell.gross_amount - buy.gross_amount - sell.fee - buy.fee
        ret = (net / buy.gross_amount * Decimal("100")) if buy.gross_amount != 0 else Decimal("0")
        out.append(TradePair(k=k, buy=buy, sell=sell, net_profit=net, return_pct=ret))
    return out
