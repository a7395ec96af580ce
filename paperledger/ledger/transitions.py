"""
Pure balance transitions.

Fee convention (applied identically by the analytics engine):
- BUY:  cash -= quantity * unit_price + fee,  asset += quantity
- SELL: cash += quantity * unit_price - fee,  asset -= quantity
- `gross_amount` recorded on the trade is quantity * unit_price (fee excluded).

The store wraps `apply_trade` inside a single write transaction; nothing here
touches storage, so the same function replays the log in tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from .errors import InsufficientFunds, InsufficientHoldings
from .models import Balance, Side, Trade, to_decimal


@dataclass(frozen=True, slots=True)
class TradeDraft:
    """A validated trade not yet assigned a sequence id."""

    timestamp: datetime
    side: Side
    asset_quantity: Decimal
    unit_price: Decimal
    fee: Decimal
    gross_amount: Decimal


def apply_trade(
    *,
    balance: Balance,
    side: Side | str,
    quantity: Decimal,
    unit_price: Decimal,
    fee: Decimal = Decimal("0"),
    now: datetime,
) -> tuple[Balance, TradeDraft]:
    """
    Pure transition: apply one trade to `balance`.

    Assertions:
    - quantity > 0, unit_price > 0, fee >= 0 (ValueError otherwise)
    - BUY requires cash >= quantity * unit_price + fee (InsufficientFunds)
    - SELL requires asset >= quantity (InsufficientHoldings)

    Never shrinks an invalid trade into a smaller valid one.
    """
    side = Side.parse(side)
    quantity = to_decimal(quantity)
    unit_price = to_decimal(unit_price)
    fee = to_decimal(fee)
    if quantity <= 0:
        raise ValueError("quantity must be > 0")
    if unit_price <= 0:
        raise ValueError("unit_price must be > 0")
    if fee < 0:
        raise ValueError("fee must be >= 0")

    gross = quantity * unit_price
    if side is Side.BUY:
        required = gross + fee
        if balance.cash_quantity < required:
            raise InsufficientFunds(
                f"insufficient funds: BUY needs {required} but cash is {balance.cash_quantity}",
                required=required,
                available=balance.cash_quantity,
            )
        new_cash = balance.cash_quantity - required
        new_asset = balance.asset_quantity + quantity
    else:
        if balance.asset_quantity < quantity:
            raise InsufficientHoldings(
                f"insufficient holdings: SELL needs {quantity} but holdings are {balance.asset_quantity}",
                required=quantity,
                available=balance.asset_quantity,
            )
        new_cash = balance.cash_quantity + gross - fee
        new_asset = balance.asset_quantity - quantity

    new_balance = Balance(
        asset_quantity=new_asset,
        cash_quantity=new_cash,
        last_updated=now,
        version=balance.version + 1,
    )
    draft = TradeDraft(
        timestamp=now,
        side=side,
        asset_quantity=quantity,
        unit_price=unit_price,
        fee=fee,
        gross_amount=gross,
    )
    return new_balance, draft


def replay_balance(
    *,
    initial_cash: Decimal,
    trades: Iterable[Trade],
    initial_asset: Decimal = Decimal("0"),
) -> tuple[Decimal, Decimal]:
    """
    Fold the trade log (ordered by (timestamp, id)) into (asset_quantity, cash_quantity).

    The live balance must always equal this fold.
    """
    asset = to_decimal(initial_asset)
    cash = to_decimal(initial_cash)
    for t in sorted(trades, key=lambda t: (t.timestamp, t.id)):
        asset += t.asset_delta
        cash += t.cash_delta
    return asset, cash
