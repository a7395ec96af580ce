from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from paperledger.common.timeutils import to_utc


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def parse(cls, value: Any) -> "Side":
        if isinstance(value, Side):
            return value
        s = str(value or "").strip().upper()
        try:
            return cls(s)
        except ValueError:
            raise ValueError(f"side must be 'BUY' or 'SELL', got {value!r}") from None


def to_decimal(v: Any) -> Decimal:
    """
    Convert a numeric-ish value to Decimal safely.

    IMPORTANT:
    - Never call Decimal(float) directly (binary float artifacts).
    - Use Decimal(str(x)) for int/float inputs.
    """
    if v is None:
        return Decimal("0")
    if isinstance(v, Decimal):
        return v
    if isinstance(v, bool):
        raise TypeError("bool is not a valid amount")
    if isinstance(v, (int, float)):
        return Decimal(str(v))
    if isinstance(v, str):
        s = v.strip()
        return Decimal(s) if s else Decimal("0")
    raise TypeError(f"Expected number-like value, got {type(v).__name__}")


@dataclass(frozen=True, slots=True)
class Balance:
    """
    The single live balance row.

    `version` increments on every accepted trade and binds a write to the exact
    row state it was computed from.
    """

    asset_quantity: Decimal
    cash_quantity: Decimal
    last_updated: datetime
    version: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "last_updated", to_utc(self.last_updated))

    def total_value(self, unit_price: Decimal) -> Decimal:
        return self.cash_quantity + self.asset_quantity * unit_price

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset_quantity": str(self.asset_quantity),
            "cash_quantity": str(self.cash_quantity),
            "last_updated": self.last_updated.isoformat(),
            "version": self.version,
        }


@dataclass(frozen=True, slots=True)
class Trade:
    """
    Immutable, append-only ledger entry.

    Notes:
    - `asset_quantity` is positive; direction is expressed via `side`.
    - `gross_amount` is quantity * unit_price; `fee` is a separate positive cost.
    """

    id: int
    timestamp: datetime
    side: Side
    asset_quantity: Decimal
    unit_price: Decimal
    fee: Decimal
    gross_amount: Decimal
    rationale: str = ""
    market_context: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", to_utc(self.timestamp))

    @property
    def cash_delta(self) -> Decimal:
        if self.side is Side.BUY:
            return -(self.gross_amount + self.fee)
        return self.gross_amount - self.fee

    @property
    def asset_delta(self) -> Decimal:
        return self.asset_quantity if self.side is Side.BUY else -self.asset_quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "side": self.side.value,
            "asset_quantity": str(self.asset_quantity),
            "unit_price": str(self.unit_price),
            "fee": str(self.fee),
            "gross_amount": str(self.gross_amount),
            "rationale": self.rationale,
            "market_context": self.market_context,
        }


@dataclass(frozen=True, slots=True)
class Snapshot:
    id: int
    timestamp: datetime
    asset_quantity: Decimal
    cash_quantity: Decimal
    unit_price: Decimal
    total_value: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", to_utc(self.timestamp))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "asset_quantity": str(self.asset_quantity),
            "cash_quantity": str(self.cash_quantity),
            "unit_price": str(self.unit_price),
            "total_value": str(self.total_value),
        }


@dataclass(frozen=True, slots=True)
class PricePoint:
    id: int
    timestamp: datetime
    unit_price: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", to_utc(self.timestamp))


@dataclass(frozen=True, slots=True)
class LedgerView:
    """Balance plus both logs, read from one consistent transaction (oldest first)."""

    balance: Balance
    trades: tuple[Trade, ...]
    snapshots: tuple[Snapshot, ...]
