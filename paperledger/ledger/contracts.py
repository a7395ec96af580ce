from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.config import ConfigDict

from .models import Side, to_decimal


def _amount(v: Any) -> Decimal:
    try:
        return to_decimal(v)
    except (TypeError, InvalidOperation) as e:
        raise ValueError(f"not a decimal amount: {v!r}") from e


class TradeInstruction(BaseModel):
    """
    A trade request as handed over by a decision agent.

    `unit_price=None` means "trade at the currently resolved price".
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    side: Side
    quantity: Decimal = Field(..., gt=0)
    unit_price: Optional[Decimal] = Field(default=None, gt=0)
    fee: Decimal = Field(default=Decimal("0"), ge=0)
    rationale: str = Field(default="", max_length=10_000)
    market_context: str = Field(default="", max_length=10_000)

    @field_validator("side", mode="before")
    @classmethod
    def _parse_side(cls, v: Any) -> Side:
        return Side.parse(v)

    @field_validator("quantity", "fee", mode="before")
    @classmethod
    def _parse_amount(cls, v: Any) -> Decimal:
        return _amount(v)

    @field_validator("unit_price", mode="before")
    @classmethod
    def _parse_price(cls, v: Any) -> Optional[Decimal]:
        return None if v is None else _amount(v)
