"""
Cache-first price resolution.

Order:
1) most recent PricePoint in the store (appended by the data collector)
2) exactly one call to the external PriceSource

Failure raises NoPriceAvailable; there is no hard-coded fallback price.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional, Protocol

from paperledger.common.logging import log_event
from paperledger.ledger.errors import NoPriceAvailable
from paperledger.ledger.models import PricePoint, to_decimal

from .price_source import PriceSource

logger = logging.getLogger(__name__)


class PricePointReader(Protocol):
    def latest_price_point(self) -> Optional[PricePoint]:
        ...


class PriceResolver:
    def __init__(self, *, store: PricePointReader, source: PriceSource, asset: str) -> None:
        self._store = store
        self._source = source
        self.asset = asset

    def resolve_price(self) -> Decimal:
        # Storage failures propagate as-is (StorageUnavailable); they are not "no price".
        latest = self._store.latest_price_point()
        if latest is not None and latest.unit_price > 0:
            log_event(logger, "price.resolved", severity="DEBUG", source="price_point", unit_price=latest.unit_price)
            return latest.unit_price

        try:
            raw = self._source.fetch_current_price(self.asset)
        except Exception as e:  # external collaborator boundary
            log_event(logger, "price.unavailable", severity="WARNING", asset=self.asset, error=type(e).__name__)
            raise NoPriceAvailable(f"no price available for {self.asset}: {e}") from e

        try:
            price = to_decimal(raw)
        except (TypeError, ArithmeticError):
            price = Decimal("NaN")
        if not price.is_finite() or price <= 0:
            log_event(logger, "price.unavailable", severity="WARNING", asset=self.asset, error="non_positive_price")
            raise NoPriceAvailable(f"price source returned an invalid price for {self.asset}: {raw!r}")

        log_event(logger, "price.resolved", severity="DEBUG", source="external", unit_price=price)
        return price
