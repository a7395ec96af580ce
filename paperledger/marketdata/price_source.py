from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Protocol, runtime_checkable

import requests

from paperledger.common.config import DEFAULT_PRICE_SOURCE_URL, DEFAULT_PRICE_TIMEOUT_S, DEFAULT_QUOTE_CURRENCY


class PriceSourceError(RuntimeError):
    """Raised when the external source cannot produce a price."""


@runtime_checkable
class PriceSource(Protocol):
    def fetch_current_price(self, asset: str) -> Decimal:
        ...


class CoinGeckoPriceSource:
    """
    Simple-price endpoint client.

    Response shape: {"<asset>": {"<currency>": <price>}}
    One HTTP request per call; retries belong to the caller.
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_PRICE_SOURCE_URL,
        quote_currency: str = DEFAULT_QUOTE_CURRENCY,
        timeout_s: float = DEFAULT_PRICE_TIMEOUT_S,
        session: requests.Session | None = None,
    ) -> None:
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        self.base_url = base_url
        self.quote_currency = quote_currency.strip().lower()
        self.timeout_s = float(timeout_s)
        self._http = session or requests

    def fetch_current_price(self, asset: str) -> Decimal:
        asset_id = str(asset or "").strip().lower()
        if not asset_id:
            raise ValueError("asset is required")
        try:
            r = self._http.get(
                self.base_url,
                params={"ids": asset_id, "vs_currencies": self.quote_currency},
                timeout=self.timeout_s,
            )
            r.raise_for_status()
            payload: Any = r.json()
        except (requests.RequestException, ValueError) as e:
            raise PriceSourceError(f"price request failed for {asset_id}: {type(e).__name__}: {e}") from e

        try:
            raw = payload[asset_id][self.quote_currency]
        except (KeyError, TypeError) as e:
            raise PriceSourceError(f"price missing from response for {asset_id}/{self.quote_currency}") from e
        if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
            raise PriceSourceError(f"unexpected price value type: {type(raw).__name__}")
        try:
            return Decimal(str(raw))
        except InvalidOperation as e:
            raise PriceSourceError(f"unparseable price value: {raw!r}") from e
