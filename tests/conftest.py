from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

import pytest

from paperledger.ledger.store import SqliteBackend, SqlLedgerStore


class StepClock:
    """Deterministic clock: every call advances by `step`."""

    def __init__(self, start: datetime, step: timedelta = timedelta(seconds=1)) -> None:
        self._now = start
        self._step = step
        self._lock = threading.Lock()
        self.calls = 0

    def __call__(self) -> datetime:
        with self._lock:
            self.calls += 1
            now = self._now
            self._now = now + self._step
            return now


class FakePriceSource:
    def __init__(self, price: Any = Decimal("45000"), exc: Optional[BaseException] = None) -> None:
        self.price = price
        self.exc = exc
        self.calls: list[str] = []

    def fetch_current_price(self, asset: str) -> Decimal:
        self.calls.append(asset)
        if self.exc is not None:
            raise self.exc
        return self.price


START = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> StepClock:
    return StepClock(START)


@pytest.fixture
def price_source() -> FakePriceSource:
    return FakePriceSource()


@pytest.fixture
def store(tmp_path, clock) -> SqlLedgerStore:
    s = SqlLedgerStore(SqliteBackend(str(tmp_path / "ledger.db")), clock=clock)
    s.initialize(initial_cash=Decimal("10000"))
    yield s
    s.close()
