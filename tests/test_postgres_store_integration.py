from __future__ import annotations

import os
import threading
from decimal import Decimal

import pytest

from paperledger.ledger.errors import InsufficientFunds
from paperledger.ledger.store import SqlLedgerStore
from paperledger.ledger.transitions import replay_balance


def _db_url() -> str:
    url = os.getenv("LEDGER_TEST_DATABASE_URL")
    if not url:
        pytest.skip("LEDGER_TEST_DATABASE_URL not set; skipping Postgres integration test")
    return url


@pytest.fixture
def pg_store() -> SqlLedgerStore:
    s = SqlLedgerStore.from_url(_db_url())
    # Fresh tables per test run.
    with s._backend.transaction(write=True) as conn:
        for table in ("ledger_trades", "ledger_snapshots", "price_points", "ledger_balance"):
            conn.execute(f"DROP TABLE IF EXISTS {table}")
    s.initialize(initial_cash=Decimal("1000"))
    yield s
    s.close()


def test_postgres_round_trip_and_fold(pg_store: SqlLedgerStore) -> None:
    pg_store.apply_trade(side="BUY", quantity=Decimal("0.01"), unit_price=Decimal("40000"), fee=Decimal("1"))
    pg_store.apply_trade(side="SELL", quantity=Decimal("0.004"), unit_price=Decimal("41000"), fee=Decimal("0.5"))
    pg_store.record_snapshot(unit_price=Decimal("41000"))
    pg_store.append_price_point(unit_price=Decimal("41500"))

    view = pg_store.read_view()
    asset, cash = replay_balance(initial_cash=Decimal("1000"), trades=view.trades)
    assert (asset, cash) == (view.balance.asset_quantity, view.balance.cash_quantity)
    assert len(view.snapshots) == 1
    assert pg_store.latest_price_point().unit_price == Decimal("41500")


def test_postgres_concurrent_buys_never_overdraw(pg_store: SqlLedgerStore) -> None:
    n = 8
    barrier = threading.Barrier(n)
    results: list[str] = []
    lock = threading.Lock()

    def _buy() -> None:
        barrier.wait()
        try:
            pg_store.apply_trade(side="BUY", quantity=Decimal("1"), unit_price=Decimal("300"))
            outcome = "ok"
        except InsufficientFunds:
            outcome = "rejected"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=_buy) for _ in range(n)]
    for th in threads:
        th.start()
    for th in threads:
        th.join()

    assert results.count("ok") == 3
    assert pg_store.get_balance().cash_quantity == Decimal("100")
