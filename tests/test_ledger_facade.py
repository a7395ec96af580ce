from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Any

import pytest
from tenacity import wait_none

from paperledger.analytics import present_report
from paperledger.common.config import LedgerConfig
from paperledger.ledger.errors import ConcurrentModification, InsufficientFunds, NoPriceAvailable, StorageUnavailable
from paperledger.ledger.facade import Ledger
from paperledger.ledger.store import SqlLedgerStore
from paperledger.marketdata.price_resolver import PriceResolver
from paperledger.marketdata.price_source import PriceSourceError

from tests.conftest import START, FakePriceSource, StepClock


@pytest.fixture
def cfg(tmp_path) -> LedgerConfig:
    return LedgerConfig(database_url=f"sqlite:///{tmp_path / 'facade.db'}")


@pytest.fixture
def ledger(cfg: LedgerConfig, price_source: FakePriceSource, clock: StepClock) -> Ledger:
    with Ledger.from_config(cfg, price_source=price_source, clock=clock) as lg:
        yield lg


def test_end_to_end_round_trip(ledger: Ledger) -> None:
    b0 = ledger.get_balance()
    assert b0.cash_quantity == Decimal("10000")

    buy = ledger.submit_trade("buy", "0.1", "40000", "5", rationale="breakout", market_context="{}")
    assert buy.gross_amount == Decimal("4000")
    assert ledger.get_balance().cash_quantity == Decimal("5995")

    ledger.submit_trade("SELL", Decimal("0.1"), Decimal("45000"), Decimal("5"))
    b2 = ledger.get_balance()
    assert (b2.cash_quantity, b2.asset_quantity) == (Decimal("10490"), Decimal("0"))

    history = ledger.get_trade_history(limit=10)
    assert [t.side.value for t in history] == ["SELL", "BUY"]
    assert history[1].rationale == "breakout"

    report = ledger.get_performance_report()
    assert report.realized_profit == Decimal("490")
    assert report.win_rate == Decimal("100")
    assert report.avg_return == Decimal("12.25")
    assert report.total_return == Decimal("4.9")
    assert report.current_price is None
    assert report == ledger.get_performance_report()

    out = present_report(report)
    assert out["realized_profit"] == 490.0
    assert out["win_rate"] == 100.0


def test_reopening_keeps_state(cfg: LedgerConfig, price_source: FakePriceSource) -> None:
    with Ledger.from_config(cfg, price_source=price_source) as lg:
        lg.submit_trade("BUY", "0.1", "40000", "5")
    with Ledger.from_config(cfg, price_source=price_source) as lg:
        assert lg.get_balance().cash_quantity == Decimal("5995")
        assert len(lg.get_trade_history()) == 1


def test_missing_price_is_resolved_before_applying(ledger: Ledger, price_source: FakePriceSource) -> None:
    ledger.record_price_point(Decimal("41000"))
    t = ledger.submit_trade("BUY", "0.1")
    assert t.unit_price == Decimal("41000")
    assert price_source.calls == []

    report = ledger.get_performance_report()
    assert report.current_price == Decimal("41000")
    assert report.unrealized_profit == Decimal("0")


def test_missing_price_uses_external_source(ledger: Ledger, price_source: FakePriceSource) -> None:
    t = ledger.submit_trade("BUY", "0.1")
    assert t.unit_price == Decimal("45000")
    assert price_source.calls == ["bitcoin"]


def test_unresolvable_price_writes_nothing(cfg: LedgerConfig, clock: StepClock) -> None:
    src = FakePriceSource(exc=PriceSourceError("down"))
    with Ledger.from_config(cfg, price_source=src, clock=clock) as lg:
        with pytest.raises(NoPriceAvailable):
            lg.submit_trade("BUY", "0.1")
        assert lg.get_trade_history() == []
        assert lg.get_balance().cash_quantity == Decimal("10000")


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(side="BUY", quantity="0", unit_price="100"),
        dict(side="BUY", quantity="-1", unit_price="100"),
        dict(side="BUY", quantity="1", unit_price="0"),
        dict(side="BUY", quantity="1", unit_price="100", fee="-1"),
        dict(side="HOLD", quantity="1", unit_price="100"),
        dict(side="BUY", quantity="abc", unit_price="100"),
    ],
)
def test_malformed_instruction_is_rejected(ledger: Ledger, kwargs: dict[str, Any]) -> None:
    with pytest.raises(ValueError):
        ledger.submit_trade(**kwargs)
    assert ledger.get_trade_history() == []


def test_insufficient_funds_is_surfaced(ledger: Ledger) -> None:
    with pytest.raises(InsufficientFunds) as ei:
        ledger.submit_trade("BUY", "1", "40000")
    assert ei.value.available == Decimal("10000")
    assert ledger.get_balance().cash_quantity == Decimal("10000")


def test_snapshots_and_history(ledger: Ledger) -> None:
    ledger.submit_trade("BUY", "0.1", "40000", "5")
    ledger.record_price_point("50000")
    s1 = ledger.record_snapshot_now()
    ledger.record_price_point("30000")
    s2 = ledger.record_snapshot_now()
    assert s1.total_value == Decimal("10995")
    assert s2.total_value == Decimal("8995")
    assert [s.id for s in ledger.get_snapshot_history(limit=1)] == [s2.id]

    report = ledger.get_performance_report()
    assert report.max_drawdown == (Decimal("10995") - Decimal("8995")) / Decimal("10995") * Decimal("100")
    assert report.current_price == Decimal("30000")


def test_weekly_progress(ledger: Ledger) -> None:
    ledger.submit_trade("BUY", "0.1", "40000", "5")
    ledger.submit_trade("SELL", "0.1", "45000", "5")
    p = ledger.get_weekly_progress(START, now=START + timedelta(days=3, hours=12))
    assert p.actual_return_pct == Decimal("4.9")
    assert p.expected_return_pct == Decimal("2.5")
    assert p.on_track is True


def test_close_releases_storage(cfg: LedgerConfig, price_source: FakePriceSource) -> None:
    lg = Ledger.from_config(cfg, price_source=price_source)
    lg.close()
    lg.close()
    with pytest.raises(StorageUnavailable):
        lg.get_balance()


class _ConflictingStore:
    """Wraps a real store; the first `conflicts` trade applications lose the version race."""

    def __init__(self, inner: SqlLedgerStore, conflicts: int) -> None:
        self._inner = inner
        self.conflicts = conflicts
        self.attempts = 0

    def apply_trade(self, **kwargs: Any):
        self.attempts += 1
        if self.attempts <= self.conflicts:
            raise ConcurrentModification("lost the race")
        return self._inner.apply_trade(**kwargs)

    def __getattr__(self, name: str) -> Any:
        return getattr(self._inner, name)


def _ledger_over(store: Any, price_source: FakePriceSource, **cfg_kwargs: Any) -> Ledger:
    cfg = LedgerConfig(database_url="sqlite://:memory:", **cfg_kwargs)
    return Ledger(
        config=cfg,
        store=store,
        resolver=PriceResolver(store=store, source=price_source, asset=cfg.asset),
        retry_wait=wait_none(),
    )


def test_concurrent_modification_is_retried(store: SqlLedgerStore, price_source: FakePriceSource) -> None:
    flaky = _ConflictingStore(store, conflicts=2)
    lg = _ledger_over(flaky, price_source, trade_max_attempts=3)
    t = lg.submit_trade("BUY", "0.1", "40000", "5")
    assert flaky.attempts == 3
    assert t.id > 0
    assert store.get_balance().cash_quantity == Decimal("5995")
    assert len(store.list_trades()) == 1


def test_retry_budget_is_bounded(store: SqlLedgerStore, price_source: FakePriceSource) -> None:
    flaky = _ConflictingStore(store, conflicts=10)
    lg = _ledger_over(flaky, price_source, trade_max_attempts=2)
    with pytest.raises(ConcurrentModification):
        lg.submit_trade("BUY", "0.1", "40000")
    assert flaky.attempts == 2
    assert store.list_trades() == []


def test_insufficient_funds_is_not_retried(store: SqlLedgerStore, price_source: FakePriceSource) -> None:
    flaky = _ConflictingStore(store, conflicts=0)
    lg = _ledger_over(flaky, price_source)
    with pytest.raises(InsufficientFunds):
        lg.submit_trade("BUY", "10", "40000")
    assert flaky.attempts == 1


def test_float_config_values_work_with_decimal_metrics(tmp_path, price_source: FakePriceSource, clock: StepClock) -> None:
    cfg = LedgerConfig(
        database_url=f"sqlite:///{tmp_path / 'floats.db'}",
        initial_cash=10000,
        risk_free_rate=2.0,
        weekly_target_pct=5.0,
    )
    with Ledger.from_config(cfg, price_source=price_source, clock=clock) as lg:
        lg.submit_trade("BUY", "1", "100")
        lg.submit_trade("SELL", "1", "110")
        lg.submit_trade("BUY", "1", "100")
        lg.submit_trade("SELL", "1", "120")
        report = lg.get_performance_report()
        assert report.sharpe_ratio == Decimal("2.6")
        assert report.total_return == Decimal("0.3")

        p = lg.get_weekly_progress(START, now=START + timedelta(days=3, hours=12))
        assert p.expected_return_pct == Decimal("2.5")
        assert p.on_track is False


def test_report_propagates_log_read_failure(ledger: Ledger, monkeypatch: pytest.MonkeyPatch) -> None:
    ledger.submit_trade("BUY", "0.1", "40000", "5")

    def _unreadable():
        raise StorageUnavailable("disk gone")

    monkeypatch.setattr(ledger._store, "read_view", _unreadable)
    with pytest.raises(StorageUnavailable):
        ledger.get_performance_report()


def test_report_on_closed_ledger_raises(cfg: LedgerConfig, price_source: FakePriceSource) -> None:
    lg = Ledger.from_config(cfg, price_source=price_source)
    lg.close()
    with pytest.raises(StorageUnavailable):
        lg.get_performance_report()
