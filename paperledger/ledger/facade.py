from __future__ import annotations

"""
Ledger facade: the single entrypoint for decision agents and dashboards.

Ownership:
- a `Ledger` is constructed explicitly (usually via `Ledger.from_config`) and
  closed explicitly (or used as a context manager); there is no module-level
  singleton.

Trade flow:
1) validate the instruction (pydantic contract, ValueError on malformed input)
2) resolve the price if none was given, BEFORE any store lock is taken
3) apply the trade atomically in the store
4) on ConcurrentModification, retry the whole application from a fresh read
   (bounded attempts, exponential backoff); every other error propagates as-is
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from paperledger.analytics.performance import PerformanceReport, compute_performance_report
from paperledger.analytics.progress import WeeklyProgress, compute_weekly_progress
from paperledger.common.config import LedgerConfig
from paperledger.common.logging import log_event
from paperledger.common.timeutils import to_utc, utc_now
from paperledger.marketdata.price_resolver import PriceResolver
from paperledger.marketdata.price_source import CoinGeckoPriceSource, PriceSource

from .contracts import TradeInstruction
from .errors import ConcurrentModification, InsufficientFunds, InsufficientHoldings
from .models import Balance, PricePoint, Side, Snapshot, Trade
from .snapshots import SnapshotRecorder
from .store import SqlLedgerStore

logger = logging.getLogger(__name__)


class Ledger:
    def __init__(
        self,
        *,
        config: LedgerConfig,
        store: SqlLedgerStore,
        resolver: PriceResolver,
        clock: Callable[[], datetime] = utc_now,
        retry_wait: Any = None,
    ) -> None:
        self.config = config
        self._store = store
        self._resolver = resolver
        self._snapshots = SnapshotRecorder(store=store, resolver=resolver)
        self._clock = clock
        self._retry_wait = retry_wait if retry_wait is not None else wait_exponential(multiplier=0.05, max=1)
        self._closed = False

    @classmethod
    def from_config(
        cls,
        config: Optional[LedgerConfig] = None,
        *,
        price_source: Optional[PriceSource] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "Ledger":
        """
        Open (and initialize on first use) the ledger described by `config`.

        Defaults to `LedgerConfig.from_env()` and a CoinGecko price source.
        """
        cfg = config or LedgerConfig.from_env()
        store = SqlLedgerStore.from_url(cfg.database_url, clock=clock)
        source = price_source or CoinGeckoPriceSource(
            base_url=cfg.price_source_url,
            quote_currency=cfg.quote_currency,
            timeout_s=cfg.price_timeout_s,
        )
        resolver = PriceResolver(store=store, source=source, asset=cfg.asset)
        store.initialize(initial_cash=cfg.initial_cash)
        return cls(config=cfg, store=store, resolver=resolver, clock=clock)

    def __enter__(self) -> "Ledger":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store.close()
        log_event(logger, "ledger.closed", backend=self._store.backend_name)

    # --- reads ---

    def get_balance(self) -> Balance:
        return self._store.get_balance()

    def get_trade_history(self, limit: Optional[int] = None) -> list[Trade]:
        """Most recent first."""
        return self._store.list_trades(limit=limit)

    def get_snapshot_history(self, limit: Optional[int] = None) -> list[Snapshot]:
        """Most recent first."""
        return self._store.list_snapshots(limit=limit)

    # --- writes ---

    def submit_trade(
        self,
        side: Side | str,
        quantity: Any,
        unit_price: Any = None,
        fee: Any = Decimal("0"),
        rationale: str = "",
        market_context: str = "",
    ) -> Trade:
        """
        Apply one trade instruction.

        Raises:
        - ValueError for malformed instructions (nothing is written)
        - NoPriceAvailable when `unit_price` is None and no price can be resolved
        - InsufficientFunds / InsufficientHoldings (not retried)
        - ConcurrentModification once the retry budget is exhausted
        - StorageUnavailable when persistence cannot be reached
        """
        instr = TradeInstruction(
            side=side,
            quantity=quantity,
            unit_price=unit_price,
            fee=fee,
            rationale=rationale,
            market_context=market_context,
        )
        price = instr.unit_price if instr.unit_price is not None else self._resolver.resolve_price()

        def _before_sleep(state: RetryCallState) -> None:
            log_event(
                logger,
                "ledger.trade_conflict_retry",
                severity="WARNING",
                attempt=state.attempt_number,
                side=instr.side.value,
            )

        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self.config.trade_max_attempts),
                wait=self._retry_wait,
                retry=retry_if_exception_type(ConcurrentModification),
                before_sleep=_before_sleep,
                reraise=True,
            ):
                with attempt:
                    trade = self._store.apply_trade(
                        side=instr.side,
                        quantity=instr.quantity,
                        unit_price=price,
                        fee=instr.fee,
                        rationale=instr.rationale,
                        market_context=instr.market_context,
                    )
        except (InsufficientFunds, InsufficientHoldings) as e:
            log_event(
                logger,
                "ledger.trade_rejected",
                severity="WARNING",
                side=instr.side.value,
                reason=type(e).__name__,
                required=e.required,
                available=e.available,
            )
            raise

        log_event(
            logger,
            "ledger.trade_applied",
            trade_id=trade.id,
            side=trade.side.value,
            asset_quantity=trade.asset_quantity,
            unit_price=trade.unit_price,
            fee=trade.fee,
            gross_amount=trade.gross_amount,
        )
        return trade

    def record_snapshot_now(self) -> Snapshot:
        return self._snapshots.record_snapshot()

    def record_price_point(self, unit_price: Any, timestamp: Optional[datetime] = None) -> PricePoint:
        pp = self._store.append_price_point(unit_price=unit_price, ts=timestamp)
        log_event(logger, "price_point.recorded", severity="DEBUG", price_point_id=pp.id, unit_price=pp.unit_price)
        return pp

    # --- analytics ---

    def get_performance_report(self) -> PerformanceReport:
        """
        Full-precision metrics derived from one consistent read of the logs.

        The current price is resolved only while the ledger holds the asset; a
        flat ledger is valued at its cash balance. Log read failures propagate.
        """
        view = self._store.read_view()
        current_price: Optional[Decimal] = None
        if view.balance.asset_quantity > 0:
            current_price = self._resolver.resolve_price()
        return compute_performance_report(
            trades=view.trades,
            snapshots=view.snapshots,
            balance=view.balance,
            current_price=current_price,
            initial_cash=self.config.initial_cash,
            risk_free_rate=self.config.risk_free_rate,
            today=to_utc(self._clock()).date(),
        )

    def get_weekly_progress(self, week_start: datetime, now: Optional[datetime] = None) -> WeeklyProgress:
        report = self.get_performance_report()
        return compute_weekly_progress(
            current_return_pct=report.total_return,
            weekly_target_pct=self.config.weekly_target_pct,
            week_start=week_start,
            now=now or self._clock(),
        )


__all__ = ["Ledger"]
