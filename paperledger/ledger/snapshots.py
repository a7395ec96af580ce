from __future__ import annotations

import logging
from decimal import Decimal
from typing import Protocol

from paperledger.common.logging import log_event

from .models import Snapshot

logger = logging.getLogger(__name__)


class _Resolver(Protocol):
    def resolve_price(self) -> Decimal:
        ...


class _SnapshotSink(Protocol):
    def record_snapshot(self, *, unit_price: Decimal) -> Snapshot:
        ...


class SnapshotRecorder:
    """
    Materialize `cash + asset * price` into the snapshot history.

    The price is resolved before the store transaction opens, so a slow external
    fetch never holds ledger locks. Every call appends a new snapshot.
    """

    def __init__(self, *, store: _SnapshotSink, resolver: _Resolver) -> None:
        self._store = store
        self._resolver = resolver

    def record_snapshot(self) -> Snapshot:
        price = self._resolver.resolve_price()
        snap = self._store.record_snapshot(unit_price=price)
        log_event(
            logger,
            "ledger.snapshot_recorded",
            snapshot_id=snap.id,
            unit_price=snap.unit_price,
            total_value=snap.total_value,
        )
        return snap
