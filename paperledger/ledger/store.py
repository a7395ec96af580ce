"""
SQL-backed ledger store.

Tables (see `_SQLITE_SCHEMA` / `_POSTGRES_SCHEMA`):
- ledger_balance:   exactly one row (id = 1), mutated only by `apply_trade`
- ledger_trades:    append-only trade log, indexed by ts
- ledger_snapshots: append-only valuation history, indexed by ts
- price_points:     append-only observed prices, indexed by ts

Serialization of trade application:
- an in-process lock around the whole read-compute-write
- a write transaction that locks the balance row (`BEGIN IMMEDIATE` in SQLite,
  `SELECT ... FOR UPDATE` in Postgres)
- a compare-and-swap on `ledger_balance.version`; a lost CAS raises
  `ConcurrentModification` and rolls back the trade insert with it.

Balance update and trade insert commit together or not at all.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterator, Optional, Sequence

import psycopg

from paperledger.common.logging import log_event
from paperledger.common.timeutils import format_storage_ts, parse_storage_ts, utc_now

from .errors import ConcurrentModification, LedgerError, StorageUnavailable
from .models import Balance, LedgerView, PricePoint, Side, Snapshot, Trade, to_decimal
from .transitions import apply_trade as apply_trade_transition

logger = logging.getLogger(__name__)


_SQLITE_SCHEMA: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS ledger_balance (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        asset_quantity TEXT NOT NULL,
        cash_quantity TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 0,
        last_updated TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_trades (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ts TEXT NOT NULL,
        side TEXT NOT NULL CHECK (side IN ('BUY', 'SELL')),
        asset_quantity TEXT NOT NULL,
        unit_price TEXT NOT NULL,
        fee TEXT NOT NULL,
        gross_amount TEXT NOT NULL,
        rationale TEXT NOT NULL DEFAULT '',
        market_context TEXT NOT NULL DEFAULT ''
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ledger_trades_ts ON ledger_trades(ts)",
    """
    CREATE TABLE IF NOT EXISTS ledger_snapshots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ts TEXT NOT NULL,
        asset_quantity TEXT NOT NULL,
        cash_quantity TEXT NOT NULL,
        unit_price TEXT NOT NULL,
        total_value TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ledger_snapshots_ts ON ledger_snapshots(ts)",
    """
    CREATE TABLE IF NOT EXISTS price_points (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ts TEXT NOT NULL,
        unit_price TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_price_points_ts ON price_points(ts)",
)

_POSTGRES_SCHEMA: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS ledger_balance (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        asset_quantity NUMERIC NOT NULL,
        cash_quantity NUMERIC NOT NULL,
        version BIGINT NOT NULL DEFAULT 0,
        last_updated TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_trades (
        id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
        ts TIMESTAMPTZ NOT NULL,
        side TEXT NOT NULL CHECK (side IN ('BUY', 'SELL')),
        asset_quantity NUMERIC NOT NULL,
        unit_price NUMERIC NOT NULL,
        fee NUMERIC NOT NULL,
        gross_amount NUMERIC NOT NULL,
        rationale TEXT NOT NULL DEFAULT '',
        market_context TEXT NOT NULL DEFAULT ''
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ledger_trades_ts ON ledger_trades(ts)",
    """
    CREATE TABLE IF NOT EXISTS ledger_snapshots (
        id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
        ts TIMESTAMPTZ NOT NULL,
        asset_quantity NUMERIC NOT NULL,
        cash_quantity NUMERIC NOT NULL,
        unit_price NUMERIC NOT NULL,
        total_value NUMERIC NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ledger_snapshots_ts ON ledger_snapshots(ts)",
    """
    CREATE TABLE IF NOT EXISTS price_points (
        id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
        ts TIMESTAMPTZ NOT NULL,
        unit_price NUMERIC NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_price_points_ts ON price_points(ts)",
)

_TRADE_COLUMNS = "id, ts, side, asset_quantity, unit_price, fee, gross_amount, rationale, market_context"
_SNAPSHOT_COLUMNS = "id, ts, asset_quantity, cash_quantity, unit_price, total_value"


class SqliteBackend:
    """
    Embedded backend over one shared `sqlite3` connection.

    All transactions go through `_conn_lock`, so readers never interleave with a
    half-applied write on the shared connection.
    """

    name = "sqlite"
    schema = _SQLITE_SCHEMA
    row_lock_clause = ""

    def __init__(self, path: str, *, busy_timeout_s: float = 30.0) -> None:
        self.path = path
        self._conn_lock = threading.RLock()
        try:
            self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
                path,
                timeout=busy_timeout_s,
                isolation_level=None,  # explicit BEGIN/COMMIT below
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise StorageUnavailable(f"cannot open sqlite database {path!r}: {e}") from e

    def sql(self, query: str) -> str:
        return query

    def ts(self, dt: datetime) -> Any:
        return format_storage_ts(dt)

    def num(self, d: Decimal) -> Any:
        return str(d)

    def insert_returning_id(self, conn: Any, query: str, params: Sequence[Any]) -> int:
        cur = conn.execute(query, params)
        return int(cur.lastrowid)

    @contextmanager
    def transaction(self, *, write: bool) -> Iterator[sqlite3.Connection]:
        with self._conn_lock:
            conn = self._conn
            if conn is None:
                raise StorageUnavailable("sqlite store is closed")
            try:
                conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            except sqlite3.Error as e:
                raise StorageUnavailable(f"sqlite begin failed: {e}") from e
            try:
                yield conn
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback(conn)
                raise StorageUnavailable(f"sqlite error: {e}") from e
            except BaseException:
                self._rollback(conn)
                raise

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error:
            # No transaction left to roll back (e.g. COMMIT already failed and auto-rolled back).
            logger.warning("sqlite rollback failed", exc_info=True)

    def close(self) -> None:
        with self._conn_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


class PostgresBackend:
    """
    Postgres backend via psycopg (v3); one connection per transaction.

    Read transactions run at REPEATABLE READ so a report sees one snapshot of
    balance and logs.
    """

    name = "postgres"
    schema = _POSTGRES_SCHEMA
    row_lock_clause = " FOR UPDATE"

    def __init__(self, database_url: str, *, connect_timeout_s: int = 10) -> None:
        if not str(database_url or "").strip():
            raise ValueError("database_url is required")
        self.database_url = database_url
        self.connect_timeout_s = int(connect_timeout_s)

    def sql(self, query: str) -> str:
        return query.replace("?", "%s")

    def ts(self, dt: datetime) -> Any:
        return dt

    def num(self, d: Decimal) -> Any:
        return d

    def insert_returning_id(self, conn: Any, query: str, params: Sequence[Any]) -> int:
        row = conn.execute(query + " RETURNING id", params).fetchone()
        return int(row[0])

    @contextmanager
    def transaction(self, *, write: bool) -> Iterator[psycopg.Connection]:
        try:
            conn = psycopg.connect(self.database_url, connect_timeout=self.connect_timeout_s)
        except psycopg.Error as e:
            raise StorageUnavailable(f"cannot connect to postgres: {type(e).__name__}") from e
        try:
            if not write:
                conn.isolation_level = psycopg.IsolationLevel.REPEATABLE_READ
            yield conn
            conn.commit()
        except psycopg.errors.SerializationFailure as e:
            self._rollback(conn)
            raise ConcurrentModification("postgres serialization failure") from e
        except psycopg.Error as e:
            self._rollback(conn)
            raise StorageUnavailable(f"postgres error: {type(e).__name__}: {e}") from e
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    @staticmethod
    def _rollback(conn: psycopg.Connection) -> None:
        try:
            conn.rollback()
        except psycopg.Error:
            logger.warning("postgres rollback failed", exc_info=True)

    def close(self) -> None:
        # Connections are per-transaction; nothing is held between calls.
        return None


def backend_from_url(database_url: str) -> SqliteBackend | PostgresBackend:
    """
    Supported forms:
    - sqlite:///relative/or/absolute/path.db
    - sqlite://:memory:  or  :memory:
    - postgresql://...  or  postgres://...
    """
    url = str(database_url or "").strip()
    if url in (":memory:", "sqlite://:memory:", "sqlite:///:memory:"):
        return SqliteBackend(":memory:")
    if url.startswith("sqlite:///"):
        path = url[len("sqlite:///") :]
        if not path:
            raise ValueError("sqlite URL is missing a path")
        return SqliteBackend(path)
    if url.startswith(("postgresql://", "postgres://")):
        return PostgresBackend(url)
    raise ValueError(f"unsupported database URL scheme: {url.split('://', 1)[0]!r}")


def _check_limit(limit: Optional[int]) -> None:
    if limit is not None and int(limit) <= 0:
        raise ValueError("limit must be > 0")


class SqlLedgerStore:
    """
    Holds the single live balance row plus the append-only trade, snapshot and
    price logs.
    """

    def __init__(
        self,
        backend: SqliteBackend | PostgresBackend,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._backend = backend
        self._clock = clock
        self._write_lock = threading.Lock()

    @classmethod
    def from_url(cls, database_url: str, *, clock: Callable[[], datetime] = utc_now) -> "SqlLedgerStore":
        return cls(backend_from_url(database_url), clock=clock)

    @property
    def backend_name(self) -> str:
        return self._backend.name

    # --- lifecycle ---

    def initialize(self, *, initial_cash: Decimal) -> Balance:
        """
        Create the schema if missing and insert the balance row once.

        Re-initializing an existing ledger never resets its balance.
        """
        initial_cash = to_decimal(initial_cash)
        if initial_cash <= 0:
            raise ValueError("initial_cash must be > 0")
        b = self._backend
        with self._write_lock, b.transaction(write=True) as conn:
            for ddl in b.schema:
                conn.execute(ddl)
            cur = conn.execute(
                b.sql(
                    "INSERT INTO ledger_balance (id, asset_quantity, cash_quantity, version, last_updated) "
                    "VALUES (1, ?, ?, 0, ?) ON CONFLICT (id) DO NOTHING"
                ),
                (b.num(Decimal("0")), b.num(initial_cash), b.ts(self._clock())),
            )
            created = cur.rowcount == 1
            balance = self._read_balance(conn)
        log_event(
            logger,
            "ledger.initialized",
            backend=b.name,
            balance_created=created,
            cash_quantity=balance.cash_quantity,
            asset_quantity=balance.asset_quantity,
        )
        return balance

    def close(self) -> None:
        # Every write commits before returning, so closing only releases connections.
        with self._write_lock:
            self._backend.close()

    # --- balance + trades ---

    def get_balance(self) -> Balance:
        with self._backend.transaction(write=False) as conn:
            return self._read_balance(conn)

    def apply_trade(
        self,
        *,
        side: Side | str,
        quantity: Decimal,
        unit_price: Decimal,
        fee: Decimal = Decimal("0"),
        rationale: str = "",
        market_context: str = "",
    ) -> Trade:
        """
        Atomically apply the balance delta and append the trade.

        Raises InsufficientFunds / InsufficientHoldings without touching storage
        state, ConcurrentModification when the balance row moved underneath us.
        """
        b = self._backend
        with self._write_lock, b.transaction(write=True) as conn:
            current = self._read_balance(conn, for_update=True)
            new_balance, draft = apply_trade_transition(
                balance=current,
                side=side,
                quantity=quantity,
                unit_price=unit_price,
                fee=fee,
                now=self._clock(),
            )
            self._write_balance(conn, new_balance, expected_version=current.version)
            trade_id = b.insert_returning_id(
                conn,
                b.sql(
                    "INSERT INTO ledger_trades "
                    "(ts, side, asset_quantity, unit_price, fee, gross_amount, rationale, market_context) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
                ),
                (
                    b.ts(draft.timestamp),
                    draft.side.value,
                    b.num(draft.asset_quantity),
                    b.num(draft.unit_price),
                    b.num(draft.fee),
                    b.num(draft.gross_amount),
                    rationale or "",
                    market_context or "",
                ),
            )
        return Trade(
            id=trade_id,
            timestamp=draft.timestamp,
            side=draft.side,
            asset_quantity=draft.asset_quantity,
            unit_price=draft.unit_price,
            fee=draft.fee,
            gross_amount=draft.gross_amount,
            rationale=rationale or "",
            market_context=market_context or "",
        )

    def list_trades(self, *, limit: Optional[int] = None) -> list[Trade]:
        """Most recent first."""
        _check_limit(limit)
        with self._backend.transaction(write=False) as conn:
            return self._select_trades(conn, newest_first=True, limit=limit)

    # --- snapshots ---

    def record_snapshot(self, *, unit_price: Decimal) -> Snapshot:
        """
        Value the current balance at `unit_price` and append a snapshot.

        The balance read and the snapshot insert share one transaction.
        """
        unit_price = to_decimal(unit_price)
        if unit_price <= 0:
            raise ValueError("unit_price must be > 0")
        b = self._backend
        with b.transaction(write=True) as conn:
            balance = self._read_balance(conn)
            now = self._clock()
            total = balance.total_value(unit_price)
            snap_id = b.insert_returning_id(
                conn,
                b.sql(
                    "INSERT INTO ledger_snapshots (ts, asset_quantity, cash_quantity, unit_price, total_value) "
                    "VALUES (?, ?, ?, ?, ?)"
                ),
                (
                    b.ts(now),
                    b.num(balance.asset_quantity),
                    b.num(balance.cash_quantity),
                    b.num(unit_price),
                    b.num(total),
                ),
            )
        return Snapshot(
            id=snap_id,
            timestamp=now,
            asset_quantity=balance.asset_quantity,
            cash_quantity=balance.cash_quantity,
            unit_price=unit_price,
            total_value=total,
        )

    def list_snapshots(self, *, limit: Optional[int] = None) -> list[Snapshot]:
        """Most recent first."""
        _check_limit(limit)
        with self._backend.transaction(write=False) as conn:
            return self._select_snapshots(conn, newest_first=True, limit=limit)

    # --- price points ---

    def append_price_point(self, *, unit_price: Decimal, ts: Optional[datetime] = None) -> PricePoint:
        unit_price = to_decimal(unit_price)
        if unit_price <= 0:
            raise ValueError("unit_price must be > 0")
        b = self._backend
        when = ts or self._clock()
        with b.transaction(write=True) as conn:
            pp_id = b.insert_returning_id(
                conn,
                b.sql("INSERT INTO price_points (ts, unit_price) VALUES (?, ?)"),
                (b.ts(when), b.num(unit_price)),
            )
        return PricePoint(id=pp_id, timestamp=when, unit_price=unit_price)

    def latest_price_point(self) -> Optional[PricePoint]:
        b = self._backend
        with b.transaction(write=False) as conn:
            row = conn.execute(
                b.sql("SELECT id, ts, unit_price FROM price_points ORDER BY ts DESC, id DESC LIMIT 1")
            ).fetchone()
        if row is None:
            return None
        return PricePoint(id=int(row[0]), timestamp=parse_storage_ts(row[1]), unit_price=to_decimal(row[2]))

    # --- consistent reporting view ---

    def read_view(self) -> LedgerView:
        """Balance + full trade and snapshot logs (oldest first) from one read transaction."""
        with self._backend.transaction(write=False) as conn:
            balance = self._read_balance(conn)
            trades = self._select_trades(conn, newest_first=False, limit=None)
            snapshots = self._select_snapshots(conn, newest_first=False, limit=None)
        return LedgerView(balance=balance, trades=tuple(trades), snapshots=tuple(snapshots))

    # --- row helpers ---

    def _read_balance(self, conn: Any, *, for_update: bool = False) -> Balance:
        b = self._backend
        query = "SELECT asset_quantity, cash_quantity, last_updated, version FROM ledger_balance WHERE id = 1"
        if for_update:
            query += b.row_lock_clause
        row = conn.execute(b.sql(query)).fetchone()
        if row is None:
            raise LedgerError("ledger balance row is missing; call initialize() first")
        return Balance(
            asset_quantity=to_decimal(row[0]),
            cash_quantity=to_decimal(row[1]),
            last_updated=parse_storage_ts(row[2]),
            version=int(row[3]),
        )

    def _write_balance(self, conn: Any, balance: Balance, *, expected_version: int) -> None:
        b = self._backend
        cur = conn.execute(
            b.sql(
                "UPDATE ledger_balance SET asset_quantity = ?, cash_quantity = ?, last_updated = ?, version = ? "
                "WHERE id = 1 AND version = ?"
            ),
            (
                b.num(balance.asset_quantity),
                b.num(balance.cash_quantity),
                b.ts(balance.last_updated),
                balance.version,
                expected_version,
            ),
        )
        if cur.rowcount != 1:
            raise ConcurrentModification(
                f"ledger balance changed since it was read (expected version {expected_version})"
            )

    def _select_trades(self, conn: Any, *, newest_first: bool, limit: Optional[int]) -> list[Trade]:
        b = self._backend
        order = "DESC" if newest_first else "ASC"
        query = f"SELECT {_TRADE_COLUMNS} FROM ledger_trades ORDER BY ts {order}, id {order}"
        params: tuple[Any, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (int(limit),)
        rows = conn.execute(b.sql(query), params).fetchall()
        return [
            Trade(
                id=int(r[0]),
                timestamp=parse_storage_ts(r[1]),
                side=Side.parse(r[2]),
                asset_quantity=to_decimal(r[3]),
                unit_price=to_decimal(r[4]),
                fee=to_decimal(r[5]),
                gross_amount=to_decimal(r[6]),
                rationale=r[7] or "",
                market_context=r[8] or "",
            )
            for r in rows
        ]

    def _select_snapshots(self, conn: Any, *, newest_first: bool, limit: Optional[int]) -> list[Snapshot]:
        b = self._backend
        order = "DESC" if newest_first else "ASC"
        query = f"SELECT {_SNAPSHOT_COLUMNS} FROM ledger_snapshots ORDER BY ts {order}, id {order}"
        params: tuple[Any, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (int(limit),)
        rows = conn.execute(b.sql(query), params).fetchall()
        return [
            Snapshot(
                id=int(r[0]),
                timestamp=parse_storage_ts(r[1]),
                asset_quantity=to_decimal(r[2]),
                cash_quantity=to_decimal(r[3]),
                unit_price=to_decimal(r[4]),
                total_value=to_decimal(r[5]),
            )
            for r in rows
        ]
