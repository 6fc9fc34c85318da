"""
State Store - durable SQLite persistence for the revenue share engine.

Tables:
- holder_snapshots / accumulation_records / accumulation_cycles (accumulator)
- ingestion_cursor / cursor_events (ingestor)
- revenue_ledger / revenue_events (ledger)
- payout_plans / payout_entries / plan_commits (append-only plan log)

Decimal quantities are stored as TEXT. Every write goes through
``transaction()``; nested calls join the outer transaction so a component can
compose several writes (e.g. record revenue + advance cursor) atomically.

Transactions are synchronous blocks: callers never ``await`` inside one, so on
a single event loop a transaction is never interleaved with another coroutine.

Components depend on the narrow protocols below, not on the concrete store.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Generator, Iterable, List, Optional, Protocol

from .errors import PlanAlreadyCommittedError, PlanNotFoundError, StateCorruptionError
from .models import (
    AccumulationRecord,
    HolderSnapshot,
    IngestionCursor,
    PayoutEntry,
    PayoutPlan,
    PlanStatus,
    RevenueLedgerState,
    utcnow,
)

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS holder_snapshots (
    cycle_at TEXT NOT NULL,
    address TEXT NOT NULL,
    balance TEXT NOT NULL,
    observed_at TEXT NOT NULL,
    PRIMARY KEY (cycle_at, address)
);
CREATE INDEX IF NOT EXISTS idx_snapshots_address ON holder_snapshots(address);

CREATE TABLE IF NOT EXISTS accumulation_records (
    address TEXT PRIMARY KEY,
    accumulated_credit TEXT NOT NULL,
    cycles_counted INTEGER NOT NULL DEFAULT 0,
    first_seen_at TEXT,
    last_updated_at TEXT
);

CREATE TABLE IF NOT EXISTS accumulation_cycles (
    cycle_at TEXT PRIMARY KEY,
    holders INTEGER NOT NULL,
    total_balance TEXT NOT NULL,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ingestion_cursor (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    last_processed_signature TEXT NOT NULL,
    last_processed_timestamp INTEGER,
    updated_at TEXT NOT NULL,
    reset_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS cursor_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event TEXT NOT NULL,
    previous_signature TEXT,
    new_signature TEXT,
    detail TEXT,
    occurred_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS revenue_ledger (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    pool_balance TEXT NOT NULL,
    cumulative_distributed TEXT NOT NULL,
    cumulative_revenue TEXT NOT NULL,
    last_reset_at TEXT,
    initialized_at TEXT,
    locked_volume_baselines TEXT NOT NULL,
    volume_totals TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS revenue_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    source TEXT,
    amount TEXT NOT NULL,
    volume TEXT,
    reference TEXT,
    occurred_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS payout_plans (
    distribution_id TEXT PRIMARY KEY,
    generated_at TEXT NOT NULL,
    pair TEXT NOT NULL,
    price TEXT NOT NULL,
    price_as_of TEXT NOT NULL,
    pool_balance TEXT NOT NULL,
    total_credit TEXT NOT NULL,
    total_pool_converted TEXT NOT NULL,
    total_converted TEXT NOT NULL,
    total_paid_value TEXT NOT NULL,
    remainder_value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS payout_entries (
    distribution_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    address TEXT NOT NULL,
    credit TEXT NOT NULL,
    credit_share TEXT NOT NULL,
    amount_value TEXT NOT NULL,
    amount_converted TEXT NOT NULL,
    PRIMARY KEY (distribution_id, position)
);

CREATE TABLE IF NOT EXISTS plan_commits (
    distribution_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    tx_signatures TEXT NOT NULL,
    detail TEXT,
    recorded_at TEXT NOT NULL
);
"""


# =============================================================================
# STORE PROTOCOLS
# =============================================================================

class Transactional(Protocol):
    def transaction(self): ...

    @property
    def in_transaction(self) -> bool: ...


class CursorStore(Transactional, Protocol):
    def get_cursor(self) -> Optional[IngestionCursor]: ...

    def save_cursor(self, cursor: IngestionCursor) -> None: ...

    def record_cursor_event(
        self, event: str, previous_signature: Optional[str], new_signature: Optional[str], detail: str = ""
    ) -> None: ...


class LedgerStore(Transactional, Protocol):
    def get_ledger_state(self) -> Optional[RevenueLedgerState]: ...

    def save_ledger_state(self, state: RevenueLedgerState) -> None: ...

    def append_revenue_event(
        self, kind: str, amount: Decimal, source: Optional[str] = None,
        volume: Optional[Decimal] = None, reference: Optional[str] = None,
    ) -> None: ...


class AccumulatorStore(Transactional, Protocol):
    def is_cycle_applied(self, cycle_at: datetime) -> bool: ...

    def mark_cycle_applied(self, cycle_at: datetime, holders: int, total_balance: Decimal) -> None: ...

    def last_applied_cycle(self) -> Optional[datetime]: ...

    def get_record(self, address: str) -> Optional[AccumulationRecord]: ...

    def all_records(self) -> List[AccumulationRecord]: ...

    def save_record(self, record: AccumulationRecord) -> None: ...


class SnapshotStore(Transactional, Protocol):
    def save_snapshots(self, snapshots: Iterable[HolderSnapshot]) -> int: ...

    def latest_cycle_at(self) -> Optional[datetime]: ...

    def latest_balances(self) -> Dict[str, Decimal]: ...

    def compact_snapshots(self, before: datetime) -> int: ...


class PlanStore(Transactional, Protocol):
    def save_plan(self, plan: PayoutPlan) -> None: ...

    def get_plan(self, distribution_id: str) -> PayoutPlan: ...

    def plan_status(self, distribution_id: str) -> PlanStatus: ...

    def record_plan_outcome(
        self, distribution_id: str, status: PlanStatus, tx_signatures: List[str], detail: str = ""
    ) -> None: ...


# =============================================================================
# HELPERS
# =============================================================================

def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dec(value, column: str) -> Decimal:
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise StateCorruptionError(
            f"Column {column} holds a non-decimal value: {value!r}", {"column": column}
        ) from e


def _dec_map(raw: str, column: str) -> Dict[str, Decimal]:
    try:
        data = json.loads(raw or "{}")
    except json.JSONDecodeError as e:
        raise StateCorruptionError(f"Column {column} is not valid JSON", {"column": column}) from e
    return {k: _dec(v, column) for k, v in data.items()}


# =============================================================================
# SQLITE STORE
# =============================================================================

class SQLiteStateStore:
    """
    SQLite implementation of every store protocol.

    Usage:
        store = SQLiteStateStore("~/.revshare/revshare.db")
        with store.transaction():
            ledger.record_volume(...)
            cursor_store.save_cursor(...)
    """

    def __init__(self, db_path: str = ":memory:", timeout: float = 10.0):
        self.db_path = db_path
        if db_path != ":memory:":
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(path)

        # autocommit mode; transactions are opened explicitly
        self._conn = sqlite3.connect(
            self.db_path, timeout=timeout, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._lock = threading.RLock()
        self._depth = 0
        self._conn.executescript(SCHEMA)
        logger.info(f"State store ready at {self.db_path}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """
        One atomic unit of work. Commits on success, rolls back on error.
        Nested calls join the outermost transaction.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self._conn
                finally:
                    self._depth -= 1
                return

            self._conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self._conn
            except BaseException as e:
                self._conn.execute("ROLLBACK")
                logger.debug(f"Transaction rolled back: {e!r}")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._depth = 0

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    # =========================================================================
    # CURSOR
    # =========================================================================

    def get_cursor(self) -> Optional[IngestionCursor]:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM ingestion_cursor WHERE id = 1").fetchone()
        if row is None:
            return None
        return IngestionCursor(
            last_processed_signature=row["last_processed_signature"],
            last_processed_timestamp=row["last_processed_timestamp"],
            updated_at=_dt(row["updated_at"]),
            reset_count=row["reset_count"],
        )

    def save_cursor(self, cursor: IngestionCursor) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO ingestion_cursor
                    (id, last_processed_signature, last_processed_timestamp, updated_at, reset_count)
                VALUES (1, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    last_processed_signature = excluded.last_processed_signature,
                    last_processed_timestamp = excluded.last_processed_timestamp,
                    updated_at = excluded.updated_at,
                    reset_count = excluded.reset_count
                """,
                (
                    cursor.last_processed_signature,
                    cursor.last_processed_timestamp,
                    _ts(cursor.updated_at or utcnow()),
                    cursor.reset_count,
                ),
            )

    def record_cursor_event(
        self, event: str, previous_signature: Optional[str], new_signature: Optional[str], detail: str = ""
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO cursor_events (event, previous_signature, new_signature, detail, occurred_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (event, previous_signature, new_signature, detail, _ts(utcnow())),
            )

    def cursor_events(self, limit: int = 20) -> List[dict]:
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM cursor_events ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [dict(r) for r in rows]

    # =========================================================================
    # LEDGER
    # =========================================================================

    def get_ledger_state(self) -> Optional[RevenueLedgerState]:
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM revenue_ledger WHERE id = 1").fetchone()
        if row is None:
            return None
        return RevenueLedgerState(
            pool_balance=_dec(row["pool_balance"], "pool_balance"),
            cumulative_distributed=_dec(row["cumulative_distributed"], "cumulative_distributed"),
            cumulative_revenue=_dec(row["cumulative_revenue"], "cumulative_revenue"),
            last_reset_at=_dt(row["last_reset_at"]),
            initialized_at=_dt(row["initialized_at"]),
            locked_volume_baselines=_dec_map(row["locked_volume_baselines"], "locked_volume_baselines"),
            volume_totals=_dec_map(row["volume_totals"], "volume_totals"),
        )

    def save_ledger_state(self, state: RevenueLedgerState) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO revenue_ledger
                    (id, pool_balance, cumulative_distributed, cumulative_revenue, last_reset_at,
                     initialized_at, locked_volume_baselines, volume_totals, updated_at)
                VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    pool_balance = excluded.pool_balance,
                    cumulative_distributed = excluded.cumulative_distributed,
                    cumulative_revenue = excluded.cumulative_revenue,
                    last_reset_at = excluded.last_reset_at,
                    initialized_at = excluded.initialized_at,
                    locked_volume_baselines = excluded.locked_volume_baselines,
                    volume_totals = excluded.volume_totals,
                    updated_at = excluded.updated_at
                """,
                (
                    str(state.pool_balance),
                    str(state.cumulative_distributed),
                    str(state.cumulative_revenue),
                    _ts(state.last_reset_at),
                    _ts(state.initialized_at),
                    json.dumps({k: str(v) for k, v in state.locked_volume_baselines.items()}),
                    json.dumps({k: str(v) for k, v in state.volume_totals.items()}),
                    _ts(utcnow()),
                ),
            )

    def append_revenue_event(
        self, kind: str, amount: Decimal, source: Optional[str] = None,
        volume: Optional[Decimal] = None, reference: Optional[str] = None,
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO revenue_events (kind, source, amount, volume, reference, occurred_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    kind,
                    source,
                    str(amount),
                    str(volume) if volume is not None else None,
                    reference,
                    _ts(utcnow()),
                ),
            )

    def revenue_events(self, limit: int = 50) -> List[dict]:
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM revenue_events ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [dict(r) for r in rows]

    # =========================================================================
    # ACCUMULATOR
    # =========================================================================

    def is_cycle_applied(self, cycle_at: datetime) -> bool:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT 1 FROM accumulation_cycles WHERE cycle_at = ?", (_ts(cycle_at),)
            ).fetchone()
        return row is not None

    def mark_cycle_applied(self, cycle_at: datetime, holders: int, total_balance: Decimal) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO accumulation_cycles (cycle_at, holders, total_balance, applied_at)
                VALUES (?, ?, ?, ?)
                """,
                (_ts(cycle_at), holders, str(total_balance), _ts(utcnow())),
            )

    def last_applied_cycle(self) -> Optional[datetime]:
        with self.transaction() as conn:
            row = conn.execute("SELECT MAX(cycle_at) AS cycle_at FROM accumulation_cycles").fetchone()
        return _dt(row["cycle_at"]) if row else None

    def applied_cycle_count(self) -> int:
        with self.transaction() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM accumulation_cycles").fetchone()
        return row["n"]

    def _record_from_row(self, row: sqlite3.Row) -> AccumulationRecord:
        return AccumulationRecord(
            address=row["address"],
            accumulated_credit=_dec(row["accumulated_credit"], "accumulated_credit"),
            cycles_counted=row["cycles_counted"],
            first_seen_at=_dt(row["first_seen_at"]),
            last_updated_at=_dt(row["last_updated_at"]),
        )

    def get_record(self, address: str) -> Optional[AccumulationRecord]:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM accumulation_records WHERE address = ?", (address,)
            ).fetchone()
        return self._record_from_row(row) if row else None

    def all_records(self) -> List[AccumulationRecord]:
        with self.transaction() as conn:
            rows = conn.execute("SELECT * FROM accumulation_records ORDER BY address").fetchall()
        return [self._record_from_row(r) for r in rows]

    def save_record(self, record: AccumulationRecord) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO accumulation_records
                    (address, accumulated_credit, cycles_counted, first_seen_at, last_updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(address) DO UPDATE SET
                    accumulated_credit = excluded.accumulated_credit,
                    cycles_counted = excluded.cycles_counted,
                    first_seen_at = excluded.first_seen_at,
                    last_updated_at = excluded.last_updated_at
                """,
                (
                    record.address,
                    str(record.accumulated_credit),
                    record.cycles_counted,
                    _ts(record.first_seen_at),
                    _ts(record.last_updated_at),
                ),
            )

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def save_snapshots(self, snapshots: Iterable[HolderSnapshot]) -> int:
        """Insert snapshots; rows already present for the same cycle are left untouched."""
        rows = [
            (_ts(s.cycle_at), s.address, str(s.balance), _ts(s.observed_at)) for s in snapshots
        ]
        with self.transaction() as conn:
            before = conn.total_changes
            conn.executemany(
                """
                INSERT OR IGNORE INTO holder_snapshots (cycle_at, address, balance, observed_at)
                VALUES (?, ?, ?, ?)
                """,
                rows,
            )
            return conn.total_changes - before

    def latest_cycle_at(self) -> Optional[datetime]:
        with self.transaction() as conn:
            row = conn.execute("SELECT MAX(cycle_at) AS cycle_at FROM holder_snapshots").fetchone()
        return _dt(row["cycle_at"]) if row else None

    def latest_balances(self) -> Dict[str, Decimal]:
        """Balances from the most recent snapshot cycle."""
        with self.transaction() as conn:
            rows = conn.execute(
                """
                SELECT address, balance FROM holder_snapshots
                WHERE cycle_at = (SELECT MAX(cycle_at) FROM holder_snapshots)
                """
            ).fetchall()
        return {r["address"]: _dec(r["balance"], "balance") for r in rows}

    def snapshots_for(self, address: str, limit: int = 50) -> List[HolderSnapshot]:
        with self.transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM holder_snapshots WHERE address = ?
                ORDER BY cycle_at DESC LIMIT ?
                """,
                (address, limit),
            ).fetchall()
        return [
            HolderSnapshot(
                address=r["address"],
                balance=_dec(r["balance"], "balance"),
                observed_at=_dt(r["observed_at"]),
                cycle_at=_dt(r["cycle_at"]),
            )
            for r in rows
        ]

    def compact_snapshots(self, before: datetime) -> int:
        """Delete snapshot rows older than ``before`` whose cycle is already folded into credit."""
        with self.transaction() as conn:
            cur = conn.execute(
                """
                DELETE FROM holder_snapshots
                WHERE cycle_at < ?
                  AND cycle_at IN (SELECT cycle_at FROM accumulation_cycles)
                """,
                (_ts(before),),
            )
            return cur.rowcount

    # =========================================================================
    # PAYOUT PLANS
    # =========================================================================

    def save_plan(self, plan: PayoutPlan) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO payout_plans
                    (distribution_id, generated_at, pair, price, price_as_of, pool_balance,
                     total_credit, total_pool_converted, total_converted, total_paid_value,
                     remainder_value)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    plan.distribution_id,
                    _ts(plan.generated_at),
                    plan.pair,
                    str(plan.price),
                    _ts(plan.price_as_of),
                    str(plan.pool_balance),
                    str(plan.total_credit),
                    str(plan.total_pool_converted),
                    str(plan.total_converted),
                    str(plan.total_paid_value),
                    str(plan.remainder_value),
                ),
            )
            conn.executemany(
                """
                INSERT INTO payout_entries
                    (distribution_id, position, address, credit, credit_share, amount_value,
                     amount_converted)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        plan.distribution_id,
                        i,
                        e.address,
                        str(e.credit),
                        str(e.credit_share),
                        str(e.amount_value),
                        str(e.amount_converted),
                    )
                    for i, e in enumerate(plan.entries)
                ],
            )

    def get_plan(self, distribution_id: str) -> PayoutPlan:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM payout_plans WHERE distribution_id = ?", (distribution_id,)
            ).fetchone()
            if row is None:
                raise PlanNotFoundError(
                    f"Payout plan {distribution_id} not found", {"distribution_id": distribution_id}
                )
            entry_rows = conn.execute(
                "SELECT * FROM payout_entries WHERE distribution_id = ? ORDER BY position",
                (distribution_id,),
            ).fetchall()

        entries = tuple(
            PayoutEntry(
                address=e["address"],
                credit=_dec(e["credit"], "credit"),
                credit_share=_dec(e["credit_share"], "credit_share"),
                amount_value=_dec(e["amount_value"], "amount_value"),
                amount_converted=int(e["amount_converted"]),
            )
            for e in entry_rows
        )
        return PayoutPlan(
            distribution_id=row["distribution_id"],
            generated_at=_dt(row["generated_at"]),
            pair=row["pair"],
            price=_dec(row["price"], "price"),
            price_as_of=_dt(row["price_as_of"]),
            pool_balance=_dec(row["pool_balance"], "pool_balance"),
            total_credit=_dec(row["total_credit"], "total_credit"),
            total_pool_converted=int(row["total_pool_converted"]),
            total_converted=int(row["total_converted"]),
            total_paid_value=_dec(row["total_paid_value"], "total_paid_value"),
            remainder_value=_dec(row["remainder_value"], "remainder_value"),
            entries=entries,
        )

    def list_plans(self, limit: int = 20) -> List[dict]:
        with self.transaction() as conn:
            rows = conn.execute(
                """
                SELECT p.distribution_id, p.generated_at, p.total_paid_value,
                       COALESCE(c.status, 'pending') AS status
                FROM payout_plans p
                LEFT JOIN plan_commits c ON c.distribution_id = p.distribution_id
                ORDER BY p.generated_at DESC LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [dict(r) for r in rows]

    def plan_status(self, distribution_id: str) -> PlanStatus:
        with self.transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM payout_plans WHERE distribution_id = ?", (distribution_id,)
            ).fetchone()
            if exists is None:
                raise PlanNotFoundError(
                    f"Payout plan {distribution_id} not found", {"distribution_id": distribution_id}
                )
            row = conn.execute(
                "SELECT status FROM plan_commits WHERE distribution_id = ?", (distribution_id,)
            ).fetchone()
        return PlanStatus(row["status"]) if row else PlanStatus.PENDING

    def record_plan_outcome(
        self, distribution_id: str, status: PlanStatus, tx_signatures: List[str], detail: str = ""
    ) -> None:
        """Record the final execution status of a plan. A plan settles exactly once."""
        with self.transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO plan_commits (distribution_id, status, tx_signatures, detail, recorded_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (distribution_id, status.value, json.dumps(tx_signatures), detail, _ts(utcnow())),
                )
            except sqlite3.IntegrityError as e:
                raise PlanAlreadyCommittedError(distribution_id) from e
