"""
Projection Store Abstraction

This module defines the ProjectionStore interface and provides two implementations:
- InMemoryProjectionStore: For development and testing
- AsyncPostgresProjectionStore: For production with durability and concurrency safety

The ProjectionStore is responsible for:
- Atomic units of work (one per block)
- The (tx_hash, log_index) idempotency key
- The processed-block cursor (single row per monitored contract)

The ProjectionWriter retains responsibility for:
- Mapping decoded events to rows
- Ordering and cursor targets

TRANSACTION CONTRACT:
All writes MUST happen inside the begin_block() context manager:

    async with store.begin_block() as unit:
        if await unit.claim(record):
            await unit.append_audit(entry)
        await unit.advance_cursor(block)
        await unit.commit()

Leaving the block without commit() discards every write made in it,
including the cursor advance.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import asyncpg

from ..errors import CursorRegressionError, PersistenceError
from ..observability import get_logger
from ..schemas import (
    ActionType,
    AuditEntry,
    ChainStatus,
    CursorState,
    EntityType,
    InventoryProjection,
    LedgerTxRecord,
    StaffGrant,
    TxStatus,
)
from .config import DatabaseConfig, StoreDriver, get_store_driver

logger = get_logger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# ABSTRACT BASE CLASSES
# ============================================================

class BlockUnit(ABC):
    """
    One transactional unit of work.

    Everything written through a unit becomes visible atomically on commit(),
    or not at all.
    """

    def __init__(self):
        self._committed = False
        self._closed = False

    @property
    def committed(self) -> bool:
        return self._committed

    def _check_open(self) -> None:
        if self._committed:
            raise PersistenceError("Unit of work already committed")
        if self._closed:
            raise PersistenceError("Unit of work already closed")

    @abstractmethod
    async def claim(self, record: LedgerTxRecord) -> bool:
        """
        Insert the idempotency row for an event.

        Returns:
            True if the row was inserted, False if (tx_hash, log_index)
            already exists (the event was applied before).
        """

    @abstractmethod
    async def get_inventory(self, index: int) -> Optional[InventoryProjection]:
        """Read an inventory row inside the transaction."""

    @abstractmethod
    async def insert_inventory(self, row: InventoryProjection) -> None:
        """Insert a new inventory row."""

    @abstractmethod
    async def confirm_inventory(self, index: int, tx_hash: str, synced_at: datetime) -> None:
        """Mark an existing inventory row CONFIRMED and refresh its sync metadata."""

    @abstractmethod
    async def append_audit(self, entry: AuditEntry) -> None:
        """Append an audit entry."""

    @abstractmethod
    async def last_audit_time(self, record_id: int) -> Optional[datetime]:
        """Latest changed_at already recorded for record_id."""

    @abstractmethod
    async def read_cursor(self) -> int:
        """Read (and lock, where supported) the cursor for this stream."""

    @abstractmethod
    async def _write_cursor(self, height: int) -> None:
        """Persist a new cursor value. Use advance_cursor()."""

    @abstractmethod
    async def set_window(self, from_block: Optional[int], to_block: Optional[int]) -> None:
        """Record (or clear, with None) the in-progress window bounds."""

    async def advance_cursor(self, height: int) -> int:
        """
        Move the cursor forward within this unit.

        Raises:
            CursorRegressionError: height is below the current cursor
        """
        self._check_open()
        current = await self.read_cursor()
        if height < current:
            raise CursorRegressionError(current, height)
        if height > current:
            await self._write_cursor(height)
        return height

    @abstractmethod
    async def commit(self) -> None:
        """Commit every write made through this unit."""


class ProjectionStore(ABC):
    """
    Abstract base class for projection storage.

    Implementations must ensure:
    1. begin_block() units are atomic (all-or-nothing)
    2. (tx_hash, log_index) is unique in the ledger record table
    3. The cursor never decreases
    """

    def __init__(self, stream: str):
        self.stream = stream.lower()

    @abstractmethod
    def begin_block(self) -> Any:
        """
        Begin a unit of work.

        Returns an async context manager yielding a BlockUnit:

            async with store.begin_block() as unit:
                ...
                await unit.commit()
        """

    async def ensure_cursor(self, initial: int = 0) -> CursorState:
        """Create the cursor row at `initial` if it does not exist yet."""
        existing = await self.get_cursor()
        if existing is not None:
            return existing
        async with self.begin_block() as unit:
            await unit.advance_cursor(initial)
            await unit.commit()
        logger.info("Cursor created", stream=self.stream, block=initial)
        return await self.get_cursor()

    async def read_cursor(self) -> int:
        """Highest fully processed block (0 when no cursor exists)."""
        state = await self.get_cursor()
        return state.last_processed_block if state else 0

    async def advance_cursor(self, height: int) -> int:
        """Standalone cursor advance in its own unit."""
        async with self.begin_block() as unit:
            await unit.advance_cursor(height)
            await unit.commit()
        return height

    async def mark_window(self, from_block: Optional[int], to_block: Optional[int]) -> None:
        """Persist the bounds of the window about to be processed."""
        async with self.begin_block() as unit:
            await unit.set_window(from_block, to_block)
            await unit.commit()

    @abstractmethod
    async def get_cursor(self) -> Optional[CursorState]:
        """Full cursor record, or None if never created."""

    @abstractmethod
    async def get_tx_record(self, tx_hash: str, log_index: int) -> Optional[LedgerTxRecord]:
        """Ledger record for an idempotency key."""

    @abstractmethod
    async def list_tx_records(self, tx_hash: Optional[str] = None) -> list[LedgerTxRecord]:
        """Ledger records ordered by (block_number, log_index)."""

    @abstractmethod
    async def get_inventory(self, index: int) -> Optional[InventoryProjection]:
        """Inventory row by chain index."""

    @abstractmethod
    async def list_inventory(self) -> list[InventoryProjection]:
        """All inventory rows ordered by index."""

    @abstractmethod
    async def list_audit_entries(self, record_id: Optional[int] = None) -> list[AuditEntry]:
        """Audit entries in insertion order, optionally for one record."""

    async def latest_staff_grants(self) -> dict[str, StaffGrant]:
        """Latest grant per staff address; consumers treat it as authoritative."""
        grants: dict[str, StaffGrant] = {}
        for record in await self.list_tx_records():
            if record.action_type == ActionType.GRANT_STAFF_ROLE:
                grant = StaffGrant.from_record(record)
                grants[grant.staff_address] = grant
        return grants

    async def close(self) -> None:
        """Release connections. Default: nothing to release."""
        return None


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

@dataclass
class _MemoryState:
    tx_records: dict = field(default_factory=dict)
    inventory: dict = field(default_factory=dict)
    audit: list = field(default_factory=list)
    cursor: Optional[CursorState] = None

    def copy(self) -> "_MemoryState":
        return _MemoryState(
            tx_records=dict(self.tx_records),
            inventory=dict(self.inventory),
            audit=list(self.audit),
            cursor=replace(self.cursor) if self.cursor else None,
        )


class InMemoryBlockUnit(BlockUnit):
    """Unit of work over a private copy of the store state."""

    def __init__(self, store: "InMemoryProjectionStore", working: _MemoryState):
        super().__init__()
        self._store = store
        self._working = working

    async def claim(self, record: LedgerTxRecord) -> bool:
        self._check_open()
        if record.key in self._working.tx_records:
            return False
        self._working.tx_records[record.key] = record
        return True

    async def get_inventory(self, index: int) -> Optional[InventoryProjection]:
        return self._working.inventory.get(index)

    async def insert_inventory(self, row: InventoryProjection) -> None:
        self._check_open()
        if row.index in self._working.inventory:
            raise PersistenceError(f"Inventory row {row.index} already exists")
        self._working.inventory[row.index] = row

    async def confirm_inventory(self, index: int, tx_hash: str, synced_at: datetime) -> None:
        self._check_open()
        row = self._working.inventory.get(index)
        if row is None:
            raise PersistenceError(f"Inventory row {index} does not exist")
        self._working.inventory[index] = replace(
            row,
            chain_tx_hash=tx_hash,
            last_synced_at=synced_at,
            chain_status=ChainStatus.CONFIRMED,
        )

    async def append_audit(self, entry: AuditEntry) -> None:
        self._check_open()
        self._working.audit.append(entry)

    async def last_audit_time(self, record_id: int) -> Optional[datetime]:
        times = [e.changed_at for e in self._working.audit if e.record_id == record_id]
        return max(times) if times else None

    async def read_cursor(self) -> int:
        if self._working.cursor is None:
            now = _utcnow()
            self._working.cursor = CursorState(
                stream=self._store.stream,
                last_processed_block=0,
                started_at=now,
                updated_at=now,
            )
        return self._working.cursor.last_processed_block

    async def _write_cursor(self, height: int) -> None:
        self._working.cursor.last_processed_block = height
        self._working.cursor.updated_at = _utcnow()

    async def set_window(self, from_block: Optional[int], to_block: Optional[int]) -> None:
        self._check_open()
        await self.read_cursor()
        self._working.cursor.window_from = from_block
        self._working.cursor.window_to = to_block

    async def commit(self) -> None:
        self._check_open()
        self._store._state = self._working
        self._committed = True


class InMemoryProjectionStore(ProjectionStore):
    """
    In-memory implementation of ProjectionStore.

    Suitable for:
    - Development
    - Testing

    NOT suitable for:
    - Production (no durability)
    - Multi-process deployments (no shared state)
    """

    unit_class = InMemoryBlockUnit

    def __init__(self, stream: str = "default"):
        super().__init__(stream)
        self._state = _MemoryState()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def begin_block(self) -> AsyncIterator[BlockUnit]:
        """Begin a unit of work; writes are staged on a copy until commit()."""
        async with self._lock:
            unit = self.unit_class(self, self._state.copy())
            try:
                yield unit
            finally:
                unit._closed = True

    async def get_cursor(self) -> Optional[CursorState]:
        cursor = self._state.cursor
        return replace(cursor) if cursor else None

    async def get_tx_record(self, tx_hash: str, log_index: int) -> Optional[LedgerTxRecord]:
        return self._state.tx_records.get((tx_hash, log_index))

    async def list_tx_records(self, tx_hash: Optional[str] = None) -> list[LedgerTxRecord]:
        records = [
            r for r in self._state.tx_records.values()
            if tx_hash is None or r.tx_hash == tx_hash
        ]
        return sorted(records, key=lambda r: (r.block_number, r.log_index))

    async def get_inventory(self, index: int) -> Optional[InventoryProjection]:
        return self._state.inventory.get(index)

    async def list_inventory(self) -> list[InventoryProjection]:
        return [self._state.inventory[i] for i in sorted(self._state.inventory)]

    async def list_audit_entries(self, record_id: Optional[int] = None) -> list[AuditEntry]:
        return [
            e for e in self._state.audit
            if record_id is None or e.record_id == record_id
        ]

    async def seed_inventory(self, row: InventoryProjection) -> None:
        """Pre-insert a row the way a write-side collaborator would (PENDING)."""
        async with self.begin_block() as unit:
            await unit.insert_inventory(row)
            await unit.commit()


# ============================================================
# POSTGRESQL IMPLEMENTATION (ASYNC)
# ============================================================

class AsyncPostgresBlockUnit(BlockUnit):
    """Unit of work bound to one asyncpg connection and transaction."""

    def __init__(self, store: "AsyncPostgresProjectionStore", conn, transaction):
        super().__init__()
        self._store = store
        self._conn = conn
        self._transaction = transaction
        self._cursor_locked: Optional[int] = None

    async def claim(self, record: LedgerTxRecord) -> bool:
        self._check_open()
        # The unique index serializes concurrent writers: a second claimer
        # waits for the first transaction, then sees the conflict.
        record_id = await self._conn.fetchval("""
            INSERT INTO ledger_tx_record (
                tx_hash, log_index, block_number, contract_address,
                action_type, entity_type, entity_id, actor_address,
                payload_json, status, confirmed_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10, $11)
            ON CONFLICT (tx_hash, log_index) DO NOTHING
            RETURNING record_id
        """,
            record.tx_hash,
            record.log_index,
            record.block_number,
            self._store.stream,
            record.action_type.value,
            record.entity_type.value,
            record.entity_id,
            record.actor_address,
            json.dumps(record.payload_json),
            record.status.value,
            record.confirmed_at,
        )
        return record_id is not None

    async def get_inventory(self, index: int) -> Optional[InventoryProjection]:
        row = await self._conn.fetchrow(
            f"{_INVENTORY_SELECT} WHERE medicine_index = $1 FOR UPDATE", index
        )
        return _row_to_inventory(row) if row else None

    async def insert_inventory(self, row: InventoryProjection) -> None:
        self._check_open()
        await self._conn.execute("""
            INSERT INTO inventory_projection (
                medicine_index, medicine_name, batch_number, notes, quantity,
                expiration_date, location, chain_timestamp,
                chain_tx_hash, chain_status, last_synced_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
        """,
            row.index,
            row.name,
            row.batch_number,
            row.notes,
            row.quantity,
            row.expiration_date,
            row.location,
            row.chain_timestamp,
            row.chain_tx_hash,
            row.chain_status.value,
            row.last_synced_at,
        )

    async def confirm_inventory(self, index: int, tx_hash: str, synced_at: datetime) -> None:
        self._check_open()
        status = await self._conn.execute("""
            UPDATE inventory_projection
            SET chain_tx_hash = $2, last_synced_at = $3, chain_status = 'CONFIRMED'
            WHERE medicine_index = $1
        """, index, tx_hash, synced_at)
        if status.endswith(" 0"):
            raise PersistenceError(f"Inventory row {index} does not exist")

    async def append_audit(self, entry: AuditEntry) -> None:
        self._check_open()
        await self._conn.execute("""
            INSERT INTO audit_entry (
                table_name, record_id, action, old_value, new_value,
                description, changed_at, tx_hash, log_index
            ) VALUES ($1, $2, $3, $4::jsonb, $5::jsonb, $6, $7, $8, $9)
        """,
            entry.table_name,
            entry.record_id,
            entry.action,
            json.dumps(entry.old_value),
            json.dumps(entry.new_value),
            entry.description,
            entry.changed_at,
            entry.tx_hash,
            entry.log_index,
        )

    async def last_audit_time(self, record_id: int) -> Optional[datetime]:
        return await self._conn.fetchval(
            "SELECT MAX(changed_at) FROM audit_entry WHERE record_id = $1", record_id
        )

    async def read_cursor(self) -> int:
        if self._cursor_locked is not None:
            return self._cursor_locked

        # Lock the cursor row so concurrent units (poller + backfill) serialize
        value = await self._conn.fetchval("""
            SELECT last_processed_block FROM sync_cursor
            WHERE stream = $1
            FOR UPDATE
        """, self._store.stream)
        if value is None:
            await self._conn.execute("""
                INSERT INTO sync_cursor (stream, last_processed_block, started_at, updated_at)
                VALUES ($1, 0, now(), now())
                ON CONFLICT (stream) DO NOTHING
            """, self._store.stream)
            value = await self._conn.fetchval("""
                SELECT last_processed_block FROM sync_cursor
                WHERE stream = $1
                FOR UPDATE
            """, self._store.stream)
        self._cursor_locked = value
        return value

    async def _write_cursor(self, height: int) -> None:
        await self._conn.execute("""
            UPDATE sync_cursor
            SET last_processed_block = $2, updated_at = now()
            WHERE stream = $1
        """, self._store.stream, height)
        self._cursor_locked = height

    async def set_window(self, from_block: Optional[int], to_block: Optional[int]) -> None:
        self._check_open()
        await self.read_cursor()
        await self._conn.execute("""
            UPDATE sync_cursor
            SET window_from = $2, window_to = $3, updated_at = now()
            WHERE stream = $1
        """, self._store.stream, from_block, to_block)

    async def commit(self) -> None:
        self._check_open()
        await self._transaction.commit()
        self._committed = True


_INVENTORY_SELECT = """
    SELECT medicine_index, medicine_name, batch_number, notes, quantity,
           expiration_date, location, chain_timestamp,
           chain_tx_hash, chain_status, last_synced_at
    FROM inventory_projection
"""


def _row_to_inventory(row) -> InventoryProjection:
    return InventoryProjection(
        index=int(row["medicine_index"]),
        name=row["medicine_name"],
        batch_number=row["batch_number"],
        notes=row["notes"],
        quantity=int(row["quantity"]),
        expiration_date=row["expiration_date"],
        location=row["location"],
        chain_timestamp=row["chain_timestamp"],
        chain_tx_hash=row["chain_tx_hash"],
        chain_status=ChainStatus(row["chain_status"]),
        last_synced_at=row["last_synced_at"],
    )


def _load_json(value) -> dict:
    # asyncpg returns jsonb as text unless a codec is registered
    if isinstance(value, str):
        return json.loads(value)
    return value or {}


def _row_to_tx_record(row) -> LedgerTxRecord:
    return LedgerTxRecord(
        tx_hash=row["tx_hash"],
        log_index=row["log_index"],
        block_number=row["block_number"],
        action_type=ActionType(row["action_type"]),
        entity_type=EntityType(row["entity_type"]),
        entity_id=int(row["entity_id"]) if row["entity_id"] is not None else None,
        actor_address=row["actor_address"],
        payload_json=_load_json(row["payload_json"]),
        status=TxStatus(row["status"]),
        confirmed_at=row["confirmed_at"],
    )


def _row_to_audit(row) -> AuditEntry:
    return AuditEntry(
        table_name=row["table_name"],
        record_id=int(row["record_id"]),
        action=row["action"],
        old_value=_load_json(row["old_value"]),
        new_value=_load_json(row["new_value"]),
        description=row["description"],
        changed_at=row["changed_at"],
        tx_hash=row["tx_hash"],
        log_index=row["log_index"],
    )


# asyncpg error codes
PGCODE_LOCK_NOT_AVAILABLE = "55P03"
PGCODE_QUERY_CANCELED = "57014"


def _timeout_kind(e: Exception) -> Optional[str]:
    """
    Determine the type of timeout from an asyncpg exception.

    Returns:
        "lock" - Lock-related failure (timeout waiting, or NOWAIT refusal)
        "statement" - Statement timeout (query took too long)
        "timeout" - Some timeout but unclear which
        None - Not a timeout error
    """
    sqlstate = getattr(e, "sqlstate", None)
    err_msg = str(e).lower()

    if sqlstate == PGCODE_LOCK_NOT_AVAILABLE:
        return "lock"
    if sqlstate == PGCODE_QUERY_CANCELED:
        if "lock timeout" in err_msg or "lock_timeout" in err_msg:
            return "lock"
        if "statement timeout" in err_msg or "statement_timeout" in err_msg:
            return "statement"
        return "timeout"
    return None


def _describe_pg_error(e: Exception) -> str:
    kind = _timeout_kind(e)
    if kind == "lock":
        return "Cursor busy - could not acquire lock"
    if kind == "statement":
        return "Query timed out - statement took too long"
    return f"{type(e).__name__}: {e}"


class AsyncPostgresProjectionStore(ProjectionStore):
    """
    Async PostgreSQL implementation using asyncpg.

    Provides:
    - Full ACID guarantees per block unit
    - Idempotency via the unique index on (tx_hash, log_index)
    - Cursor serialization via FOR UPDATE row locking
    - Lock/statement timeouts to prevent hanging

    Usage:
        pool = await asyncpg.create_pool(...)
        store = AsyncPostgresProjectionStore(pool, stream=contract_address)

        async with store.begin_block() as unit:
            ...
            await unit.commit()
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    def __init__(
        self,
        pool,
        stream: str,
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Initialize async store with connection pool.

        Args:
            pool: asyncpg connection pool
            stream: cursor key (the monitored contract address)
            lock_timeout_ms: How long to wait for row lock (ms)
            statement_timeout_ms: Max statement execution time (ms)
        """
        super().__init__(stream)
        self._pool = pool
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    @classmethod
    async def connect(cls, db_config, stream: str) -> "AsyncPostgresProjectionStore":
        """Create a pool from a DatabaseConfig."""
        try:
            pool = await asyncpg.create_pool(
                dsn=db_config.to_url(),
                min_size=db_config.pool_min_size,
                max_size=db_config.pool_max_size,
                timeout=db_config.pool_timeout,
            )
        except (OSError, asyncpg.PostgresError) as e:
            raise PersistenceError(
                f"Cannot connect to {db_config.to_url(include_password=False)}: {e}"
            ) from e
        logger.info("Database pool created", url=db_config.to_url(include_password=False))
        return cls(pool, stream)

    @asynccontextmanager
    async def _connection(self):
        """Pooled connection for reads; failures surface as PersistenceError."""
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise PersistenceError(_describe_pg_error(e)) from e

    async def initialize_schema(self) -> None:
        """Apply schema.sql (idempotent)."""
        ddl = SCHEMA_PATH.read_text()
        async with self._connection() as conn:
            await conn.execute(ddl)

    @asynccontextmanager
    async def begin_block(self) -> AsyncIterator[BlockUnit]:
        """
        Begin a unit of work on a dedicated connection and transaction.

        Database failures raised inside the block surface as PersistenceError.
        """
        try:
            conn = await self._pool.acquire()
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise PersistenceError(_describe_pg_error(e)) from e
        transaction = conn.transaction()
        unit = None
        try:
            await transaction.start()
            # SET LOCAL ensures timeouts are transaction-scoped and won't leak
            await conn.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
            await conn.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")

            unit = AsyncPostgresBlockUnit(self, conn, transaction)
            yield unit
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise PersistenceError(_describe_pg_error(e)) from e
        finally:
            if unit is None or not unit.committed:
                try:
                    await transaction.rollback()
                except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError):
                    logger.warning("Rollback failed; connection will be discarded")
            if unit is not None:
                unit._closed = True
            await self._pool.release(conn)

    async def get_cursor(self) -> Optional[CursorState]:
        async with self._connection() as conn:
            row = await conn.fetchrow("""
                SELECT stream, last_processed_block, started_at, updated_at,
                       window_from, window_to
                FROM sync_cursor WHERE stream = $1
            """, self.stream)
        if row is None:
            return None
        return CursorState(
            stream=row["stream"],
            last_processed_block=row["last_processed_block"],
            started_at=row["started_at"],
            updated_at=row["updated_at"],
            window_from=row["window_from"],
            window_to=row["window_to"],
        )

    async def get_tx_record(self, tx_hash: str, log_index: int) -> Optional[LedgerTxRecord]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"{_TX_SELECT} WHERE tx_hash = $1 AND log_index = $2", tx_hash, log_index
            )
        return _row_to_tx_record(row) if row else None

    async def list_tx_records(self, tx_hash: Optional[str] = None) -> list[LedgerTxRecord]:
        async with self._connection() as conn:
            if tx_hash is None:
                rows = await conn.fetch(
                    f"{_TX_SELECT} WHERE contract_address = $1 ORDER BY block_number, log_index",
                    self.stream,
                )
            else:
                rows = await conn.fetch(
                    f"{_TX_SELECT} WHERE tx_hash = $1 ORDER BY block_number, log_index",
                    tx_hash,
                )
        return [_row_to_tx_record(r) for r in rows]

    async def get_inventory(self, index: int) -> Optional[InventoryProjection]:
        async with self._connection() as conn:
            row = await conn.fetchrow(f"{_INVENTORY_SELECT} WHERE medicine_index = $1", index)
        return _row_to_inventory(row) if row else None

    async def list_inventory(self) -> list[InventoryProjection]:
        async with self._connection() as conn:
            rows = await conn.fetch(f"{_INVENTORY_SELECT} ORDER BY medicine_index")
        return [_row_to_inventory(r) for r in rows]

    async def list_audit_entries(self, record_id: Optional[int] = None) -> list[AuditEntry]:
        async with self._connection() as conn:
            if record_id is None:
                rows = await conn.fetch(f"{_AUDIT_SELECT} ORDER BY audit_id")
            else:
                rows = await conn.fetch(
                    f"{_AUDIT_SELECT} WHERE record_id = $1 ORDER BY audit_id", record_id
                )
        return [_row_to_audit(r) for r in rows]

    async def latest_staff_grants(self) -> dict[str, StaffGrant]:
        async with self._connection() as conn:
            rows = await conn.fetch(f"""
                SELECT DISTINCT ON (payload_json->>'staff') *
                FROM ({_TX_SELECT} WHERE action_type = 'GRANT_STAFF_ROLE'
                      AND contract_address = $1) AS grants
                ORDER BY payload_json->>'staff', block_number DESC, log_index DESC
            """, self.stream)
        grants = [StaffGrant.from_record(_row_to_tx_record(r)) for r in rows]
        return {g.staff_address: g for g in grants}

    async def close(self) -> None:
        await self._pool.close()
        logger.info("Database pool closed")


_TX_SELECT = """
    SELECT tx_hash, log_index, block_number, action_type, entity_type,
           entity_id, actor_address, payload_json, status, confirmed_at
    FROM ledger_tx_record
"""

_AUDIT_SELECT = """
    SELECT table_name, record_id, action, old_value, new_value,
           description, changed_at, tx_hash, log_index
    FROM audit_entry
"""


# ============================================================
# FACTORY
# ============================================================

async def open_store(stream: str, driver=None, db_config=None) -> ProjectionStore:
    """
    Open the projection store selected by MEDSYNC_STORE_DRIVER / DATABASE_URL.

    Args:
        stream: cursor key (the monitored contract address)
        driver: StoreDriver override
        db_config: DatabaseConfig override (defaults to the environment)
    """
    driver = StoreDriver(driver) if driver is not None else get_store_driver()
    if driver == StoreDriver.MEMORY:
        logger.warning("Using in-memory projection store; nothing will be persisted")
        return InMemoryProjectionStore(stream)

    store = await AsyncPostgresProjectionStore.connect(db_config or DatabaseConfig.from_env(), stream)
    await store.initialize_schema()
    return store
