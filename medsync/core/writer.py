"""
Projection Writer

Applies decoded ledger events to the relational projections.

TRANSACTION MODEL:
- Events are grouped by block; each block is one unit of work
- Inside a unit, each event first claims its (tx_hash, log_index)
  idempotency row; a lost claim means the event was already applied and
  it is skipped without touching any domain row
- The cursor advance is the last write of each unit, so the cursor only
  moves when everything up to that block is committed

Cursor targets:
    unit for block b advances to (next event-bearing block - 1), or to
    upper_block for the last unit. A window with no events is a single
    cursor-only unit. A failure while writing block b therefore leaves
    the cursor at the last block before b.

Cursor contiguity:
    A unit only advances the cursor if its range starts at or before
    cursor + 1. A backfill replaying old blocks never regresses the
    cursor, and never skips it over blocks it has not seen.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import groupby
from typing import Callable, Optional, Sequence

from ..errors import PersistenceError
from ..observability import SyncMetrics, get_logger
from ..schemas import (
    AUDIT_TABLE_NAME,
    ActionType,
    AuditEntry,
    ChainStatus,
    DecodedEvent,
    EntityType,
    EventKind,
    HistoryLoggedPayload,
    InventoryAddedPayload,
    InventoryProjection,
    LedgerTxRecord,
    StaffRoleGrantedPayload,
)
from ..db.store import BlockUnit, ProjectionStore

logger = get_logger(__name__)


class StopRequested(Exception):
    """Stop was requested at a checkpoint. Committed units stay committed."""
    pass


@dataclass
class ApplyResult:
    """Summary of one apply() call."""
    applied: int = 0
    duplicates: int = 0
    units: int = 0
    cursor: Optional[int] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_ledger_record(event: DecodedEvent, confirmed_at: datetime) -> LedgerTxRecord:
    """Traceability row for any decoded event."""
    payload = event.payload
    if isinstance(payload, InventoryAddedPayload):
        action, entity, entity_id, actor = (
            ActionType.ADD_MEDICINE, EntityType.MEDICINE, payload.index, None
        )
    elif isinstance(payload, HistoryLoggedPayload):
        action, entity, entity_id, actor = (
            ActionType.LOG_HISTORY, EntityType.MEDICINE, payload.record_id, None
        )
    elif isinstance(payload, StaffRoleGrantedPayload):
        action, entity, entity_id, actor = (
            ActionType.GRANT_STAFF_ROLE, EntityType.USER, None, payload.admin
        )
    else:
        raise TypeError(f"Unsupported payload type: {type(payload).__name__}")

    return LedgerTxRecord(
        tx_hash=event.tx_hash,
        log_index=event.log_index,
        block_number=event.block_number,
        action_type=action,
        entity_type=entity,
        entity_id=entity_id,
        actor_address=actor,
        payload_json=event.payload_json(),
        confirmed_at=confirmed_at,
    )


class ProjectionWriter:
    """
    Idempotent writer for decoded events.

    Usage:
        writer = ProjectionWriter(store, metrics)
        result = await writer.apply(events, upper_block=150)
    """

    def __init__(
        self,
        store: ProjectionStore,
        metrics: Optional[SyncMetrics] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.metrics = metrics or SyncMetrics()
        self._clock = clock

    async def apply(
        self,
        events: Sequence[DecodedEvent],
        upper_block: int,
        *,
        lower_block: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> ApplyResult:
        """
        Apply events and advance the cursor to upper_block.

        Args:
            events: decoded events, ascending (block_number, log_index)
            upper_block: last block covered by the fetched window
            lower_block: first block of the window; when given, the cursor
                only advances if the window is contiguous with it
            should_stop: checked between block units

        Raises:
            PersistenceError: a unit failed; it was rolled back and the
                cursor sits at the end of the last committed unit
            StopRequested: should_stop() returned True between units
        """
        ordered = sorted(events, key=lambda e: e.position)
        if ordered and ordered[-1].block_number > upper_block:
            raise ValueError(
                f"Event at block {ordered[-1].block_number} is beyond upper_block {upper_block}"
            )

        blocks = [
            (block, list(group))
            for block, group in groupby(ordered, key=lambda e: e.block_number)
        ]
        result = ApplyResult()

        if not blocks:
            result.cursor = await self._run_unit([], lower_block, upper_block, result)
            return result

        range_start = lower_block
        for i, (block, block_events) in enumerate(blocks):
            if i > 0 and should_stop is not None and should_stop():
                raise StopRequested(f"Stopped before block {block}")

            target = blocks[i + 1][0] - 1 if i + 1 < len(blocks) else upper_block
            result.cursor = await self._run_unit(block_events, range_start, target, result)
            range_start = target + 1

        return result

    async def _run_unit(
        self,
        events: list[DecodedEvent],
        range_start: Optional[int],
        target: int,
        result: ApplyResult,
    ) -> int:
        """One transactional unit: claim + domain writes, then cursor."""
        applied = duplicates = 0
        try:
            async with self.store.begin_block() as unit:
                for event in events:
                    if await self._apply_event(unit, event):
                        applied += 1
                    else:
                        duplicates += 1

                cursor = await unit.read_cursor()
                contiguous = range_start is None or range_start <= cursor + 1
                if target > cursor and contiguous:
                    cursor = await unit.advance_cursor(target)
                await unit.commit()
        except PersistenceError:
            self.metrics.persistence_failures += 1
            raise

        result.applied += applied
        result.duplicates += duplicates
        result.units += 1
        self.metrics.events_applied += applied
        self.metrics.duplicates_skipped += duplicates
        self.metrics.last_block = cursor

        if events:
            logger.info(
                "Block applied",
                block=events[0].block_number,
                applied=applied,
                duplicates=duplicates,
                cursor=cursor,
            )
        return cursor

    async def _apply_event(self, unit: BlockUnit, event: DecodedEvent) -> bool:
        """Returns False when the event was already applied."""
        now = self._clock()
        record = to_ledger_record(event, confirmed_at=now)
        if not await unit.claim(record):
            logger.debug(
                "Duplicate event skipped",
                tx_hash=event.tx_hash,
                log_index=event.log_index,
            )
            return False

        if event.kind == EventKind.INVENTORY_ADDED:
            await self._apply_inventory_added(unit, event, now)
        elif event.kind == EventKind.HISTORY_LOGGED:
            await self._apply_history_logged(unit, event)
        # StaffRoleGranted is fully represented by its ledger record
        return True

    async def _apply_inventory_added(self, unit: BlockUnit, event: DecodedEvent, now: datetime) -> None:
        payload: InventoryAddedPayload = event.payload
        existing = await unit.get_inventory(payload.index)
        if existing is None:
            await unit.insert_inventory(InventoryProjection(
                index=payload.index,
                name=payload.name,
                batch_number=payload.batch_number,
                notes=payload.notes,
                quantity=payload.quantity,
                expiration_date=payload.expiration_date,
                location=payload.location,
                chain_timestamp=payload.timestamp,
                chain_tx_hash=event.tx_hash,
                last_synced_at=now,
                chain_status=ChainStatus.CONFIRMED,
            ))
        else:
            await unit.confirm_inventory(payload.index, event.tx_hash, now)

    async def _apply_history_logged(self, unit: BlockUnit, event: DecodedEvent) -> None:
        payload: HistoryLoggedPayload = event.payload
        last = await unit.last_audit_time(payload.record_id)
        if last is not None and payload.timestamp < last:
            logger.warning(
                "Audit entry out of order",
                record_id=payload.record_id,
                changed_at=payload.timestamp.isoformat(),
                previous=last.isoformat(),
                tx_hash=event.tx_hash,
            )

        await unit.append_audit(AuditEntry(
            table_name=AUDIT_TABLE_NAME,
            record_id=payload.record_id,
            action=payload.action,
            old_value={payload.field_changed: payload.old_value},
            new_value={payload.field_changed: payload.new_value},
            description=payload.description,
            changed_at=payload.timestamp,
            tx_hash=event.tx_hash,
            log_index=event.log_index,
        ))
