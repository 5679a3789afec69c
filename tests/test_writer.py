"""
Tests for the projection writer.

Covers the per-kind mappings, idempotency on (tx_hash, log_index), the
per-block transaction model and cursor behaviour.
"""

import logging
from datetime import datetime, timezone

import pytest
from eth_utils import to_checksum_address

from medsync.core.decoder import EventDecoder
from medsync.core.writer import ProjectionWriter, StopRequested
from medsync.errors import PersistenceError
from medsync.observability import SyncMetrics
from medsync.schemas import (
    AUDIT_TABLE_NAME,
    ActionType,
    ChainStatus,
    EntityType,
    InventoryProjection,
)

from conftest import (
    ADMIN,
    STAFF,
    T0,
    FailingStore,
    history_log,
    inventory_log,
    staff_log,
    tx,
)

FIXED_NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def decode(*logs):
    return EventDecoder().decode_batch(logs).events


@pytest.fixture
def metrics():
    return SyncMetrics()


@pytest.fixture
def writer(store, metrics):
    return ProjectionWriter(store, metrics, clock=lambda: FIXED_NOW)


class TestInventoryAdded:
    """InventoryAdded inserts or confirms the inventory row."""

    async def test_inserts_confirmed_row(self, writer, store):
        await writer.apply(decode(inventory_log(3, 0, tx(1), index=1)), upper_block=5)

        row = await store.get_inventory(1)
        assert row is not None
        assert row.name == "Amoxicillin"
        assert row.quantity == 100
        assert row.chain_status == ChainStatus.CONFIRMED
        assert row.chain_tx_hash == tx(1)
        assert row.last_synced_at == FIXED_NOW

    async def test_records_ledger_tx(self, writer, store):
        await writer.apply(decode(inventory_log(3, 0, tx(1), index=1)), upper_block=5)

        record = await store.get_tx_record(tx(1), 0)
        assert record.action_type == ActionType.ADD_MEDICINE
        assert record.entity_type == EntityType.MEDICINE
        assert record.entity_id == 1
        assert record.block_number == 3
        assert record.payload_json["name"] == "Amoxicillin"

    async def test_confirms_pre_inserted_row(self, writer, store):
        await store.seed_inventory(InventoryProjection(
            index=1,
            name="Amoxicillin (local)",
            batch_number="B-001",
            notes="entered at the counter",
            quantity=100,
            expiration_date=datetime.fromtimestamp(T0, tz=timezone.utc),
            location="Station 1",
            chain_timestamp=datetime.fromtimestamp(T0, tz=timezone.utc),
            chain_tx_hash=None,
            last_synced_at=None,
        ))
        assert (await store.get_inventory(1)).chain_status == ChainStatus.PENDING

        await writer.apply(decode(inventory_log(3, 0, tx(1), index=1)), upper_block=5)

        row = await store.get_inventory(1)
        assert row.chain_status == ChainStatus.CONFIRMED
        assert row.chain_tx_hash == tx(1)
        assert row.last_synced_at == FIXED_NOW
        # Only sync metadata changes on an existing row
        assert row.name == "Amoxicillin (local)"
        assert row.notes == "entered at the counter"


class TestHistoryLogged:
    """HistoryLogged appends one audit entry."""

    async def test_appends_audit_entry(self, writer, store):
        await writer.apply(
            decode(history_log(4, 1, tx(2), record_id=7, old_value="100", new_value="90")),
            upper_block=4,
        )

        entries = await store.list_audit_entries(7)
        assert len(entries) == 1
        entry = entries[0]
        assert entry.table_name == AUDIT_TABLE_NAME
        assert entry.old_value == {"quantity": "100"}
        assert entry.new_value == {"quantity": "90"}
        assert entry.changed_at == datetime.fromtimestamp(T0 + 60, tz=timezone.utc)
        assert entry.tx_hash == tx(2)

        record = await store.get_tx_record(tx(2), 1)
        assert record.action_type == ActionType.LOG_HISTORY
        assert record.entity_id == 7

    async def test_out_of_order_changed_at_is_kept_and_logged(self, writer, store, caplog):
        await writer.apply(decode(history_log(4, 0, record_id=7, timestamp=T0 + 100)), upper_block=4)
        with caplog.at_level(logging.WARNING, logger="medsync.core.writer"):
            await writer.apply(decode(history_log(5, 0, record_id=7, timestamp=T0 + 50)), upper_block=5)

        assert len(await store.list_audit_entries(7)) == 2
        assert "Audit entry out of order" in caplog.text


class TestStaffRoleGranted:
    """StaffRoleGranted is a ledger record and nothing else."""

    async def test_records_grant(self, writer, store):
        await writer.apply(decode(staff_log(12, 0, tx(3))), upper_block=12)

        record = await store.get_tx_record(tx(3), 0)
        assert record.action_type == ActionType.GRANT_STAFF_ROLE
        assert record.entity_type == EntityType.USER
        assert record.actor_address == ADMIN
        assert record.payload_json == {"staff": STAFF, "admin": ADMIN}
        assert await store.list_inventory() == []

    async def test_latest_grant_per_staff(self, writer, store):
        other_admin = to_checksum_address("0x" + "cc" * 20)
        await writer.apply(decode(staff_log(12, 0, tx(3))), upper_block=12)
        await writer.apply(decode(staff_log(14, 0, tx(4), admin=other_admin)), upper_block=14)

        grants = await store.latest_staff_grants()
        assert list(grants) == [STAFF]
        assert grants[STAFF].tx_hash == tx(4)
        assert grants[STAFF].admin_address == other_admin
        assert grants[STAFF].block_number == 14


class TestIdempotency:
    """(tx_hash, log_index) is applied at most once."""

    async def test_replay_is_a_no_op(self, writer, store, metrics):
        events = decode(inventory_log(3, 0, tx(1)), history_log(3, 1, tx(1)))
        first = await writer.apply(events, upper_block=5)
        second = await writer.apply(events, upper_block=5)

        assert first.applied == 2
        assert second.applied == 0
        assert second.duplicates == 2
        assert metrics.duplicates_skipped == 2
        assert len(await store.list_tx_records()) == 2
        assert len(await store.list_audit_entries()) == 1

    async def test_same_tx_different_log_index(self, writer, store):
        shared = tx(10)
        await writer.apply(
            decode(inventory_log(6, 0, shared, index=1), inventory_log(6, 1, shared, index=2)),
            upper_block=6,
        )

        assert {r.key for r in await store.list_tx_records()} == {(shared, 0), (shared, 1)}
        assert [row.index for row in await store.list_inventory()] == [1, 2]


class TestCursor:
    """The writer advances the cursor as the last write of each unit."""

    async def test_empty_window_still_advances(self, writer, store):
        result = await writer.apply([], upper_block=9, lower_block=1)
        assert result.cursor == 9
        assert await store.read_cursor() == 9

    async def test_multi_block_window_commits_per_block(self, writer, store):
        events = decode(inventory_log(3, 0, index=1), inventory_log(7, 0, index=2))
        result = await writer.apply(events, upper_block=10, lower_block=1)

        assert result.units == 2
        assert result.cursor == 10
        assert store.cursor_history[-2:] == [6, 10]

    async def test_failure_leaves_cursor_before_failed_block(self):
        store = FailingStore({(tx(71), 1)})
        writer = ProjectionWriter(store)
        events = decode(
            inventory_log(5, 0, tx(50), index=1),
            inventory_log(7, 0, tx(71), index=2),
            inventory_log(7, 1, tx(71), index=3),
        )

        with pytest.raises(PersistenceError):
            await writer.apply(events, upper_block=9, lower_block=1)

        assert await store.read_cursor() == 6
        # The whole failed block rolled back, including its first event
        assert await store.get_tx_record(tx(71), 0) is None
        assert await store.get_inventory(2) is None
        assert writer.metrics.persistence_failures == 1

    async def test_replayed_window_never_regresses(self, writer, store):
        await writer.apply(decode(inventory_log(3, 0)), upper_block=100, lower_block=1)
        result = await writer.apply(decode(inventory_log(3, 0)), upper_block=50, lower_block=1)

        assert result.cursor == 100
        assert await store.read_cursor() == 100
        assert store.cursor_history == sorted(store.cursor_history)

    async def test_non_contiguous_window_does_not_skip_ahead(self, writer, store):
        await writer.apply([], upper_block=10, lower_block=1)
        result = await writer.apply(decode(inventory_log(25, 0)), upper_block=30, lower_block=20)

        assert result.applied == 1
        assert await store.read_cursor() == 10

    async def test_event_beyond_upper_block_rejected(self, writer):
        with pytest.raises(ValueError):
            await writer.apply(decode(inventory_log(8, 0)), upper_block=5)


class TestStop:
    """should_stop is honored between block units, never inside one."""

    async def test_stop_between_blocks(self, writer, store):
        events = decode(inventory_log(3, 0, index=1), inventory_log(4, 0, index=2))
        with pytest.raises(StopRequested):
            await writer.apply(events, upper_block=10, lower_block=1, should_stop=lambda: True)

        assert await store.get_inventory(1) is not None
        assert await store.get_inventory(2) is None
        assert await store.read_cursor() == 3
