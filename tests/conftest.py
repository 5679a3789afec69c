"""
Shared fixtures: a scriptable fake chain, log builders and store helpers.
"""

import asyncio
from dataclasses import replace
from typing import Optional

import pytest
from eth_abi import encode
from eth_utils import to_checksum_address

from medsync.config import SyncConfig
from medsync.core.decoder import event_topic
from medsync.db.store import InMemoryBlockUnit, InMemoryProjectionStore
from medsync.errors import PersistenceError
from medsync.schemas import EVENT_SIGNATURES, EventKind, LogBatch, RawLog, Receipt

CONTRACT = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
STAFF = to_checksum_address("0x" + "aa" * 20)
ADMIN = to_checksum_address("0x" + "bb" * 20)
T0 = 1_700_000_000

TOPIC_INVENTORY = event_topic(EVENT_SIGNATURES[EventKind.INVENTORY_ADDED])
TOPIC_HISTORY = event_topic(EVENT_SIGNATURES[EventKind.HISTORY_LOGGED])
TOPIC_STAFF = event_topic(EVENT_SIGNATURES[EventKind.STAFF_ROLE_GRANTED])
TOPIC_UNKNOWN = event_topic("SomethingElse(uint256)")


def tx(n: int) -> str:
    return "0x" + f"{n:064x}"


def _log(topics, data: bytes, block: int, log_index: int, tx_hash: str) -> RawLog:
    return RawLog(
        address=CONTRACT.lower(),
        topics=tuple(topics),
        data="0x" + data.hex(),
        block_number=block,
        log_index=log_index,
        tx_hash=tx_hash,
    )


def inventory_log(
    block: int,
    log_index: int = 0,
    tx_hash: Optional[str] = None,
    *,
    index: int = 1,
    name: str = "Amoxicillin",
    batch_number: str = "B-001",
    notes: str = "",
    quantity: int = 100,
    expiration_date: int = T0 + 86400 * 365,
    location: str = "Barangay Health Station 1",
    timestamp: int = T0,
) -> RawLog:
    data = encode(
        ["uint256", "string", "string", "string", "uint256", "uint256", "string", "uint256"],
        [index, name, batch_number, notes, quantity, expiration_date, location, timestamp],
    )
    return _log([TOPIC_INVENTORY], data, block, log_index, tx_hash or tx(block * 1000 + log_index))


def history_log(
    block: int,
    log_index: int = 0,
    tx_hash: Optional[str] = None,
    *,
    record_id: int = 1,
    action: str = "UPDATE",
    field_changed: str = "quantity",
    old_value: str = "100",
    new_value: str = "90",
    description: str = "Dispensed 10",
    timestamp: int = T0 + 60,
) -> RawLog:
    data = encode(
        ["uint256", "string", "string", "string", "string", "string", "uint256"],
        [record_id, action, field_changed, old_value, new_value, description, timestamp],
    )
    return _log([TOPIC_HISTORY], data, block, log_index, tx_hash or tx(block * 1000 + log_index))


def staff_log(
    block: int,
    log_index: int = 0,
    tx_hash: Optional[str] = None,
    *,
    staff: str = STAFF,
    admin: str = ADMIN,
    indexed: bool = False,
) -> RawLog:
    tx_hash = tx_hash or tx(block * 1000 + log_index)
    if indexed:
        topics = [
            TOPIC_STAFF,
            "0x" + "00" * 12 + staff[2:].lower(),
            "0x" + "00" * 12 + admin[2:].lower(),
        ]
        return _log(topics, b"", block, log_index, tx_hash)
    data = encode(["address", "address"], [staff, admin])
    return _log([TOPIC_STAFF], data, block, log_index, tx_hash)


def unknown_log(block: int, log_index: int = 0, tx_hash: Optional[str] = None) -> RawLog:
    data = encode(["uint256"], [42])
    return _log([TOPIC_UNKNOWN], data, block, log_index, tx_hash or tx(block * 1000 + log_index))


# ============================================================
# Fake chain
# ============================================================

class FakeChain:
    """
    In-process RpcClient.

    `fail_logs` / `fail_head` hold exceptions raised (and consumed) by the
    next calls; `logs_delay` slows down log queries.
    """

    def __init__(self, head: int = 0, logs=(), max_window: Optional[int] = None):
        self.head = head
        self.chain_logs: list[RawLog] = list(logs)
        self.max_window = max_window
        self.receipts: dict[str, Receipt] = {}
        self.fail_logs: list[BaseException] = []
        self.fail_head: list[BaseException] = []
        self.logs_delay = 0.0
        self.log_queries: list[tuple[int, int]] = []
        self.closed = False

    def add(self, *logs: RawLog) -> None:
        self.chain_logs.extend(logs)

    async def head_block(self) -> int:
        if self.fail_head:
            raise self.fail_head.pop(0)
        return self.head

    async def logs(self, address, topics, from_block, to_block) -> LogBatch:
        if self.logs_delay:
            await asyncio.sleep(self.logs_delay)
        if self.fail_logs:
            raise self.fail_logs.pop(0)
        if self.max_window is not None:
            to_block = min(to_block, from_block + self.max_window - 1)
        self.log_queries.append((from_block, to_block))
        wanted = {t.lower() for t in topics}
        logs = [
            log for log in self.chain_logs
            if from_block <= log.block_number <= to_block
            and log.address == address.lower()
            and (not wanted or log.topic0 in wanted)
        ]
        logs.sort(key=lambda log: (log.block_number, log.log_index))
        return LogBatch(from_block=from_block, to_block=to_block, logs=logs)

    async def tx_receipt(self, tx_hash: str) -> Optional[Receipt]:
        return self.receipts.get(tx_hash)

    async def close(self) -> None:
        self.closed = True


class AllTopicsChain(FakeChain):
    """Returns every log in range regardless of the topic filter."""

    async def logs(self, address, topics, from_block, to_block) -> LogBatch:
        return await super().logs(address, (), from_block, to_block)


# ============================================================
# Stores
# ============================================================

class TrackingStore(InMemoryProjectionStore):
    """In-memory store that records every committed cursor value and close()."""

    def __init__(self, stream: str = CONTRACT):
        super().__init__(stream)
        self.cursor_history: list[int] = []
        self.closed = False

        history = self.cursor_history

        class _Unit(InMemoryBlockUnit):
            async def commit(self):
                await super().commit()
                if self._working.cursor is not None:
                    history.append(self._working.cursor.last_processed_block)

        self.unit_class = _Unit

    async def close(self) -> None:
        self.closed = True


class FailingStore(InMemoryProjectionStore):
    """Raises PersistenceError when claiming the given (tx_hash, log_index) keys."""

    def __init__(self, fail_keys, stream: str = CONTRACT, times: int = 1):
        super().__init__(stream)
        self.fail_keys = set(fail_keys)
        self.remaining = times

        store = self

        class _Unit(InMemoryBlockUnit):
            async def claim(self, record):
                if record.key in store.fail_keys and store.remaining > 0:
                    store.remaining -= 1
                    raise PersistenceError(f"simulated write failure for {record.key}")
                return await super().claim(record)

        self.unit_class = _Unit


async def snapshot(store: InMemoryProjectionStore) -> dict:
    """Persisted state without wall-clock columns."""
    cursor = await store.get_cursor()
    return {
        "cursor": cursor.last_processed_block if cursor else None,
        "records": [
            replace(r, confirmed_at=None) for r in await store.list_tx_records()
        ],
        "inventory": [
            replace(row, last_synced_at=None) for row in await store.list_inventory()
        ],
        "audit": await store.list_audit_entries(),
    }


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll an async predicate until it holds."""
    async def _poll():
        while not await predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout)


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def make_config():
    def _make(**overrides) -> SyncConfig:
        values = dict(
            rpc_url="http://node.test",
            contract_address=CONTRACT,
            poll_interval_ms=10,
            tick_budget_ms=5000,
            backoff_base_ms=1,
            backoff_cap_ms=5,
            restart_delay_ms=10,
            shutdown_grace_ms=1000,
        )
        values.update(overrides)
        return SyncConfig(**values)
    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def store():
    return TrackingStore()


@pytest.fixture
def chain():
    return FakeChain()
