"""
Projected Records

Rows the synchronizer maintains in the relational store. These are caches
of the event stream: the source of truth is always the chain.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class ChainStatus(str, Enum):
    """On-chain confirmation state of an inventory projection row."""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"


class TxStatus(str, Enum):
    """Status of a ledger transaction record. Only confirmed events are recorded."""
    CONFIRMED = "CONFIRMED"


class ActionType(str, Enum):
    ADD_MEDICINE = "ADD_MEDICINE"
    LOG_HISTORY = "LOG_HISTORY"
    GRANT_STAFF_ROLE = "GRANT_STAFF_ROLE"


class EntityType(str, Enum):
    MEDICINE = "MEDICINE"
    USER = "USER"


AUDIT_TABLE_NAME = "medicine_records"


@dataclass(frozen=True)
class LedgerTxRecord:
    """
    One row per applied event. (tx_hash, log_index) is unique.

    This row doubles as the idempotency key: if it exists, the event has
    been applied.
    """
    tx_hash: str
    log_index: int
    block_number: int
    action_type: ActionType
    entity_type: EntityType
    payload_json: dict[str, Any]
    confirmed_at: datetime
    entity_id: Optional[int] = None
    actor_address: Optional[str] = None
    status: TxStatus = TxStatus.CONFIRMED

    @property
    def key(self) -> tuple[str, int]:
        return (self.tx_hash, self.log_index)


@dataclass(frozen=True)
class InventoryProjection:
    """Projected inventory item keyed by its chain-assigned index."""
    index: int
    name: str
    batch_number: str
    notes: str
    quantity: int
    expiration_date: datetime
    location: str
    chain_timestamp: datetime
    chain_tx_hash: Optional[str]
    last_synced_at: Optional[datetime]
    chain_status: ChainStatus = ChainStatus.PENDING


@dataclass(frozen=True)
class AuditEntry:
    """Append-only audit row produced by a history event."""
    table_name: str
    record_id: int
    action: str
    old_value: dict[str, Any]
    new_value: dict[str, Any]
    description: str
    changed_at: datetime
    tx_hash: str
    log_index: int


@dataclass(frozen=True)
class StaffGrant:
    """Convenience view over a GRANT_STAFF_ROLE ledger record."""
    staff_address: str
    admin_address: str
    tx_hash: str
    log_index: int
    block_number: int

    @classmethod
    def from_record(cls, record: LedgerTxRecord) -> "StaffGrant":
        return cls(
            staff_address=record.payload_json["staff"],
            admin_address=record.payload_json["admin"],
            tx_hash=record.tx_hash,
            log_index=record.log_index,
            block_number=record.block_number,
        )


@dataclass
class CursorState:
    """
    The processed-block cursor.

    last_processed_block is the highest block whose events have all been
    durably applied. It never decreases.

    window_from / window_to are the bounds of the window being worked on,
    or None when no window is in progress.
    """
    stream: str
    last_processed_block: int
    started_at: datetime
    updated_at: Optional[datetime] = None
    window_from: Optional[int] = None
    window_to: Optional[int] = None

    @property
    def in_progress(self) -> bool:
        return self.window_to is not None
