"""
Ledger Event Schema

The monitored contract is an append-only medicine-inventory ledger.
Nothing on chain is edited. Things happen, and each happening is a log.

The synchronizer recognizes exactly three event kinds. Every decoded event:
- Is identified by (tx_hash, log_index)
- Carries a kind-specific, validated payload
- Is applied to the relational projections at most once
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class EventKind(str, Enum):
    """
    Recognized on-chain event kinds.
    You can add more later, never remove.
    """
    INVENTORY_ADDED = "InventoryAdded"
    HISTORY_LOGGED = "HistoryLogged"
    STAFF_ROLE_GRANTED = "StaffRoleGranted"


# Canonical on-chain signatures. The topic0 of each log is keccak256 of these.
EVENT_SIGNATURES: dict[EventKind, str] = {
    EventKind.INVENTORY_ADDED: (
        "MedicineAddedFull(uint256,string,string,string,uint256,uint256,string,uint256)"
    ),
    EventKind.HISTORY_LOGGED: (
        "MedicineHistoryLog(uint256,string,string,string,string,string,uint256)"
    ),
    EventKind.STAFF_ROLE_GRANTED: "StaffRoleGranted(address,address)",
}


# ============================================================
# Raw logs (as delivered by the RPC adapter)
# ============================================================

@dataclass(frozen=True)
class RawLog:
    """A log exactly as the node returned it, with numeric fields parsed."""
    address: str
    topics: tuple[str, ...]
    data: str
    block_number: int
    log_index: int
    tx_hash: str
    block_hash: Optional[str] = None

    @property
    def key(self) -> tuple[str, int]:
        return (self.tx_hash, self.log_index)

    @property
    def topic0(self) -> Optional[str]:
        return self.topics[0] if self.topics else None


@dataclass(frozen=True)
class LogBatch:
    """
    Result of a ranged log query.

    `to_block` is the effective upper bound actually covered, which may be
    narrower than requested when the adapter capped the range.
    """
    from_block: int
    to_block: int
    logs: list[RawLog] = field(default_factory=list)


@dataclass(frozen=True)
class Receipt:
    """Minimal transaction receipt used for verification."""
    tx_hash: str
    block_number: int
    block_hash: Optional[str]
    status: int
    log_count: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == 1


# ============================================================
# Event Payloads
# ============================================================

class InventoryAddedPayload(BaseModel):
    """
    Payload for MedicineAddedFull.

    `index` is the chain-assigned ordinal of the inventory item; it is the
    primary key of the inventory projection.
    """
    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0, lt=2**64)
    name: str
    batch_number: str
    notes: str
    quantity: int = Field(..., ge=0, lt=2**64)
    expiration_date: datetime
    location: str
    timestamp: datetime


class HistoryLoggedPayload(BaseModel):
    """Payload for MedicineHistoryLog. Becomes one audit entry."""
    model_config = ConfigDict(frozen=True)

    record_id: int = Field(..., ge=0, lt=2**64)
    action: str
    field_changed: str
    old_value: str
    new_value: str
    description: str
    timestamp: datetime


class StaffRoleGrantedPayload(BaseModel):
    """Payload for StaffRoleGranted. Addresses are EIP-55 checksummed."""
    model_config = ConfigDict(frozen=True)

    staff: str = Field(..., min_length=42, max_length=42)
    admin: str = Field(..., min_length=42, max_length=42)


EventPayload = Union[InventoryAddedPayload, HistoryLoggedPayload, StaffRoleGrantedPayload]


class DecodedEvent(BaseModel):
    """
    A typed, validated ledger event. In-memory only.

    Ordering key is (block_number, log_index); identity key is
    (tx_hash, log_index).
    """
    model_config = ConfigDict(frozen=True)

    kind: EventKind
    block_number: int = Field(..., ge=0)
    log_index: int = Field(..., ge=0)
    tx_hash: str
    payload: EventPayload

    @property
    def key(self) -> tuple[str, int]:
        return (self.tx_hash, self.log_index)

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    def payload_json(self) -> dict:
        """JSON-safe payload for the opaque payload column."""
        return self.payload.model_dump(mode="json")
