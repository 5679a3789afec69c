"""
Schemas for the MedSync ledger synchronizer.

Two families:
- events: what the chain emits (raw logs, decoded events, payloads)
- records: what the synchronizer projects into the relational store
"""

from .events import (
    EVENT_SIGNATURES,
    DecodedEvent,
    EventKind,
    EventPayload,
    HistoryLoggedPayload,
    InventoryAddedPayload,
    LogBatch,
    RawLog,
    Receipt,
    StaffRoleGrantedPayload,
)
from .records import (
    AUDIT_TABLE_NAME,
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

__all__ = [
    # Events
    "EVENT_SIGNATURES",
    "DecodedEvent",
    "EventKind",
    "EventPayload",
    "HistoryLoggedPayload",
    "InventoryAddedPayload",
    "LogBatch",
    "RawLog",
    "Receipt",
    "StaffRoleGrantedPayload",
    # Records
    "AUDIT_TABLE_NAME",
    "ActionType",
    "AuditEntry",
    "ChainStatus",
    "CursorState",
    "EntityType",
    "InventoryProjection",
    "LedgerTxRecord",
    "StaffGrant",
    "TxStatus",
]
