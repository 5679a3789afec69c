"""
Event Decoder

Maps raw logs from the monitored contract into typed DecodedEvents.

DECODING RULES:
1. topic0 selects the event kind (keccak256 of the canonical signature)
2. Logs with an unrecognized topic0 are ignored (forward compatibility)
3. A recognized log whose topics or data do not match the expected
   layout raises DecodeError(tx_hash, log_index, reason)
4. Decoding is pure: no I/O, same input -> same output

Field layouts (ABI order):
    MedicineAddedFull   index, name, batch_number, notes, quantity,
                        expiration_date, location, timestamp
    MedicineHistoryLog  record_id, action, field_changed, old_value,
                        new_value, description, timestamp
    StaffRoleGranted    staff, admin (in data, or as two indexed topics)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import encode_hex, keccak, to_checksum_address
from pydantic import ValidationError

from ..errors import DecodeError
from ..observability import get_logger
from ..schemas import (
    EVENT_SIGNATURES,
    DecodedEvent,
    EventKind,
    HistoryLoggedPayload,
    InventoryAddedPayload,
    RawLog,
    StaffRoleGrantedPayload,
)

logger = get_logger(__name__)


_ABI_TYPES: dict[EventKind, list[str]] = {
    EventKind.INVENTORY_ADDED: [
        "uint256", "string", "string", "string", "uint256", "uint256", "string", "uint256",
    ],
    EventKind.HISTORY_LOGGED: [
        "uint256", "string", "string", "string", "string", "string", "uint256",
    ],
    EventKind.STAFF_ROLE_GRANTED: ["address", "address"],
}


def event_topic(signature: str) -> str:
    """0x-prefixed, lowercase keccak256 of an event signature."""
    return encode_hex(keccak(text=signature)).lower()


TOPICS: dict[str, EventKind] = {
    event_topic(sig): kind for kind, sig in EVENT_SIGNATURES.items()
}


def _hex_to_bytes(value: str) -> bytes:
    h = value[2:] if value[:2].lower() == "0x" else value
    if len(h) % 2:
        h = "0" + h
    return bytes.fromhex(h)


def _unix_to_datetime(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _address_from_topic(topic: str) -> str:
    return to_checksum_address("0x" + topic[-40:])


@dataclass
class DecodeResult:
    """Outcome of decoding one batch of logs."""
    events: list[DecodedEvent] = field(default_factory=list)
    failures: list[DecodeError] = field(default_factory=list)
    ignored: int = 0


class EventDecoder:
    """
    Stateless decoder for the three recognized ledger events.

    Usage:
        decoder = EventDecoder()
        event = decoder.decode(raw_log)       # None if not recognized
        result = decoder.decode_batch(logs)   # sorted events + failures
    """

    topics = TOPICS

    @classmethod
    def topic_filter(cls) -> list[str]:
        """topic0 values to request from the node."""
        return sorted(cls.topics)

    def decode(self, log: RawLog) -> Optional[DecodedEvent]:
        """
        Decode one log.

        Returns:
            The DecodedEvent, or None if topic0 is not a recognized event.

        Raises:
            DecodeError: recognized event with a malformed layout
        """
        topic0 = (log.topic0 or "").lower()
        kind = self.topics.get(topic0)
        if kind is None:
            return None

        try:
            if kind == EventKind.INVENTORY_ADDED:
                payload = self._decode_inventory_added(log)
            elif kind == EventKind.HISTORY_LOGGED:
                payload = self._decode_history_logged(log)
            else:
                payload = self._decode_staff_role_granted(log)
        except DecodeError:
            raise
        except (DecodingError, ValidationError, ValueError, OverflowError, OSError) as e:
            raise DecodeError(log.tx_hash, log.log_index, f"{kind.value}: {e}") from e

        return DecodedEvent(
            kind=kind,
            block_number=log.block_number,
            log_index=log.log_index,
            tx_hash=log.tx_hash,
            payload=payload,
        )

    def decode_batch(self, logs: Iterable[RawLog]) -> DecodeResult:
        """
        Decode many logs, skipping failures.

        Events are returned in ascending (block_number, log_index) order.
        """
        result = DecodeResult()
        for log in logs:
            try:
                event = self.decode(log)
            except DecodeError as e:
                logger.warning(
                    "Skipping undecodable log",
                    tx_hash=e.tx_hash,
                    log_index=e.log_index,
                    reason=e.reason,
                )
                result.failures.append(e)
                continue
            if event is None:
                result.ignored += 1
                logger.debug(
                    "Ignoring unrecognized log",
                    tx_hash=log.tx_hash,
                    log_index=log.log_index,
                    topic0=log.topic0,
                )
                continue
            result.events.append(event)

        result.events.sort(key=lambda e: e.position)
        return result

    # ------------------------------------------------------------------
    # Per-kind layouts
    # ------------------------------------------------------------------

    def _data_only(self, log: RawLog, kind: EventKind) -> tuple:
        if len(log.topics) != 1:
            raise DecodeError(
                log.tx_hash,
                log.log_index,
                f"{kind.value}: expected 1 topic, got {len(log.topics)}",
            )
        return decode(_ABI_TYPES[kind], _hex_to_bytes(log.data))

    def _decode_inventory_added(self, log: RawLog) -> InventoryAddedPayload:
        (index, name, batch_number, notes, quantity,
         expiration_date, location, timestamp) = self._data_only(log, EventKind.INVENTORY_ADDED)
        return InventoryAddedPayload(
            index=index,
            name=name,
            batch_number=batch_number,
            notes=notes,
            quantity=quantity,
            expiration_date=_unix_to_datetime(expiration_date),
            location=location,
            timestamp=_unix_to_datetime(timestamp),
        )

    def _decode_history_logged(self, log: RawLog) -> HistoryLoggedPayload:
        (record_id, action, field_changed, old_value,
         new_value, description, timestamp) = self._data_only(log, EventKind.HISTORY_LOGGED)
        return HistoryLoggedPayload(
            record_id=record_id,
            action=action,
            field_changed=field_changed,
            old_value=old_value,
            new_value=new_value,
            description=description,
            timestamp=_unix_to_datetime(timestamp),
        )

    def _decode_staff_role_granted(self, log: RawLog) -> StaffRoleGrantedPayload:
        if len(log.topics) == 3:
            staff = _address_from_topic(log.topics[1])
            admin = _address_from_topic(log.topics[2])
        elif len(log.topics) == 1:
            staff, admin = decode(
                _ABI_TYPES[EventKind.STAFF_ROLE_GRANTED], _hex_to_bytes(log.data)
            )
        else:
            raise DecodeError(
                log.tx_hash,
                log.log_index,
                f"StaffRoleGranted: expected 1 or 3 topics, got {len(log.topics)}",
            )
        return StaffRoleGrantedPayload(
            staff=to_checksum_address(staff),
            admin=to_checksum_address(admin),
        )
