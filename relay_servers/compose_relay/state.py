"""In-flight share records, one per destination tab.

Records are never expired implicitly: a share stays until the orchestrator
removes it (teardown, destination closed) or a caller runs ``clear_all``.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from .errors import DuplicateShareError
from .payload import PayloadDescriptor

_LOGGER = logging.getLogger("relay.compose.state")


class SharePhase(str, Enum):
    CREATED = "created"
    PRODUCING_LAUNCHED = "producing-launched"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    FALLBACK_SHOWN = "fallback-shown"
    CLOSED = "closed"

    @property
    def terminal(self) -> bool:
        return self in {SharePhase.DELIVERED, SharePhase.FALLBACK_SHOWN, SharePhase.CLOSED}


@dataclass
class ShareRecord:
    destination_context_id: str
    payload_descriptor: PayloadDescriptor
    source_context_id: str | None = None
    created_at: float = field(default_factory=time.time)
    sent_at: float | None = None
    sent: bool = False
    phase: SharePhase = SharePhase.CREATED
    strategy: str | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "destinationContextId": self.destination_context_id,
            "sourceContextId": self.source_context_id,
            "targetUrl": self.payload_descriptor.target_url,
            "hasPayload": self.payload_descriptor.payload_ref is not None,
            "createdAt": self.created_at,
            "sentAt": self.sent_at,
            "sent": self.sent,
            "phase": self.phase.value,
            "strategy": self.strategy,
            "lastError": self.last_error,
        }


class ShareStateStore:
    def __init__(self) -> None:
        self._records: dict[str, ShareRecord] = {}
        self._lock = threading.RLock()
        self._completed = threading.Condition(self._lock)

    def create(
        self,
        destination_id: str,
        descriptor: PayloadDescriptor,
        *,
        source_context_id: str | None = None,
    ) -> ShareRecord:
        with self._lock:
            existing = self._records.get(destination_id)
            if existing is not None and not existing.sent:
                raise DuplicateShareError(destination_id)
            record = ShareRecord(
                destination_context_id=destination_id,
                payload_descriptor=descriptor,
                source_context_id=source_context_id,
            )
            self._records[destination_id] = record
            _LOGGER.debug("share record created for %s", destination_id)
            return record

    def get(self, destination_id: str) -> ShareRecord | None:
        with self._lock:
            return self._records.get(destination_id)

    def update(self, destination_id: str, **changes: Any) -> ShareRecord | None:
        """Apply field changes; returns None for unknown ids. ``sent`` cannot be cleared."""
        with self._lock:
            record = self._records.get(destination_id)
            if record is None:
                return None
            if record.sent and changes.get("sent") is False:
                changes.pop("sent")
            updated = replace(record, **changes)
            self._records[destination_id] = updated
            self._completed.notify_all()
            return updated

    def set_phase(self, destination_id: str, phase: SharePhase) -> ShareRecord | None:
        return self.update(destination_id, phase=phase)

    def mark_sent(self, destination_id: str, *, phase: SharePhase | None = None, strategy: str | None = None) -> bool:
        """Flip ``sent`` once. Returns False if already sent or unknown."""
        with self._lock:
            record = self._records.get(destination_id)
            if record is None or record.sent:
                return False
            record.sent = True
            record.sent_at = time.time()
            if phase is not None:
                record.phase = phase
            if strategy is not None:
                record.strategy = strategy
            self._completed.notify_all()
            return True

    def remove(self, destination_id: str) -> ShareRecord | None:
        with self._lock:
            record = self._records.pop(destination_id, None)
            self._completed.notify_all()
            return record

    def clear_all(self) -> int:
        with self._lock:
            count = len(self._records)
            self._records.clear()
            self._completed.notify_all()
        if count:
            _LOGGER.info("cleared %s share record(s)", count)
        return count

    def find_by_source(self, source_context_id: str) -> ShareRecord | None:
        if not source_context_id:
            return None
        with self._lock:
            for record in self._records.values():
                if record.source_context_id == source_context_id:
                    return record
        return None

    def records(self) -> list[ShareRecord]:
        with self._lock:
            return list(self._records.values())

    def wait_until(self, destination_id: str, predicate: Any, timeout: float) -> ShareRecord | None:
        """Block until ``predicate(record)`` holds (or the record disappears) within ``timeout``."""
        deadline = time.monotonic() + max(0.0, float(timeout))
        with self._completed:
            while True:
                record = self._records.get(destination_id)
                if record is None or predicate(record):
                    return record
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return record
                self._completed.wait(remaining)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            records = list(self._records.values())
        phases: dict[str, int] = {}
        for r in records:
            phases[r.phase.value] = phases.get(r.phase.value, 0) + 1
        return {
            "total": len(records),
            "pending": sum(1 for r in records if not r.sent),
            "sent": sum(1 for r in records if r.sent),
            "phases": phases,
        }


__all__ = ["SharePhase", "ShareRecord", "ShareStateStore"]
