"""Append-only compliance audit log.

Every yellow or red compliance verdict, every session open/close and every
request for human intervention is recorded here. Audit writes are
best-effort: a failing store is logged locally and never aborts an attempt.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from signup_pilot.utils.logging import get_logger

logger = get_logger("audit")


class AuditEventType:
    """Audit event type names."""

    COMPLIANCE_RED = "COMPLIANCE_RED"
    COMPLIANCE_YELLOW = "COMPLIANCE_YELLOW"
    COMPLIANCE_REVIEW_REQUIRED = "COMPLIANCE_REVIEW_REQUIRED"
    SESSION_OPENED = "SESSION_OPENED"
    SESSION_CLOSED = "SESSION_CLOSED"
    NAVIGATION_NEEDS_REVIEW = "NAVIGATION_NEEDS_REVIEW"
    STAGE_FAILED = "STAGE_FAILED"
    HUMAN_INTERVENTION_REQUESTED = "HUMAN_INTERVENTION_REQUESTED"


@dataclass(frozen=True)
class AuditEvent:
    """A single audit record."""

    event_type: str
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


class AuditLog(ABC):
    """Base class for audit stores."""

    async def record(self, event_type: str, payload: dict[str, Any]) -> None:
        """
        Record an event without ever raising.

        Args:
            event_type: One of the AuditEventType names
            payload: JSON-serializable event data
        """
        event = AuditEvent(event_type=event_type, payload=payload)
        try:
            await self._write(event)
        except Exception as e:
            logger.warning(
                "audit_write_failed",
                event_type=event_type,
                error=str(e),
            )

    @abstractmethod
    async def _write(self, event: AuditEvent) -> None:
        """Persist one event. May raise; record() absorbs failures."""
        pass


class JsonlAuditLog(AuditLog):
    """Appends one JSON object per line to a file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    async def _write(self, event: AuditEvent) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict(), default=str) + "\n")

    def read_events(self) -> list[dict[str, Any]]:
        """Load every recorded event, skipping unreadable lines."""
        if not self.path.exists():
            return []

        events = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError as e:
                logger.warning("audit_line_unreadable", path=str(self.path), error=str(e))
        return events


class MemoryAuditLog(AuditLog):
    """Keeps events in memory."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def _write(self, event: AuditEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]
