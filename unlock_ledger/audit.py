import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

from .codes import mask_code
from .models import Actor

logger = logging.getLogger(__name__)


class AuditEventKind(str, Enum):
    OFFLINE_SALE_CREATED = "offline_sale_created"
    CODE_REDEEMED = "code_redeemed"


class AuditEvent(BaseModel):
    kind: AuditEventKind
    actor: Actor
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AuditSink(Protocol):
    def record(self, event_kind: AuditEventKind, actor: Actor, details: dict[str, Any]) -> None: ...


class InMemoryAuditSink:
    def __init__(self):
        self.events: list[AuditEvent] = []
        self._lock = threading.Lock()

    def record(self, event_kind: AuditEventKind, actor: Actor, details: dict[str, Any]) -> None:
        with self._lock:
            self.events.append(AuditEvent(kind=event_kind, actor=actor, details=details))

    def of_kind(self, event_kind: AuditEventKind) -> list[AuditEvent]:
        return [e for e in self.events if e.kind == event_kind]


class LoggingAuditSink:
    def __init__(self, logger_name: str = "unlock_ledger.audit"):
        self.logger = logging.getLogger(logger_name)

    def record(self, event_kind: AuditEventKind, actor: Actor, details: dict[str, Any]) -> None:
        if details.get("unlock_code"):
            details = {**details, "unlock_code": mask_code(details["unlock_code"])}
        self.logger.info(
            "audit kind=%s actor=%s role=%s details=%s",
            event_kind.value, actor.id, actor.role, details,
        )


class AuditDispatcher:
    """Fans post-commit events out to sinks.

    Called only after the primary write has committed. A failing sink is
    logged and skipped; it never reaches the caller.
    """

    def __init__(self, sinks: Optional[list[AuditSink]] = None):
        self.sinks: list[AuditSink] = list(sinks or [])

    def add_sink(self, sink: AuditSink) -> None:
        self.sinks.append(sink)

    def emit(self, event_kind: AuditEventKind, actor: Actor, details: dict[str, Any]) -> None:
        for sink in self.sinks:
            try:
                sink.record(event_kind, actor, details)
            except Exception:
                logger.exception("Audit sink %s failed for %s", type(sink).__name__, event_kind.value)
