"""
External collaborators of the consensus engine: change application,
notification delivery and the audit trail.

The engine only depends on the abstract interfaces. The default
implementations here log, or write to the same SQLite store.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

from .config import is_audit_enabled, are_notifications_enabled
from .schema import AuditEvent, utcnow
from .store import SQLiteStore
from ..util.logging import logger


class NotificationEvent(str, Enum):
    DELEGATION_GRANTED = "DelegationGranted"
    DELEGATION_REVOKED = "DelegationRevoked"
    AMENDMENT_PROPOSED = "AmendmentProposed"
    AMENDMENT_RESPONDED = "AmendmentResponded"
    AMENDMENT_APPLIED = "AmendmentApplied"
    AMENDMENT_DISPUTED = "AmendmentDisputed"
    AMENDMENT_RESOLVED = "AmendmentResolved"
    INVITATION_ACCEPTED = "InvitationAccepted"
    INVITATION_DECLINED = "InvitationDeclined"
    DEAL_ACTIVATED = "DealActivated"


class ChangeApplier(ABC):
    """Applies an agreed changeset to a deal. Called exactly once per applied amendment."""

    @abstractmethod
    def apply(self, deal_id: str, changeset: Any) -> None:
        pass


class NotificationDispatcher(ABC):
    """Owns formatting and delivery of every logical event."""

    @abstractmethod
    def dispatch(self, event: NotificationEvent, payload: Dict[str, Any]) -> None:
        pass


class AuditSink(ABC):
    """Receives {actor, action, entity, timestamp} strictly after a successful commit."""

    @abstractmethod
    def record(self, event: AuditEvent) -> None:
        pass


class LedgerChangeApplier(ChangeApplier):
    """Appends every applied changeset to the applied_changes table."""

    def __init__(self, store: SQLiteStore):
        self.store = store

    def apply(self, deal_id: str, changeset: Any) -> None:
        self.store.insert_applied_change(deal_id, changeset.kind, changeset.model_dump_json())
        logger.log_operation("change.applied", "success", {"deal_id": deal_id, "kind": changeset.kind})


class LoggingNotificationDispatcher(NotificationDispatcher):
    def dispatch(self, event: NotificationEvent, payload: Dict[str, Any]) -> None:
        logger.log_operation(f"notification.{event.value}", "dispatched", payload)


class SQLiteAuditSink(AuditSink):
    """Persists audit events next to the engine's own tables."""

    def __init__(self, store: SQLiteStore):
        self.store = store

    def record(self, event: AuditEvent) -> None:
        self.store.insert_audit_event(event)
        logger.log_operation(f"audit.{event.action}", "recorded", {
            "actor": event.actor,
            "entity_type": event.entity_type,
            "entity_id": event.entity_id,
        })

    def list_events(self, entity_id: str = None) -> List[AuditEvent]:
        return self.store.list_audit_events(entity_id)


class SideEffects:
    """Post-commit fan-out to the audit sink and notification dispatcher.

    Both calls run after the state change is durable. A failing sink is
    logged and never rolls back or fails the committed operation.
    """

    def __init__(self, audit_sink: Optional[AuditSink], dispatcher: Optional[NotificationDispatcher]):
        self.audit_sink = audit_sink
        self.dispatcher = dispatcher

    def audit(self, actor: str, action: str, entity_type: str, entity_id: str, **metadata):
        if self.audit_sink is None or not is_audit_enabled():
            return
        event = AuditEvent(
            actor=actor or "SYSTEM",
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            timestamp=utcnow(),
            metadata=metadata,
        )
        try:
            self.audit_sink.record(event)
        except Exception as e:
            logger.error(f"Failed to record audit event {action} for {entity_type} {entity_id}: {e}")

    def notify(self, event: NotificationEvent, **payload):
        if self.dispatcher is None or not are_notifications_enabled():
            return
        try:
            self.dispatcher.dispatch(event, payload)
        except Exception as e:
            logger.error(f"Failed to dispatch {event.value}: {e}")
