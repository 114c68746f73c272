"""
Service wiring - builds the engine components around one injected store.
The routing layer holds a ConsensusService; tests build one per database.
"""

from datetime import datetime
from typing import Callable, Optional

from .amendments import AmendmentConsensusEngine
from .authority import AuthorityRegistry
from .collaborators import (
    AuditSink,
    ChangeApplier,
    LedgerChangeApplier,
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    SideEffects,
    SQLiteAuditSink,
)
from .config import get_db_path, validate_config
from .invitations import InvitationActivationCoordinator
from .policy import ApprovalPolicyEvaluator
from .schema import utcnow
from .store import SQLiteStore
from ..util.logging import logger


class ConsensusService:
    """Authority, policy, amendment and invitation components sharing one store."""

    def __init__(self, store: SQLiteStore,
                 change_applier: Optional[ChangeApplier] = None,
                 dispatcher: Optional[NotificationDispatcher] = None,
                 audit_sink: Optional[AuditSink] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.change_applier = change_applier or LedgerChangeApplier(store)
        self.dispatcher = dispatcher or LoggingNotificationDispatcher()
        self.audit_sink = audit_sink or SQLiteAuditSink(store)

        side_effects = SideEffects(self.audit_sink, self.dispatcher)
        self.authority = AuthorityRegistry(store, side_effects, clock)
        self.policy = ApprovalPolicyEvaluator(store, self.authority)
        self.amendments = AmendmentConsensusEngine(store, self.policy, self.change_applier, side_effects)
        self.invitations = InvitationActivationCoordinator(store, side_effects)


def build_service(db_path: str = None, **collaborators) -> ConsensusService:
    """Open (and initialize) the store at db_path and wire a service around it."""
    issues = validate_config()
    for issue in issues:
        logger.warning(f"Configuration issue: {issue}")

    store = SQLiteStore(db_path or get_db_path()).init()
    return ConsensusService(store, **collaborators)
