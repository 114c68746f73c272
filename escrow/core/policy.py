"""
Approval policy evaluation - decides whether an actor may approve an action.

Evaluation order: unknown actor, super admin, senior escrow officer, then
the governing delegation with its amount limit and senior-review flag.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from .authority import AuthorityRegistry
from .errors import PermissionDenied, ValidationFailed, engine_operation
from .schema import ApprovalActionType, Role
from .store import SQLiteStore
from ..api.schemas import ApprovalCheckResponse
from ..util.logging import logger

Amount = Union[int, str, Decimal, float]


@dataclass
class ApprovalDecision:
    allowed: bool
    reason: Optional[str] = None
    requires_senior_review: Optional[bool] = None
    delegation_id: Optional[str] = None

    def to_response(self) -> ApprovalCheckResponse:
        return ApprovalCheckResponse(
            allowed=self.allowed,
            reason=self.reason,
            requires_senior_review=self.requires_senior_review,
        )


def _coerce_action_type(action_type) -> ApprovalActionType:
    try:
        return ApprovalActionType(action_type)
    except ValueError:
        raise ValidationFailed(f"Unknown approval action type: {action_type}")


def _coerce_amount(amount: Optional[Amount]) -> Optional[Decimal]:
    if amount is None:
        return None
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise ValidationFailed(f"Invalid amount: {amount}")
    if not value.is_finite() or value < 0:
        raise ValidationFailed(f"Invalid amount: {amount}")
    return value


class ApprovalPolicyEvaluator:
    """Resolves "can actor X approve action Y (amount Z)?"."""

    def __init__(self, store: SQLiteStore, registry: AuthorityRegistry):
        self.store = store
        self.registry = registry

    @engine_operation("policy.can_approve")
    def can_approve(self, actor_id: str, action_type: ApprovalActionType,
                    amount: Optional[Amount] = None) -> ApprovalDecision:
        action_type = _coerce_action_type(action_type)
        amount = _coerce_amount(amount)

        decision = self._evaluate(actor_id, action_type, amount)
        logger.log_approval_check(actor_id, action_type.value, decision.allowed, decision.reason)
        return decision

    def require_approval(self, actor_id: str, action_type: ApprovalActionType,
                         amount: Optional[Amount] = None) -> ApprovalDecision:
        """Like can_approve, but a denial raises PermissionDenied with the reason."""
        decision = self.can_approve(actor_id, action_type, amount)
        if not decision.allowed:
            raise PermissionDenied(decision.reason, {"actor_id": actor_id, "action_type": str(action_type)})
        return decision

    def _evaluate(self, actor_id: str, action_type: ApprovalActionType,
                  amount: Optional[Decimal]) -> ApprovalDecision:
        actor = self.store.get_actor(actor_id)
        if actor is None:
            return ApprovalDecision(allowed=False, reason="User not found")

        if actor.role in (Role.SUPER_ADMIN, Role.SENIOR_ESCROW_OFFICER):
            return ApprovalDecision(allowed=True, requires_senior_review=False)

        delegation = self.registry.governing_delegation(actor_id, action_type)
        if delegation is None:
            return ApprovalDecision(
                allowed=False,
                reason=f"No active delegation found for {action_type.value}"
            )

        if amount is not None and delegation.max_amount is not None and amount > delegation.max_amount:
            return ApprovalDecision(
                allowed=False,
                reason=f"Amount {amount} exceeds authorized limit {delegation.max_amount}",
                delegation_id=delegation.id,
            )

        return ApprovalDecision(
            allowed=True,
            requires_senior_review=delegation.requires_senior_review,
            delegation_id=delegation.id,
        )
