"""
Amendment consensus engine - proposal lifecycle, N-party consensus and dispute escalation.

PENDING -> DISPUTED | APPLIED | REJECTED. APPLIED and REJECTED are terminal;
DISPUTED waits for an admin resolution. The consensus decision is computed
from the response set read inside the same transaction that recorded the
latest response, and the PENDING -> APPLIED write is a compare-and-swap, so
exactly one caller wins and invokes the ChangeApplier.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from .collaborators import ChangeApplier, NotificationEvent, SideEffects
from .errors import Conflict, ImmutableStateError, NotFound, PermissionDenied, ValidationFailed, engine_operation
from .policy import ApprovalPolicyEvaluator
from .schema import (
    AdminResolution,
    Amendment,
    AmendmentResponse,
    AmendmentStatus,
    ApprovalActionType,
    ProposedChanges,
    ResolutionType,
    ResponseType,
    utcnow,
)
from .store import SQLiteStore, new_id
from ..api.schemas import AdminResolveRequest, ProposedChangesRequest, RespondRequest
from ..util.logging import logger


@dataclass
class RespondResult:
    amendment: Amendment
    response: AmendmentResponse
    already_responded: bool = False
    change_applied: bool = False


@dataclass
class ResolveResult:
    amendment: Amendment
    change_applied: bool = False


def _immutable(amendment: Amendment) -> ImmutableStateError:
    return ImmutableStateError(
        f"Amendment is {amendment.status.value} and can no longer change",
        {"amendment_id": amendment.id, "status": amendment.status.value}
    )


class AmendmentConsensusEngine:

    def __init__(self, store: SQLiteStore, evaluator: ApprovalPolicyEvaluator,
                 change_applier: ChangeApplier, side_effects: SideEffects):
        self.store = store
        self.evaluator = evaluator
        self.change_applier = change_applier
        self.side_effects = side_effects

    @engine_operation("amendment.propose")
    def propose(self, deal_id: str, proposer_id: str,
                proposed_changes: Union[ProposedChangesRequest, Dict[str, Any]],
                supersedes: Optional[str] = None) -> Amendment:
        """Create a PENDING amendment.

        supersedes may name a DISPUTED amendment of the same deal; the new
        proposal is the renegotiated follow-up and the old record is left
        as it is.
        """
        if not isinstance(proposed_changes, ProposedChangesRequest):
            proposed_changes = ProposedChangesRequest.model_validate(proposed_changes)

        now = utcnow()
        with self.store.transaction() as conn:
            deal = self.store.get_deal(deal_id, conn)
            if deal is None:
                raise NotFound("Deal not found")
            if proposer_id not in {p.id for p in deal.current_parties()}:
                raise PermissionDenied("Only parties of the deal can propose amendments",
                                       {"deal_id": deal_id, "party_id": proposer_id})

            if supersedes is not None:
                prior = self.store.get_amendment(supersedes, conn)
                if prior is None:
                    raise NotFound("Superseded amendment not found")
                if prior.deal_id != deal_id:
                    raise ValidationFailed("Superseded amendment belongs to a different deal")
                if prior.status != AmendmentStatus.DISPUTED:
                    raise Conflict("Only a disputed amendment can be superseded",
                                   {"amendment_id": supersedes, "status": prior.status.value})

            amendment = Amendment(
                id=new_id(),
                deal_id=deal_id,
                proposer_id=proposer_id,
                status=AmendmentStatus.PENDING,
                proposed_changes=ProposedChanges(
                    amendment_type=proposed_changes.amendment_type,
                    description=proposed_changes.description,
                    reason=proposed_changes.reason,
                    changeset=proposed_changes.changeset,
                ),
                supersedes_id=supersedes,
                created_at=now,
                updated_at=now,
            )
            self.store.insert_amendment(amendment, conn)

        amendment_type = amendment.proposed_changes.amendment_type.value
        logger.log_operation("amendment.proposed", "success", {
            "amendment_id": amendment.id, "deal_id": deal_id, "amendment_type": amendment_type
        })
        self.side_effects.audit(proposer_id, "AMENDMENT_PROPOSED", "Amendment", amendment.id,
                                deal_id=deal_id, amendment_type=amendment_type, supersedes=supersedes)
        self.side_effects.notify(NotificationEvent.AMENDMENT_PROPOSED, amendment_id=amendment.id,
                                 deal_id=deal_id, proposer_id=proposer_id, amendment_type=amendment_type)
        return amendment

    @engine_operation("amendment.respond")
    def respond(self, amendment_id: str, party_id: str, response_type: ResponseType,
                notes: Optional[str] = None) -> RespondResult:
        request = RespondRequest(response_type=response_type, notes=notes)
        response_type, notes = request.response_type, request.notes

        with self.store.transaction() as conn:
            amendment = self.store.get_amendment(amendment_id, conn)
            if amendment is None:
                raise NotFound("Amendment not found")
            if amendment.is_terminal:
                raise _immutable(amendment)
            if amendment.status != AmendmentStatus.PENDING:
                raise Conflict(f"Amendment is {amendment.status.value}; responses are only accepted while PENDING",
                               {"amendment_id": amendment_id, "status": amendment.status.value})

            deal = self.store.get_deal(amendment.deal_id, conn)
            current_parties = deal.current_parties()
            if party_id not in {p.id for p in current_parties}:
                raise PermissionDenied("Party is not a current party of this deal",
                                       {"deal_id": amendment.deal_id, "party_id": party_id})

            existing = amendment.response_for(party_id)
            if existing is not None:
                return RespondResult(amendment=amendment, response=existing, already_responded=True)

            response = AmendmentResponse(
                party_id=party_id,
                response_type=response_type,
                notes=notes,
                responded_at=utcnow(),
            )
            self.store.insert_response(amendment_id, response, conn)

            # Decide on the response set as it stands after this write
            recorded = self.store.get_amendment(amendment_id, conn)
            approved_by = {r.party_id for r in recorded.responses if r.response_type == ResponseType.APPROVE}
            new_status = AmendmentStatus.PENDING
            if recorded.has_dispute():
                new_status = AmendmentStatus.DISPUTED
            elif all(p.id in approved_by for p in current_parties):
                new_status = AmendmentStatus.APPLIED

            transitioned = False
            if new_status != AmendmentStatus.PENDING:
                transitioned = self.store.compare_and_set_amendment_status(
                    amendment_id, AmendmentStatus.PENDING, new_status, conn
                )
            final = self.store.get_amendment(amendment_id, conn)

        self.side_effects.audit(party_id, "AMENDMENT_RESPONDED", "Amendment", amendment_id,
                                deal_id=final.deal_id, response_type=response_type.value)
        self.side_effects.notify(NotificationEvent.AMENDMENT_RESPONDED, amendment_id=amendment_id,
                                 deal_id=final.deal_id, party_id=party_id, response_type=response_type.value)

        change_applied = False
        if transitioned:
            logger.log_amendment_transition(amendment_id, AmendmentStatus.PENDING.value, new_status.value, party_id)
            if new_status == AmendmentStatus.DISPUTED:
                self.side_effects.audit(party_id, "AMENDMENT_DISPUTED", "Amendment", amendment_id,
                                        deal_id=final.deal_id)
                self.side_effects.notify(NotificationEvent.AMENDMENT_DISPUTED, amendment_id=amendment_id,
                                         deal_id=final.deal_id, disputed_by=party_id, notes=notes)
            else:
                change_applied = self._apply(final, party_id)

        return RespondResult(amendment=final, response=response, change_applied=change_applied)

    @engine_operation("amendment.admin_resolve")
    def admin_resolve(self, amendment_id: str, admin_id: str, resolution_type: ResolutionType,
                      notes: str = "") -> ResolveResult:
        request = AdminResolveRequest(resolution_type=resolution_type, notes=notes or "")
        resolution_type, notes = request.resolution_type, request.notes

        decision = self.evaluator.require_approval(admin_id, ApprovalActionType.DISPUTE_RESOLUTION)

        with self.store.transaction() as conn:
            amendment = self.store.get_amendment(amendment_id, conn)
            if amendment is None:
                raise NotFound("Amendment not found")
            if amendment.is_terminal:
                raise _immutable(amendment)
            if amendment.status != AmendmentStatus.DISPUTED:
                raise Conflict("Only a disputed amendment can be resolved by an admin",
                               {"amendment_id": amendment_id, "status": amendment.status.value})

            target = {
                ResolutionType.APPROVE_OVERRIDE: AmendmentStatus.APPLIED,
                ResolutionType.REJECT: AmendmentStatus.REJECTED,
                ResolutionType.REQUEST_COMPROMISE: AmendmentStatus.DISPUTED,
            }[resolution_type]

            transitioned = False
            if target != AmendmentStatus.DISPUTED:
                transitioned = self.store.compare_and_set_amendment_status(
                    amendment_id, AmendmentStatus.DISPUTED, target, conn
                )
            self.store.set_admin_resolution(amendment_id, AdminResolution(
                type=resolution_type,
                notes=notes or "",
                resolved_by=admin_id,
                resolved_at=utcnow(),
            ), conn)
            final = self.store.get_amendment(amendment_id, conn)

        if transitioned:
            logger.log_amendment_transition(amendment_id, AmendmentStatus.DISPUTED.value, target.value, admin_id)
        self.side_effects.audit(admin_id, "AMENDMENT_RESOLVED", "Amendment", amendment_id,
                                deal_id=final.deal_id, resolution_type=resolution_type.value,
                                requires_senior_review=decision.requires_senior_review)
        self.side_effects.notify(NotificationEvent.AMENDMENT_RESOLVED, amendment_id=amendment_id,
                                 deal_id=final.deal_id, resolution_type=resolution_type.value,
                                 resolved_by=admin_id, notes=notes)

        change_applied = False
        if transitioned and target == AmendmentStatus.APPLIED:
            change_applied = self._apply(final, admin_id)
        return ResolveResult(amendment=final, change_applied=change_applied)

    @engine_operation("amendment.get")
    def get_amendment(self, amendment_id: str) -> Amendment:
        amendment = self.store.get_amendment(amendment_id)
        if amendment is None:
            raise NotFound("Amendment not found")
        return amendment

    @engine_operation("amendment.list")
    def list_amendments(self, deal_id: str, status: Optional[AmendmentStatus] = None) -> List[Amendment]:
        if self.store.get_deal(deal_id) is None:
            raise NotFound("Deal not found")
        return self.store.list_amendments(deal_id, status)

    def _apply(self, amendment: Amendment, actor_id: str) -> bool:
        """Hand the changeset to the ChangeApplier. Only the CAS winner gets here.

        The APPLIED status is already committed. A failing applier is a data
        consistency incident: it is logged and audited, not retried.
        """
        changeset = amendment.proposed_changes.changeset
        try:
            self.change_applier.apply(amendment.deal_id, changeset)
        except Exception as e:
            logger.log_internal_failure("amendment.apply", e, {
                "amendment_id": amendment.id, "deal_id": amendment.deal_id, "kind": changeset.kind
            })
            self.side_effects.audit(actor_id, "AMENDMENT_APPLY_FAILED", "Amendment", amendment.id,
                                    deal_id=amendment.deal_id)
            return False

        self.side_effects.audit(actor_id, "AMENDMENT_APPLIED", "Amendment", amendment.id,
                                deal_id=amendment.deal_id, kind=changeset.kind)
        self.side_effects.notify(NotificationEvent.AMENDMENT_APPLIED, amendment_id=amendment.id,
                                 deal_id=amendment.deal_id, kind=changeset.kind)
        return True
