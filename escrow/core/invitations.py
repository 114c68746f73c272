"""
Invitation acceptance and deal activation.

Accepting is idempotent. The recount of not-yet-accepted parties and the
deal status write happen in the same transaction as the acceptance, and the
status write is a compare-and-swap from CREATED/INVITED to ACTIVE, so a deal
activates at most once however the final acceptances interleave.
"""

import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .collaborators import NotificationEvent, SideEffects
from .errors import Conflict, NotFound, engine_operation
from .schema import ACTIVATABLE_DEAL_STATUSES, DealStatus, InvitationStatus, utcnow
from .store import SQLiteStore
from ..api.schemas import DeclineRequest
from ..util.logging import logger

INVITATION_NOT_FOUND = "Invitation not found"


@dataclass
class InvitationResult:
    success: bool
    party_id: str
    deal_id: str
    deal_status: DealStatus
    already_accepted: bool = False
    all_parties_accepted: bool = False
    deal_activated: bool = False


@dataclass
class DeclineResult:
    success: bool
    party_id: str
    deal_id: str
    already_declined: bool = False


@dataclass
class DealActivationResult:
    activated: bool
    status: DealStatus
    reason: str
    next_step: Optional[str] = None


def _require_token(token: Any) -> str:
    if not isinstance(token, str) or not token:
        raise NotFound(INVITATION_NOT_FOUND)
    return token


class InvitationActivationCoordinator:

    def __init__(self, store: SQLiteStore, side_effects: SideEffects):
        self.store = store
        self.side_effects = side_effects

    @engine_operation("invitation.get")
    def get_invitation(self, token: str) -> Dict[str, Any]:
        """Party and deal overview for an invitation link."""
        party = self.store.get_party_by_token(_require_token(token))
        if party is None:
            raise NotFound(INVITATION_NOT_FOUND)
        deal = self.store.get_deal(party.deal_id)
        return {
            "party": {
                "id": party.id,
                "name": party.name,
                "role": party.role,
                "invitation_status": party.invitation_status.value,
                "responded_at": party.responded_at,
            },
            "deal": {
                "id": deal.id,
                "title": deal.title,
                "status": deal.status.value,
                "parties": [
                    {"id": p.id, "name": p.name, "role": p.role, "invitation_status": p.invitation_status.value}
                    for p in deal.parties
                ],
            },
        }

    @engine_operation("invitation.accept")
    def accept_invitation(self, token: str, actor_id: Optional[str] = None) -> InvitationResult:
        token = _require_token(token)

        with self.store.transaction() as conn:
            party = self.store.get_party_by_token(token, conn)
            if party is None:
                raise NotFound(INVITATION_NOT_FOUND)

            if party.invitation_status == InvitationStatus.ACCEPTED:
                deal = self.store.get_deal(party.deal_id, conn)
                return InvitationResult(
                    success=True,
                    party_id=party.id,
                    deal_id=party.deal_id,
                    deal_status=deal.status,
                    already_accepted=True,
                    all_parties_accepted=not deal.pending_parties(),
                )

            if party.invitation_status == InvitationStatus.DECLINED:
                raise Conflict("This invitation has been declined and cannot be accepted",
                               {"party_id": party.id})

            if not self.store.compare_and_set_invitation(
                party.id, InvitationStatus.PENDING, InvitationStatus.ACCEPTED, utcnow(), conn=conn
            ):
                raise Conflict("Invitation changed while being accepted", {"party_id": party.id})
            self.store.add_party_member(party.id, actor_id, conn)

            activation = self._activate_if_ready(party.deal_id, conn)
            all_accepted = self.store.count_parties_not_accepted(party.deal_id, conn) == 0

        logger.log_invitation_event("accepted", party.id, party.deal_id)
        self.side_effects.audit(actor_id, "INVITATION_ACCEPTED", "Party", party.id, deal_id=party.deal_id)
        self.side_effects.notify(NotificationEvent.INVITATION_ACCEPTED, party_id=party.id,
                                 deal_id=party.deal_id, all_parties_accepted=all_accepted)
        self._announce_activation(party.deal_id, activation, actor_id)

        return InvitationResult(
            success=True,
            party_id=party.id,
            deal_id=party.deal_id,
            deal_status=activation.status,
            all_parties_accepted=all_accepted,
            deal_activated=activation.activated,
        )

    @engine_operation("invitation.decline")
    def decline_invitation(self, token: str, reason: Optional[str] = None) -> DeclineResult:
        token = _require_token(token)
        reason = DeclineRequest(reason=reason).reason

        with self.store.transaction() as conn:
            party = self.store.get_party_by_token(token, conn)
            if party is None:
                raise NotFound(INVITATION_NOT_FOUND)

            if party.invitation_status == InvitationStatus.DECLINED:
                return DeclineResult(success=True, party_id=party.id, deal_id=party.deal_id, already_declined=True)
            if party.invitation_status == InvitationStatus.ACCEPTED:
                raise Conflict("This invitation has already been accepted and cannot be declined",
                               {"party_id": party.id})

            if not self.store.compare_and_set_invitation(
                party.id, InvitationStatus.PENDING, InvitationStatus.DECLINED, utcnow(),
                decline_reason=reason, conn=conn
            ):
                raise Conflict("Invitation changed while being declined", {"party_id": party.id})

        logger.log_invitation_event("declined", party.id, party.deal_id)
        self.side_effects.audit(None, "INVITATION_DECLINED", "Party", party.id,
                                deal_id=party.deal_id, reason=reason or "No reason provided")
        self.side_effects.notify(NotificationEvent.INVITATION_DECLINED, party_id=party.id,
                                 deal_id=party.deal_id, reason=reason)
        return DeclineResult(success=True, party_id=party.id, deal_id=party.deal_id)

    @engine_operation("deal.check_and_activate")
    def check_and_activate_deal(self, deal_id: str, actor_id: str = "SYSTEM") -> DealActivationResult:
        with self.store.transaction() as conn:
            activation = self._activate_if_ready(deal_id, conn)
        self._announce_activation(deal_id, activation, actor_id)
        return activation

    def _activate_if_ready(self, deal_id: str, conn: sqlite3.Connection) -> DealActivationResult:
        """Recount and activate as one unit. Must run inside a store transaction."""
        deal = self.store.get_deal(deal_id, conn)
        if deal is None:
            raise NotFound("Deal not found")

        if deal.status == DealStatus.ACTIVE:
            return DealActivationResult(activated=False, status=deal.status, reason="Deal already activated")

        if not deal.parties:
            return DealActivationResult(activated=False, status=deal.status, reason="Deal has no parties",
                                        next_step="Invite parties to the deal")

        pending = self.store.count_parties_not_accepted(deal_id, conn)
        if pending > 0:
            return DealActivationResult(
                activated=False,
                status=deal.status,
                reason=f"Waiting for {pending} parties to accept invitations",
                next_step="Parties must accept invitations",
            )

        if deal.status not in ACTIVATABLE_DEAL_STATUSES:
            return DealActivationResult(activated=False, status=deal.status,
                                        reason=f"Deal cannot be activated from {deal.status.value}")

        if not self.store.compare_and_set_deal_status(deal_id, ACTIVATABLE_DEAL_STATUSES, DealStatus.ACTIVE, conn):
            current = self.store.get_deal(deal_id, conn)
            return DealActivationResult(activated=False, status=current.status, reason="Deal already activated")

        return DealActivationResult(activated=True, status=DealStatus.ACTIVE,
                                    reason="All parties accepted invitations")

    def _announce_activation(self, deal_id: str, activation: DealActivationResult, actor_id: Optional[str]):
        logger.log_deal_activation(deal_id, activation.activated, activation.reason)
        if not activation.activated:
            return
        self.side_effects.audit(actor_id, "DEAL_ACTIVATED", "Deal", deal_id,
                                new_status=DealStatus.ACTIVE.value)
        self.side_effects.notify(NotificationEvent.DEAL_ACTIVATED, deal_id=deal_id)
