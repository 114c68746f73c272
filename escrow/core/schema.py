"""
Domain records for delegated authority, amendments and invitations.
Plain dataclasses; validation of inbound data lives in escrow.api.schemas.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class Role(str, Enum):
    STANDARD = "STANDARD"
    ESCROW_OFFICER = "ESCROW_OFFICER"
    SENIOR_ESCROW_OFFICER = "SENIOR_ESCROW_OFFICER"
    SUPER_ADMIN = "SUPER_ADMIN"


class ApprovalActionType(str, Enum):
    DEAL_ACTIVATION = "DEAL_ACTIVATION"
    MILESTONE_APPROVAL = "MILESTONE_APPROVAL"
    FUND_RELEASE = "FUND_RELEASE"
    DISPUTE_RESOLUTION = "DISPUTE_RESOLUTION"
    CONTRACT_MODIFICATION = "CONTRACT_MODIFICATION"
    PARTY_REMOVAL = "PARTY_REMOVAL"
    DEAL_CANCELLATION = "DEAL_CANCELLATION"


class AmendmentStatus(str, Enum):
    PENDING = "PENDING"
    DISPUTED = "DISPUTED"
    APPLIED = "APPLIED"
    REJECTED = "REJECTED"


TERMINAL_AMENDMENT_STATUSES = {AmendmentStatus.APPLIED, AmendmentStatus.REJECTED}


class AmendmentType(str, Enum):
    ADD_PARTY = "ADD_PARTY"
    REMOVE_PARTY = "REMOVE_PARTY"
    UPDATE_TERMS = "UPDATE_TERMS"
    CHANGE_MILESTONE = "CHANGE_MILESTONE"
    UPDATE_PAYMENT_SCHEDULE = "UPDATE_PAYMENT_SCHEDULE"
    OTHER = "OTHER"


class ResponseType(str, Enum):
    APPROVE = "APPROVE"
    DISPUTE = "DISPUTE"


class ResolutionType(str, Enum):
    APPROVE_OVERRIDE = "APPROVE_OVERRIDE"
    REJECT = "REJECT"
    REQUEST_COMPROMISE = "REQUEST_COMPROMISE"


class InvitationStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"


class DealStatus(str, Enum):
    CREATED = "CREATED"
    INVITED = "INVITED"
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


# Deals may only be activated from these statuses
ACTIVATABLE_DEAL_STATUSES = {DealStatus.CREATED, DealStatus.INVITED}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as an ISO-8601 UTC string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Actor:
    id: str
    role: Role
    name: Optional[str] = None
    email: Optional[str] = None
    # Read-optimized summary of the governing delegation; never authoritative
    delegated_authority: Optional[Dict[str, Any]] = None
    assigned_by: Optional[str] = None
    assigned_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class Delegation:
    id: str
    grantee_id: str
    grantor_id: str
    approval_types: List[ApprovalActionType]
    max_amount: Optional[Decimal]
    requires_senior_review: bool
    valid_until: Optional[datetime]
    active: bool
    notes: Optional[str]
    created_at: datetime
    updated_at: datetime
    seq: int = 0

    def covers(self, action_type: ApprovalActionType) -> bool:
        return action_type in self.approval_types

    def is_expired(self, now: datetime) -> bool:
        """A delegation expires lazily once validUntil has passed."""
        if self.valid_until is None:
            return False
        return now >= self.valid_until

    def is_effective(self, now: datetime) -> bool:
        return self.active and not self.is_expired(now)

    def summary(self) -> Dict[str, Any]:
        """Shape of the per-actor cached authority summary."""
        return {
            "delegation_id": self.id,
            "approval_types": [t.value for t in self.approval_types],
            "max_amount": str(self.max_amount) if self.max_amount is not None else None,
            "requires_senior_review": self.requires_senior_review,
            "valid_until": to_iso(self.valid_until),
        }


@dataclass
class Party:
    id: str
    deal_id: str
    invitation_status: InvitationStatus
    invitation_token: str
    name: Optional[str] = None
    role: Optional[str] = None
    responded_at: Optional[datetime] = None
    decline_reason: Optional[str] = None


@dataclass
class Deal:
    id: str
    status: DealStatus
    parties: List[Party] = field(default_factory=list)
    title: Optional[str] = None
    created_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None

    def current_parties(self) -> List[Party]:
        """Parties that take part in consensus; declined invitations drop out."""
        return [p for p in self.parties if p.invitation_status != InvitationStatus.DECLINED]

    def pending_parties(self) -> List[Party]:
        return [p for p in self.parties if p.invitation_status != InvitationStatus.ACCEPTED]


@dataclass
class ProposedChanges:
    amendment_type: AmendmentType
    description: str
    reason: str
    changeset: Any  # one of the escrow.api.schemas changeset variants


@dataclass
class AmendmentResponse:
    party_id: str
    response_type: ResponseType
    notes: Optional[str]
    responded_at: datetime


@dataclass
class AdminResolution:
    type: ResolutionType
    notes: str
    resolved_by: str
    resolved_at: datetime


@dataclass
class Amendment:
    id: str
    deal_id: str
    proposer_id: str
    status: AmendmentStatus
    proposed_changes: ProposedChanges
    responses: List[AmendmentResponse] = field(default_factory=list)
    admin_resolution: Optional[AdminResolution] = None
    supersedes_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_AMENDMENT_STATUSES

    def response_for(self, party_id: str) -> Optional[AmendmentResponse]:
        for response in self.responses:
            if response.party_id == party_id:
                return response
        return None

    def has_dispute(self) -> bool:
        return any(r.response_type == ResponseType.DISPUTE for r in self.responses)


@dataclass
class AuditEvent:
    actor: str
    action: str
    entity_type: str
    entity_id: str
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
