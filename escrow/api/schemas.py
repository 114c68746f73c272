"""
Request and response models for the consensus engine service boundary.
Inbound data is validated here before any component touches the store.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from ..core.schema import (
    AmendmentType,
    ApprovalActionType,
    ResolutionType,
    ResponseType,
)


def _attach_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Typed changeset variants. The engine stores and forwards them untouched.

class AddPartyChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["add_party"] = "add_party"
    name: str
    role: str
    contact_email: Optional[str] = None

    @field_validator('name', 'role')
    @classmethod
    def must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('value cannot be empty')
        return v


class RemovePartyChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["remove_party"] = "remove_party"
    party_id: str


class UpdateTermsChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["update_terms"] = "update_terms"
    terms: Dict[str, Any]

    @field_validator('terms')
    @classmethod
    def terms_must_not_be_empty(cls, v):
        if not v:
            raise ValueError('terms cannot be empty')
        return v


class ChangeMilestoneChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["change_milestone"] = "change_milestone"
    milestone_id: str
    changes: Dict[str, Any]


class UpdatePaymentScheduleChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["update_payment_schedule"] = "update_payment_schedule"
    schedule: List[Dict[str, Any]]

    @field_validator('schedule')
    @classmethod
    def schedule_must_not_be_empty(cls, v):
        if not v:
            raise ValueError('schedule cannot be empty')
        return v


class OtherChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["other"] = "other"
    payload: Dict[str, Any]


Changeset = Annotated[
    Union[
        AddPartyChange,
        RemovePartyChange,
        UpdateTermsChange,
        ChangeMilestoneChange,
        UpdatePaymentScheduleChange,
        OtherChange,
    ],
    Field(discriminator="kind"),
]

changeset_adapter = TypeAdapter(Changeset)


class ProposedChangesRequest(BaseModel):
    amendment_type: AmendmentType
    description: str
    reason: str
    changeset: Changeset

    @field_validator('description', 'reason')
    @classmethod
    def text_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('value cannot be empty')
        return v

    @model_validator(mode='after')
    def type_must_match_changeset(self):
        if self.amendment_type.value.lower() != self.changeset.kind:
            raise ValueError(
                f'amendment_type {self.amendment_type.value} does not match changeset kind {self.changeset.kind}'
            )
        return self


class DelegationSpec(BaseModel):
    approval_types: List[ApprovalActionType]
    max_amount: Optional[Decimal] = None
    requires_senior_review: Optional[bool] = None
    valid_until: Optional[datetime] = None
    notes: Optional[str] = None

    @field_validator('approval_types')
    @classmethod
    def approval_types_must_not_be_empty(cls, v):
        if not v:
            raise ValueError('approval_types cannot be empty')
        # Keep declaration order, drop duplicates
        return list(dict.fromkeys(v))

    @field_validator('max_amount')
    @classmethod
    def max_amount_must_be_positive(cls, v):
        if v is not None and v <= 0:
            raise ValueError('max_amount must be greater than zero')
        return v

    @field_validator('valid_until')
    @classmethod
    def valid_until_is_utc(cls, v):
        return _attach_utc(v)


class DelegationUpdate(BaseModel):
    """Partial update. Only keys present in the payload change.

    An explicit None for max_amount or valid_until clears the field.
    """

    approval_types: Optional[List[ApprovalActionType]] = None
    max_amount: Optional[Decimal] = None
    requires_senior_review: Optional[bool] = None
    valid_until: Optional[datetime] = None
    active: Optional[bool] = None
    notes: Optional[str] = None

    @field_validator('approval_types')
    @classmethod
    def approval_types_must_not_be_empty(cls, v):
        if v is not None and not v:
            raise ValueError('approval_types cannot be empty')
        return list(dict.fromkeys(v)) if v is not None else v

    @field_validator('max_amount')
    @classmethod
    def max_amount_must_be_positive(cls, v):
        if v is not None and v <= 0:
            raise ValueError('max_amount must be greater than zero')
        return v

    @field_validator('valid_until')
    @classmethod
    def valid_until_is_utc(cls, v):
        return _attach_utc(v)

    @model_validator(mode='after')
    def non_nullable_fields(self):
        for name in ('approval_types', 'requires_senior_review', 'active'):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f'{name} cannot be null')
        return self

    def provided(self) -> Dict[str, Any]:
        """Return only the keys the caller actually sent."""
        return {name: getattr(self, name) for name in self.model_fields_set}


class RespondRequest(BaseModel):
    response_type: ResponseType
    notes: Optional[str] = None


class AdminResolveRequest(BaseModel):
    resolution_type: ResolutionType
    notes: str = ""


class DeclineRequest(BaseModel):
    reason: Optional[str] = None


class ApprovalCheckResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    requires_senior_review: Optional[bool] = None


class ErrorResponse(BaseModel):
    error_type: str
    message: str
    timestamp: datetime = None
    details: Optional[Dict[str, Any]] = None

    def __init__(self, **data):
        super().__init__(timestamp=datetime.now(timezone.utc), **data)
