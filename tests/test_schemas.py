"""
Schema validation tests - changesets, delegation specs and partial updates.
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pydantic import ValidationError

from escrow.api.schemas import (
    AddPartyChange,
    DelegationSpec,
    DelegationUpdate,
    OtherChange,
    ProposedChangesRequest,
    RemovePartyChange,
    UpdatePaymentScheduleChange,
    changeset_adapter,
)
from escrow.core.schema import (
    AmendmentStatus,
    ApprovalActionType,
    Deal,
    DealStatus,
    Delegation,
    InvitationStatus,
    Party,
    from_iso,
    to_iso,
)


class TestChangeset:
    """Discriminated changeset variants."""

    def test_kind_selects_variant(self):
        change = changeset_adapter.validate_python({"kind": "remove_party", "party_id": "p-1"})
        assert isinstance(change, RemovePartyChange)
        assert change.party_id == "p-1"

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            changeset_adapter.validate_python({"kind": "rename", "title": "x"})

    def test_variants_are_frozen(self):
        change = AddPartyChange(name="Agent", role="AGENT")
        with pytest.raises(ValidationError):
            change.name = "Other"

    def test_empty_schedule_rejected(self):
        with pytest.raises(ValidationError):
            UpdatePaymentScheduleChange(schedule=[])

    def test_blank_party_name_rejected(self):
        with pytest.raises(ValidationError):
            AddPartyChange(name="  ", role="AGENT")

    def test_json_round_trip_preserves_variant(self):
        change = OtherChange(payload={"note": "free form"})
        restored = changeset_adapter.validate_json(change.model_dump_json())
        assert restored == change


class TestProposedChangesRequest:

    def test_valid_request(self):
        request = ProposedChangesRequest.model_validate({
            "amendment_type": "ADD_PARTY",
            "description": "Add an inspector",
            "reason": "Lender requirement",
            "changeset": {"kind": "add_party", "name": "Inspector", "role": "INSPECTOR"},
        })
        assert isinstance(request.changeset, AddPartyChange)

    def test_type_and_kind_must_agree(self):
        with pytest.raises(ValidationError, match="does not match"):
            ProposedChangesRequest.model_validate({
                "amendment_type": "REMOVE_PARTY",
                "description": "Add an inspector",
                "reason": "Lender requirement",
                "changeset": {"kind": "add_party", "name": "Inspector", "role": "INSPECTOR"},
            })


class TestDelegationSpec:

    def test_amount_is_decimal(self):
        spec = DelegationSpec(approval_types=["FUND_RELEASE"], max_amount="1500.50")
        assert spec.max_amount == Decimal("1500.50")

    def test_senior_review_left_unset(self):
        assert DelegationSpec(approval_types=["FUND_RELEASE"]).requires_senior_review is None

    def test_naive_valid_until_is_utc(self):
        spec = DelegationSpec(approval_types=["FUND_RELEASE"], valid_until=datetime(2026, 5, 1, 9, 0))
        assert spec.valid_until.tzinfo == timezone.utc

    @pytest.mark.parametrize("payload", [
        {"approval_types": []},
        {"approval_types": ["FUND_RELEASE"], "max_amount": "0"},
        {"approval_types": ["UNKNOWN"]},
    ])
    def test_invalid(self, payload):
        with pytest.raises(ValidationError):
            DelegationSpec.model_validate(payload)


class TestDelegationUpdate:

    def test_provided_only_includes_sent_keys(self):
        update = DelegationUpdate.model_validate({"max_amount": None, "notes": "extended"})
        assert update.provided() == {"max_amount": None, "notes": "extended"}

    def test_empty_update(self):
        assert DelegationUpdate.model_validate({}).provided() == {}

    @pytest.mark.parametrize("field", ["approval_types", "requires_senior_review", "active"])
    def test_non_nullable_fields(self, field):
        with pytest.raises(ValidationError):
            DelegationUpdate.model_validate({field: None})


class TestDomainRecords:

    def make_delegation(self, **overrides):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        values = dict(
            id="d-1", grantee_id="g", grantor_id="a",
            approval_types=[ApprovalActionType.FUND_RELEASE],
            max_amount=Decimal("100"), requires_senior_review=True,
            valid_until=now + timedelta(days=1), active=True, notes=None,
            created_at=now, updated_at=now,
        )
        values.update(overrides)
        return Delegation(**values)

    def test_expiry_boundary_is_inclusive(self):
        delegation = self.make_delegation()
        assert delegation.is_expired(delegation.valid_until - timedelta(seconds=1)) is False
        assert delegation.is_expired(delegation.valid_until) is True

    def test_no_expiry(self):
        delegation = self.make_delegation(valid_until=None)
        assert delegation.is_expired(datetime(2100, 1, 1, tzinfo=timezone.utc)) is False

    def test_inactive_is_not_effective(self):
        delegation = self.make_delegation(active=False)
        assert delegation.is_effective(delegation.created_at) is False

    def test_summary_shape(self):
        summary = self.make_delegation().summary()
        assert summary["approval_types"] == ["FUND_RELEASE"]
        assert summary["max_amount"] == "100"
        assert summary["valid_until"] == "2026-01-02T00:00:00+00:00"

    def test_current_parties_exclude_declined(self):
        parties = [
            Party(id="p1", deal_id="d", invitation_status=InvitationStatus.ACCEPTED, invitation_token="t1"),
            Party(id="p2", deal_id="d", invitation_status=InvitationStatus.DECLINED, invitation_token="t2"),
            Party(id="p3", deal_id="d", invitation_status=InvitationStatus.PENDING, invitation_token="t3"),
        ]
        deal = Deal(id="d", status=DealStatus.INVITED, parties=parties)

        assert [p.id for p in deal.current_parties()] == ["p1", "p3"]
        assert [p.id for p in deal.pending_parties()] == ["p2", "p3"]

    def test_iso_helpers_treat_naive_as_utc(self):
        assert to_iso(datetime(2026, 1, 1)) == "2026-01-01T00:00:00+00:00"
        assert from_iso("2026-01-01T00:00:00").tzinfo == timezone.utc
        assert from_iso(None) is None

    def test_amendment_status_values(self):
        assert {s.value for s in AmendmentStatus} == {"PENDING", "DISPUTED", "APPLIED", "REJECTED"}
