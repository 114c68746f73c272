"""
Approval policy tests - role shortcuts, delegation limits and denial reasons.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

from escrow.core.authority import AuthorityRegistry
from escrow.core.collaborators import SideEffects
from escrow.core.errors import PermissionDenied, ValidationFailed
from escrow.core.policy import ApprovalDecision, ApprovalPolicyEvaluator
from escrow.core.schema import ApprovalActionType, Role
from escrow.core.store import SQLiteStore


@pytest.fixture
def store(tmp_path):
    return SQLiteStore(str(tmp_path / "policy.db")).init()


@pytest.fixture
def registry(store):
    return AuthorityRegistry(store, MagicMock(spec=SideEffects))


@pytest.fixture
def evaluator(store, registry):
    return ApprovalPolicyEvaluator(store, registry)


@pytest.fixture
def admin(store):
    return store.create_actor(Role.SUPER_ADMIN, actor_id="admin-1")


@pytest.fixture
def officer(store):
    return store.create_actor(Role.ESCROW_OFFICER, actor_id="officer-1")


class TestRoleShortcuts:
    """Roles that approve without a delegation."""

    @pytest.mark.parametrize("role", [Role.SUPER_ADMIN, Role.SENIOR_ESCROW_OFFICER])
    @pytest.mark.parametrize("action_type", list(ApprovalActionType))
    def test_privileged_roles_always_allowed(self, store, evaluator, role, action_type):
        actor = store.create_actor(role)

        decision = evaluator.can_approve(actor.id, action_type, Decimal("1000000000"))

        assert decision.allowed is True
        assert decision.requires_senior_review is False
        assert decision.reason is None

    def test_unknown_actor(self, evaluator):
        decision = evaluator.can_approve("ghost", ApprovalActionType.FUND_RELEASE)
        assert decision == ApprovalDecision(allowed=False, reason="User not found")

    def test_standard_role_without_delegation(self, store, evaluator):
        actor = store.create_actor(Role.STANDARD)

        decision = evaluator.can_approve(actor.id, ApprovalActionType.DEAL_ACTIVATION)

        assert decision.allowed is False
        assert decision.reason == "No active delegation found for DEAL_ACTIVATION"


class TestDelegatedApproval:
    """Officers approving through a delegation."""

    def test_covered_action_within_limit(self, evaluator, registry, admin, officer):
        delegation = registry.grant_delegation(admin.id, officer.id, {
            "approval_types": ["FUND_RELEASE"], "max_amount": "10000", "requires_senior_review": True
        })

        decision = evaluator.can_approve(officer.id, ApprovalActionType.FUND_RELEASE, 5000)

        assert decision.allowed is True
        assert decision.requires_senior_review is True
        assert decision.delegation_id == delegation.id

    def test_amount_equal_to_limit_is_allowed(self, evaluator, registry, admin, officer):
        registry.grant_delegation(admin.id, officer.id, {"approval_types": ["FUND_RELEASE"], "max_amount": "10000"})
        assert evaluator.can_approve(officer.id, "FUND_RELEASE", "10000").allowed is True

    def test_amount_over_limit_is_denied(self, evaluator, registry, admin, officer):
        registry.grant_delegation(admin.id, officer.id, {"approval_types": ["FUND_RELEASE"], "max_amount": "10000"})

        decision = evaluator.can_approve(officer.id, ApprovalActionType.FUND_RELEASE, "10000.01")

        assert decision.allowed is False
        assert decision.reason == "Amount 10000.01 exceeds authorized limit 10000"

    def test_no_amount_skips_limit(self, evaluator, registry, admin, officer):
        registry.grant_delegation(admin.id, officer.id, {"approval_types": ["FUND_RELEASE"], "max_amount": "1"})
        assert evaluator.can_approve(officer.id, ApprovalActionType.FUND_RELEASE).allowed is True

    def test_no_limit_allows_any_amount(self, evaluator, registry, admin, officer):
        registry.grant_delegation(admin.id, officer.id, {"approval_types": ["FUND_RELEASE"]})
        assert evaluator.can_approve(officer.id, ApprovalActionType.FUND_RELEASE, 10 ** 12).allowed is True

    def test_uncovered_action_is_denied(self, evaluator, registry, admin, officer):
        registry.grant_delegation(admin.id, officer.id, {"approval_types": ["FUND_RELEASE"]})

        decision = evaluator.can_approve(officer.id, ApprovalActionType.DISPUTE_RESOLUTION)

        assert decision.allowed is False
        assert decision.reason == "No active delegation found for DISPUTE_RESOLUTION"

    def test_revoked_delegation_is_denied(self, evaluator, registry, admin, officer):
        delegation = registry.grant_delegation(admin.id, officer.id, {"approval_types": ["FUND_RELEASE"]})
        registry.revoke_delegation(delegation.id, admin.id)

        assert evaluator.can_approve(officer.id, ApprovalActionType.FUND_RELEASE).allowed is False

    def test_expired_delegation_is_denied(self, store, admin, officer):
        clock = MagicMock(return_value=datetime(2026, 3, 1, tzinfo=timezone.utc))
        registry = AuthorityRegistry(store, MagicMock(spec=SideEffects), clock)
        evaluator = ApprovalPolicyEvaluator(store, registry)
        registry.grant_delegation(admin.id, officer.id, {
            "approval_types": ["FUND_RELEASE"],
            "valid_until": datetime(2026, 3, 2, tzinfo=timezone.utc),
        })
        assert evaluator.can_approve(officer.id, ApprovalActionType.FUND_RELEASE).allowed is True

        clock.return_value = datetime(2026, 3, 2, tzinfo=timezone.utc)
        decision = evaluator.can_approve(officer.id, ApprovalActionType.FUND_RELEASE)

        assert decision.allowed is False
        assert decision.reason == "No active delegation found for FUND_RELEASE"

    def test_most_recent_delegation_decides_limit(self, evaluator, registry, admin, officer):
        registry.grant_delegation(admin.id, officer.id, {"approval_types": ["FUND_RELEASE"], "max_amount": 1000})
        registry.grant_delegation(admin.id, officer.id, {"approval_types": ["FUND_RELEASE"], "max_amount": 100})

        assert evaluator.can_approve(officer.id, ApprovalActionType.FUND_RELEASE, 500).allowed is False

    def test_stale_cache_is_not_consulted(self, store, evaluator, officer):
        """Authorization reads delegation rows; a hand-written cache grants nothing."""
        store.set_actor_authority_cache(officer.id, {"approval_types": ["FUND_RELEASE"]}, "admin-1", None)

        assert evaluator.can_approve(officer.id, ApprovalActionType.FUND_RELEASE).allowed is False


class TestInputValidation:

    def test_unknown_action_type(self, evaluator, officer):
        with pytest.raises(ValidationFailed):
            evaluator.can_approve(officer.id, "TELEPORT")

    @pytest.mark.parametrize("amount", ["abc", "-1", "NaN"])
    def test_invalid_amount(self, evaluator, officer, amount):
        with pytest.raises(ValidationFailed):
            evaluator.can_approve(officer.id, ApprovalActionType.FUND_RELEASE, amount)


class TestRequireApproval:

    def test_denial_raises_with_reason(self, evaluator, officer):
        with pytest.raises(PermissionDenied) as exc:
            evaluator.require_approval(officer.id, ApprovalActionType.DISPUTE_RESOLUTION)
        assert exc.value.reason == "No active delegation found for DISPUTE_RESOLUTION"

    def test_allowed_returns_decision(self, evaluator, admin):
        decision = evaluator.require_approval(admin.id, ApprovalActionType.DISPUTE_RESOLUTION)
        assert decision.allowed is True

    def test_decision_response_model(self, evaluator, officer):
        response = evaluator.can_approve(officer.id, ApprovalActionType.FUND_RELEASE).to_response()
        assert response.allowed is False
        assert response.reason == "No active delegation found for FUND_RELEASE"


class TestOfficerWithFundReleaseLimit:
    """Officer holding FUND_RELEASE up to 10000 with senior review."""

    @pytest.fixture
    def limited_officer(self, registry, admin, officer):
        registry.grant_delegation(admin.id, officer.id, {
            "approval_types": ["FUND_RELEASE"], "max_amount": 10000, "requires_senior_review": True
        })
        return officer

    def test_within_limit(self, evaluator, limited_officer):
        decision = evaluator.can_approve(limited_officer.id, ApprovalActionType.FUND_RELEASE, 5000)
        assert (decision.allowed, decision.requires_senior_review) == (True, True)

    def test_over_limit_names_amount_and_limit(self, evaluator, limited_officer):
        decision = evaluator.can_approve(limited_officer.id, ApprovalActionType.FUND_RELEASE, 15000)
        assert decision.allowed is False
        assert "15000" in decision.reason
        assert "10000" in decision.reason
