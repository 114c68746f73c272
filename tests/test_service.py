"""
End-to-end tests through the wired service and the operator CLI.
"""

import pytest

from escrow.cli import main
from escrow.core.schema import AmendmentStatus, DealStatus, ResolutionType, ResponseType, Role
from escrow.core.service import build_service


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "service.db")


@pytest.fixture
def service(db_path):
    return build_service(db_path)


class TestDealLifecycle:
    """Invitation, activation, amendment and dispute through the default collaborators."""

    def test_full_lifecycle(self, service):
        store = service.store
        admin = store.create_actor(Role.SUPER_ADMIN, actor_id="admin-1")
        deal = store.create_deal(title="Office lease")
        buyer = store.add_party(deal.id, name="Tenant")
        seller = store.add_party(deal.id, name="Landlord")

        service.invitations.accept_invitation(buyer.invitation_token, actor_id="tenant-user")
        result = service.invitations.accept_invitation(seller.invitation_token, actor_id="landlord-user")
        assert result.deal_activated is True

        amendment = service.amendments.propose(deal.id, buyer.id, {
            "amendment_type": "CHANGE_MILESTONE",
            "description": "Move handover",
            "reason": "Renovation delay",
            "changeset": {"kind": "change_milestone", "milestone_id": "m-1", "changes": {"due": "2026-09-01"}},
        })
        service.amendments.respond(amendment.id, buyer.id, ResponseType.APPROVE)
        disputed = service.amendments.respond(amendment.id, seller.id, ResponseType.DISPUTE, "Too late")
        assert disputed.amendment.status == AmendmentStatus.DISPUTED

        resolved = service.amendments.admin_resolve(amendment.id, admin.id, ResolutionType.APPROVE_OVERRIDE)

        assert resolved.amendment.status == AmendmentStatus.APPLIED
        assert resolved.change_applied is True
        assert store.get_deal(deal.id).status == DealStatus.ACTIVE
        assert [c["kind"] for c in store.list_applied_changes(deal.id)] == ["change_milestone"]

        actions = [e.action for e in service.audit_sink.list_events(amendment.id)]
        assert actions == [
            "AMENDMENT_PROPOSED",
            "AMENDMENT_RESPONDED",
            "AMENDMENT_RESPONDED",
            "AMENDMENT_DISPUTED",
            "AMENDMENT_RESOLVED",
            "AMENDMENT_APPLIED",
        ]
        assert [e.action for e in service.audit_sink.list_events(deal.id)] == ["DEAL_ACTIVATED"]

    def test_delegated_officer_flow(self, service):
        store = service.store
        admin = store.create_actor(Role.SUPER_ADMIN, actor_id="admin-1")
        officer = store.create_actor(Role.ESCROW_OFFICER, actor_id="officer-1")

        delegation = service.authority.grant_delegation(admin.id, officer.id, {
            "approval_types": ["FUND_RELEASE"], "max_amount": "2500"
        })
        assert service.policy.can_approve(officer.id, "FUND_RELEASE", "2000").allowed is True
        assert service.policy.can_approve(officer.id, "FUND_RELEASE", "3000").allowed is False

        service.authority.revoke_delegation(delegation.id, admin.id)
        assert service.policy.can_approve(officer.id, "FUND_RELEASE", "10").allowed is False
        assert store.get_actor(officer.id).delegated_authority is None


class TestCli:
    """Operator commands against a temporary database."""

    def test_init_db(self, db_path, capsys):
        assert main(["--db", db_path, "init-db"]) == 0
        assert "Database ready" in capsys.readouterr().out

    def test_grant_list_check_revoke(self, service, db_path, capsys):
        service.store.create_actor(Role.SUPER_ADMIN, actor_id="admin-1")
        service.store.create_actor(Role.ESCROW_OFFICER, actor_id="officer-1")

        assert main(["--db", db_path, "grant", "--grantor", "admin-1", "--grantee", "officer-1",
                     "--types", "FUND_RELEASE,DEAL_ACTIVATION", "--max-amount", "500"]) == 0
        assert "Delegation granted" in capsys.readouterr().out

        assert main(["--db", db_path, "check", "--actor", "officer-1", "--type", "FUND_RELEASE",
                     "--amount", "100"]) == 0
        assert "Allowed (senior review required)" in capsys.readouterr().out

        assert main(["--db", db_path, "check", "--actor", "officer-1", "--type", "FUND_RELEASE",
                     "--amount", "900"]) == 1
        assert "exceeds authorized limit" in capsys.readouterr().out

        assert main(["--db", db_path, "list", "--grantee", "officer-1"]) == 0
        assert "1 delegation(s)" in capsys.readouterr().out

        delegation_id = service.store.list_delegations(grantee_id="officer-1")[0].id
        assert main(["--db", db_path, "revoke", "--id", delegation_id, "--revoker", "admin-1"]) == 0
        assert "Delegation revoked" in capsys.readouterr().out

        assert main(["--db", db_path, "stats", "--admin", "admin-1"]) == 0
        assert "Revoked: 1" in capsys.readouterr().out

    def test_permission_error_exit_code(self, service, db_path, capsys):
        service.store.create_actor(Role.ESCROW_OFFICER, actor_id="officer-1")

        assert main(["--db", db_path, "stats", "--admin", "officer-1"]) == 1
        assert "PERMISSION_DENIED" in capsys.readouterr().out

    def test_list_requires_a_filter(self, service, db_path, capsys):
        assert main(["--db", db_path, "list"]) == 2

    def test_grant_with_unparseable_expiry(self, service, db_path, capsys):
        service.store.create_actor(Role.SUPER_ADMIN, actor_id="admin-1")
        service.store.create_actor(Role.ESCROW_OFFICER, actor_id="officer-1")

        assert main(["--db", db_path, "grant", "--grantor", "admin-1", "--grantee", "officer-1",
                     "--types", "FUND_RELEASE", "--valid-until", "tomorrow"]) == 1

        output = capsys.readouterr().out
        assert "VALIDATION_ERROR" in output
        assert "valid_until" in output
        assert service.store.list_delegations(grantee_id="officer-1") == []

    def test_grant_with_iso_expiry(self, service, db_path, capsys):
        service.store.create_actor(Role.SUPER_ADMIN, actor_id="admin-1")
        service.store.create_actor(Role.ESCROW_OFFICER, actor_id="officer-1")

        assert main(["--db", db_path, "grant", "--grantor", "admin-1", "--grantee", "officer-1",
                     "--types", "FUND_RELEASE", "--valid-until", "2099-01-01T00:00:00"]) == 0
        assert "until=2099-01-01T00:00:00+00:00" in capsys.readouterr().out

    def test_unusable_database_path(self, tmp_path, capsys):
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("")

        assert main(["--db", str(blocker / "escrow.db"), "init-db"]) == 1
        assert "❌ ERROR: database unavailable" in capsys.readouterr().out
