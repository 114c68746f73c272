"""
Authority registry - stores and mutates approval delegations.

Delegation rows are the only source of authorization truth. The summary
cached on each actor row is recomputed inside the same transaction as the
delegation write that changed it, so it cannot drift from the rows.
"""

import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from .collaborators import NotificationEvent, SideEffects
from .errors import NotFound, PermissionDenied, engine_operation
from .schema import ApprovalActionType, Delegation, Role, utcnow
from .store import SQLiteStore, new_id
from .config import default_requires_senior_review
from ..api.schemas import DelegationSpec, DelegationUpdate
from ..util.logging import logger

# Fields whose change alters what the cached summary shows
CACHE_FIELDS = {'approval_types', 'max_amount', 'requires_senior_review', 'valid_until', 'active'}


class AuthorityRegistry:
    """Grants, updates and revokes delegations; answers delegation lookups."""

    def __init__(self, store: SQLiteStore, side_effects: SideEffects,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.side_effects = side_effects
        self.clock = clock

    # ------------------------------------------------------------------
    # Mutations (SUPER_ADMIN only)
    # ------------------------------------------------------------------

    @engine_operation("delegation.grant")
    def grant_delegation(self, grantor_id: str, grantee_id: str,
                         spec: Union[DelegationSpec, Dict[str, Any]]) -> Delegation:
        now = self.clock()
        with self.store.transaction() as conn:
            self._require_super_admin(grantor_id, "Only super admin can delegate authority", conn)
            spec = spec if isinstance(spec, DelegationSpec) else DelegationSpec.model_validate(spec)

            if self.store.get_actor(grantee_id, conn) is None:
                raise NotFound("Target user not found")

            requires_senior_review = spec.requires_senior_review
            if requires_senior_review is None:
                requires_senior_review = default_requires_senior_review()

            delegation = Delegation(
                id=new_id(),
                grantee_id=grantee_id,
                grantor_id=grantor_id,
                approval_types=list(spec.approval_types),
                max_amount=spec.max_amount,
                requires_senior_review=requires_senior_review,
                valid_until=spec.valid_until,
                active=True,
                notes=spec.notes,
                created_at=now,
                updated_at=now,
            )
            self.store.insert_delegation(delegation, conn)
            self._refresh_cache(grantee_id, conn)

        types = [t.value for t in delegation.approval_types]
        logger.log_delegation_change("granted", delegation.id, grantor_id, {"grantee_id": grantee_id, "approval_types": types})
        self.side_effects.audit(grantor_id, "DELEGATION_GRANTED", "Delegation", delegation.id,
                                grantee_id=grantee_id, approval_types=types)
        self.side_effects.notify(NotificationEvent.DELEGATION_GRANTED, delegation_id=delegation.id,
                                 grantee_id=grantee_id, grantor_id=grantor_id, approval_types=types)
        return delegation

    @engine_operation("delegation.update")
    def update_delegation(self, delegation_id: str, updater_id: str,
                          partial: Union[DelegationUpdate, Dict[str, Any]]) -> Delegation:
        with self.store.transaction() as conn:
            self._require_super_admin(updater_id, "Only super admin can update authority delegation", conn)
            partial = partial if isinstance(partial, DelegationUpdate) else DelegationUpdate.model_validate(partial)

            existing = self.store.get_delegation(delegation_id, conn)
            if existing is None:
                raise NotFound("Delegation not found")

            fields = partial.provided()
            if not fields:
                return existing

            self.store.update_delegation_fields(delegation_id, fields, self.clock(), conn)
            if CACHE_FIELDS & set(fields):
                self._refresh_cache(existing.grantee_id, conn)
            updated = self.store.get_delegation(delegation_id, conn)

        changed = sorted(fields)
        logger.log_delegation_change("updated", delegation_id, updater_id, {"fields": changed})
        self.side_effects.audit(updater_id, "DELEGATION_UPDATED", "Delegation", delegation_id, fields=changed)
        return updated

    @engine_operation("delegation.revoke")
    def revoke_delegation(self, delegation_id: str, revoker_id: str) -> Delegation:
        with self.store.transaction() as conn:
            self._require_super_admin(revoker_id, "Only super admin can revoke authority", conn)

            existing = self.store.get_delegation(delegation_id, conn)
            if existing is None:
                raise NotFound("Delegation not found")
            if not existing.active:
                return existing

            self.store.update_delegation_fields(delegation_id, {'active': False}, self.clock(), conn)
            self._refresh_cache(existing.grantee_id, conn)
            revoked = self.store.get_delegation(delegation_id, conn)

        logger.log_delegation_change("revoked", delegation_id, revoker_id, {"grantee_id": revoked.grantee_id})
        self.side_effects.audit(revoker_id, "DELEGATION_REVOKED", "Delegation", delegation_id,
                                grantee_id=revoked.grantee_id)
        self.side_effects.notify(NotificationEvent.DELEGATION_REVOKED, delegation_id=delegation_id,
                                 grantee_id=revoked.grantee_id, revoked_by=revoker_id)
        return revoked

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def governing_delegation(self, actor_id: str, action_type: ApprovalActionType,
                             conn: sqlite3.Connection = None) -> Optional[Delegation]:
        """The delegation that decides actor_id's authority for action_type.

        When several active, unexpired delegations cover the action, the
        most recently created one governs.
        """
        now = self.clock()
        for delegation in self.store.list_delegations(grantee_id=actor_id, active=True, conn=conn):
            if delegation.covers(action_type) and delegation.is_effective(now):
                return delegation
        return None

    @engine_operation("delegation.get")
    def get_delegation(self, delegation_id: str) -> Delegation:
        delegation = self.store.get_delegation(delegation_id)
        if delegation is None:
            raise NotFound("Delegation not found")
        return delegation

    def is_delegation_expired(self, delegation: Delegation, now: datetime = None) -> bool:
        return delegation.is_expired(now or self.clock())

    @engine_operation("delegation.list_for_grantee")
    def list_delegations_for_grantee(self, grantee_id: str) -> List[Delegation]:
        """Active, unexpired delegations held by grantee_id, most recent first."""
        now = self.clock()
        return [d for d in self.store.list_delegations(grantee_id=grantee_id, active=True)
                if d.is_effective(now)]

    @engine_operation("delegation.list_by_grantor")
    def list_delegations_by_grantor(self, admin_id: str) -> List[Delegation]:
        self._require_super_admin(admin_id, "Only super admin can view all delegations")
        return self.store.list_delegations(grantor_id=admin_id)

    @engine_operation("delegation.list_all")
    def list_all_delegations(self, requester_id: str) -> List[Delegation]:
        self._require_super_admin(requester_id, "Only super admin can view all delegations")
        return self.store.list_delegations()

    @engine_operation("delegation.stats")
    def delegation_stats(self, admin_id: str) -> Dict[str, Any]:
        self._require_super_admin(admin_id, "Only super admin can view delegation statistics")
        now = self.clock()
        stats = {
            "total_active": 0,
            "total_expired": 0,
            "total_revoked": 0,
            "by_type": {t.value: 0 for t in ApprovalActionType},
        }
        for delegation in self.store.list_delegations():
            if not delegation.active:
                stats["total_revoked"] += 1
            elif delegation.is_expired(now):
                stats["total_expired"] += 1
            else:
                stats["total_active"] += 1
                for action_type in delegation.approval_types:
                    stats["by_type"][action_type.value] += 1
        return stats

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_super_admin(self, actor_id: str, reason: str, conn: sqlite3.Connection = None):
        actor = self.store.get_actor(actor_id, conn)
        if actor is None or actor.role != Role.SUPER_ADMIN:
            raise PermissionDenied(reason, {"actor_id": actor_id})
        return actor

    def _refresh_cache(self, grantee_id: str, conn: sqlite3.Connection):
        """Recompute the grantee's cached summary from its delegation rows."""
        now = self.clock()
        governing = None
        for delegation in self.store.list_delegations(grantee_id=grantee_id, active=True, conn=conn):
            if delegation.is_effective(now):
                governing = delegation
                break

        if governing is None:
            self.store.set_actor_authority_cache(grantee_id, None, None, None, conn)
        else:
            self.store.set_actor_authority_cache(
                grantee_id, governing.summary(), governing.grantor_id, governing.created_at, conn
            )
