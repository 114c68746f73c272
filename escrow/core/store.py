"""
SQLite-backed persistent store for actors, delegations, deals, parties and amendments.

Every method takes an optional connection. Pass the connection yielded by
transaction() to make several calls one atomic unit; without one, each call
opens its own short-lived connection.
"""

import json
import secrets
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Generator, Iterable, List, Optional

from .db import get_db, init_db, transaction
from .schema import (
    Actor,
    AdminResolution,
    Amendment,
    AmendmentResponse,
    AmendmentStatus,
    AmendmentType,
    ApprovalActionType,
    AuditEvent,
    Deal,
    DealStatus,
    Delegation,
    InvitationStatus,
    Party,
    ProposedChanges,
    ResolutionType,
    ResponseType,
    Role,
    from_iso,
    to_iso,
    utcnow,
)
from ..api.schemas import changeset_adapter

# Delegation columns that update_delegation_fields may touch
DELEGATION_MUTABLE_COLUMNS = {
    'approval_types', 'max_amount', 'requires_senior_review', 'valid_until', 'active', 'notes',
}


def new_id() -> str:
    return str(uuid.uuid4())


class SQLiteStore:
    """Persistent store handle. Inject one instance into each component."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def init(self) -> "SQLiteStore":
        init_db(self.db_path)
        return self

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        with transaction(self.db_path) as conn:
            yield conn

    @contextmanager
    def _use(self, conn: Optional[sqlite3.Connection]) -> Generator[sqlite3.Connection, None, None]:
        if conn is not None:
            yield conn
        else:
            with get_db(self.db_path) as own:
                yield own

    # ------------------------------------------------------------------
    # Actors
    # ------------------------------------------------------------------

    def create_actor(self, role: Role, name: str = None, email: str = None, actor_id: str = None) -> Actor:
        actor = Actor(id=actor_id or new_id(), role=Role(role), name=name, email=email, created_at=utcnow())
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO actors (id, name, email, role, created_at) VALUES (?, ?, ?, ?, ?)",
                (actor.id, actor.name, actor.email, actor.role.value, to_iso(actor.created_at))
            )
        return actor

    def get_actor(self, actor_id: str, conn: sqlite3.Connection = None) -> Optional[Actor]:
        if not actor_id:
            return None
        with self._use(conn) as c:
            row = c.execute("SELECT * FROM actors WHERE id = ?", (actor_id,)).fetchone()
        if row is None:
            return None
        return Actor(
            id=row['id'],
            role=Role(row['role']),
            name=row['name'],
            email=row['email'],
            delegated_authority=json.loads(row['delegated_authority']) if row['delegated_authority'] else None,
            assigned_by=row['assigned_by'],
            assigned_at=from_iso(row['assigned_at']),
            created_at=from_iso(row['created_at']),
        )

    def set_actor_authority_cache(self, actor_id: str, summary: Optional[Dict[str, Any]],
                                  assigned_by: Optional[str], assigned_at: Optional[datetime],
                                  conn: sqlite3.Connection = None):
        with self._use(conn) as c:
            c.execute(
                "UPDATE actors SET delegated_authority = ?, assigned_by = ?, assigned_at = ? WHERE id = ?",
                (json.dumps(summary) if summary is not None else None, assigned_by, to_iso(assigned_at), actor_id)
            )

    # ------------------------------------------------------------------
    # Delegations
    # ------------------------------------------------------------------

    def insert_delegation(self, delegation: Delegation, conn: sqlite3.Connection = None) -> Delegation:
        with self._use(conn) as c:
            cursor = c.execute(
                '''INSERT INTO delegations (id, grantee_id, grantor_id, approval_types, max_amount,
                       requires_senior_review, valid_until, active, notes, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                (
                    delegation.id,
                    delegation.grantee_id,
                    delegation.grantor_id,
                    json.dumps([t.value for t in delegation.approval_types]),
                    str(delegation.max_amount) if delegation.max_amount is not None else None,
                    int(delegation.requires_senior_review),
                    to_iso(delegation.valid_until),
                    int(delegation.active),
                    delegation.notes,
                    to_iso(delegation.created_at),
                    to_iso(delegation.updated_at),
                )
            )
            delegation.seq = cursor.lastrowid
        return delegation

    def get_delegation(self, delegation_id: str, conn: sqlite3.Connection = None) -> Optional[Delegation]:
        with self._use(conn) as c:
            row = c.execute("SELECT * FROM delegations WHERE id = ?", (delegation_id,)).fetchone()
        return self._row_to_delegation(row) if row else None

    def update_delegation_fields(self, delegation_id: str, fields: Dict[str, Any], updated_at: datetime,
                                 conn: sqlite3.Connection = None) -> bool:
        """Write only the given fields. Returns False if the row does not exist."""
        unknown = set(fields) - DELEGATION_MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown delegation fields: {sorted(unknown)}")

        columns = []
        values = []
        for name, value in fields.items():
            columns.append(f"{name} = ?")
            values.append(self._delegation_column_value(name, value))
        columns.append("updated_at = ?")
        values.append(to_iso(updated_at))
        values.append(delegation_id)

        with self._use(conn) as c:
            cursor = c.execute(f"UPDATE delegations SET {', '.join(columns)} WHERE id = ?", values)
            return cursor.rowcount == 1

    def list_delegations(self, grantee_id: str = None, grantor_id: str = None, active: bool = None,
                         conn: sqlite3.Connection = None) -> List[Delegation]:
        """List delegations, most recently created first."""
        clauses = []
        params: List[Any] = []
        if grantee_id is not None:
            clauses.append("grantee_id = ?")
            params.append(grantee_id)
        if grantor_id is not None:
            clauses.append("grantor_id = ?")
            params.append(grantor_id)
        if active is not None:
            clauses.append("active = ?")
            params.append(int(active))

        query = "SELECT * FROM delegations"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY seq DESC"

        with self._use(conn) as c:
            rows = c.execute(query, params).fetchall()
        return [self._row_to_delegation(row) for row in rows]

    @staticmethod
    def _delegation_column_value(name: str, value: Any) -> Any:
        if name == 'approval_types':
            return json.dumps([ApprovalActionType(t).value for t in value])
        if name == 'max_amount':
            return str(value) if value is not None else None
        if name in ('requires_senior_review', 'active'):
            return int(bool(value))
        if name == 'valid_until':
            return to_iso(value)
        return value

    @staticmethod
    def _row_to_delegation(row: sqlite3.Row) -> Delegation:
        return Delegation(
            id=row['id'],
            grantee_id=row['grantee_id'],
            grantor_id=row['grantor_id'],
            approval_types=[ApprovalActionType(t) for t in json.loads(row['approval_types'])],
            max_amount=Decimal(row['max_amount']) if row['max_amount'] is not None else None,
            requires_senior_review=bool(row['requires_senior_review']),
            valid_until=from_iso(row['valid_until']),
            active=bool(row['active']),
            notes=row['notes'],
            created_at=from_iso(row['created_at']),
            updated_at=from_iso(row['updated_at']),
            seq=row['seq'],
        )

    # ------------------------------------------------------------------
    # Deals and parties
    # ------------------------------------------------------------------

    def create_deal(self, title: str = None, status: DealStatus = DealStatus.INVITED, deal_id: str = None) -> Deal:
        deal = Deal(id=deal_id or new_id(), status=DealStatus(status), title=title, created_at=utcnow())
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO deals (id, title, status, created_at) VALUES (?, ?, ?, ?)",
                (deal.id, deal.title, deal.status.value, to_iso(deal.created_at))
            )
        return deal

    def get_deal(self, deal_id: str, conn: sqlite3.Connection = None) -> Optional[Deal]:
        with self._use(conn) as c:
            row = c.execute("SELECT * FROM deals WHERE id = ?", (deal_id,)).fetchone()
            if row is None:
                return None
            parties = self.list_parties(deal_id, conn=c)
        return Deal(
            id=row['id'],
            status=DealStatus(row['status']),
            parties=parties,
            title=row['title'],
            created_at=from_iso(row['created_at']),
            activated_at=from_iso(row['activated_at']),
        )

    def compare_and_set_deal_status(self, deal_id: str, expected: Iterable[DealStatus], new_status: DealStatus,
                                    conn: sqlite3.Connection = None) -> bool:
        """Move a deal to new_status only if it is currently in one of expected."""
        expected = [DealStatus(s).value for s in expected]
        placeholders = ", ".join("?" for _ in expected)
        activated_at = to_iso(utcnow()) if new_status == DealStatus.ACTIVE else None
        with self._use(conn) as c:
            cursor = c.execute(
                f'''UPDATE deals SET status = ?, activated_at = COALESCE(?, activated_at)
                    WHERE id = ? AND status IN ({placeholders})''',
                [DealStatus(new_status).value, activated_at, deal_id, *expected]
            )
            return cursor.rowcount == 1

    def add_party(self, deal_id: str, name: str = None, role: str = None, invitation_token: str = None,
                  party_id: str = None) -> Party:
        party = Party(
            id=party_id or new_id(),
            deal_id=deal_id,
            invitation_status=InvitationStatus.PENDING,
            invitation_token=invitation_token or secrets.token_urlsafe(32),
            name=name,
            role=role,
        )
        with self.transaction() as conn:
            conn.execute(
                '''INSERT INTO parties (id, deal_id, name, role, invitation_status, invitation_token)
                   VALUES (?, ?, ?, ?, ?, ?)''',
                (party.id, party.deal_id, party.name, party.role, party.invitation_status.value,
                 party.invitation_token)
            )
        return party

    def get_party(self, party_id: str, conn: sqlite3.Connection = None) -> Optional[Party]:
        with self._use(conn) as c:
            row = c.execute("SELECT * FROM parties WHERE id = ?", (party_id,)).fetchone()
        return self._row_to_party(row) if row else None

    def get_party_by_token(self, token: str, conn: sqlite3.Connection = None) -> Optional[Party]:
        if not token:
            return None
        with self._use(conn) as c:
            row = c.execute("SELECT * FROM parties WHERE invitation_token = ?", (token,)).fetchone()
        return self._row_to_party(row) if row else None

    def list_parties(self, deal_id: str, conn: sqlite3.Connection = None) -> List[Party]:
        with self._use(conn) as c:
            rows = c.execute("SELECT * FROM parties WHERE deal_id = ? ORDER BY seq", (deal_id,)).fetchall()
        return [self._row_to_party(row) for row in rows]

    def count_parties_not_accepted(self, deal_id: str, conn: sqlite3.Connection = None) -> int:
        with self._use(conn) as c:
            return c.execute(
                "SELECT COUNT(*) FROM parties WHERE deal_id = ? AND invitation_status != ?",
                (deal_id, InvitationStatus.ACCEPTED.value)
            ).fetchone()[0]

    def compare_and_set_invitation(self, party_id: str, expected: InvitationStatus, new_status: InvitationStatus,
                                   responded_at: datetime, decline_reason: str = None,
                                   conn: sqlite3.Connection = None) -> bool:
        with self._use(conn) as c:
            cursor = c.execute(
                '''UPDATE parties SET invitation_status = ?, responded_at = ?, decline_reason = ?
                   WHERE id = ? AND invitation_status = ?''',
                (InvitationStatus(new_status).value, to_iso(responded_at), decline_reason, party_id,
                 InvitationStatus(expected).value)
            )
            return cursor.rowcount == 1

    def add_party_member(self, party_id: str, actor_id: Optional[str], conn: sqlite3.Connection = None):
        with self._use(conn) as c:
            c.execute(
                "INSERT INTO party_members (party_id, actor_id, created_at) VALUES (?, ?, ?)",
                (party_id, actor_id, to_iso(utcnow()))
            )

    def list_party_members(self, party_id: str, conn: sqlite3.Connection = None) -> List[Dict[str, Any]]:
        with self._use(conn) as c:
            rows = c.execute(
                "SELECT party_id, actor_id, created_at FROM party_members WHERE party_id = ? ORDER BY id",
                (party_id,)
            ).fetchall()
        return [dict(row) for row in rows]

    @staticmethod
    def _row_to_party(row: sqlite3.Row) -> Party:
        return Party(
            id=row['id'],
            deal_id=row['deal_id'],
            invitation_status=InvitationStatus(row['invitation_status']),
            invitation_token=row['invitation_token'],
            name=row['name'],
            role=row['role'],
            responded_at=from_iso(row['responded_at']),
            decline_reason=row['decline_reason'],
        )

    # ------------------------------------------------------------------
    # Amendments
    # ------------------------------------------------------------------

    def insert_amendment(self, amendment: Amendment, conn: sqlite3.Connection = None) -> Amendment:
        changes = amendment.proposed_changes
        with self._use(conn) as c:
            c.execute(
                '''INSERT INTO amendments (id, deal_id, proposer_id, status, amendment_type, description,
                       reason, changeset, supersedes_id, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                (
                    amendment.id,
                    amendment.deal_id,
                    amendment.proposer_id,
                    amendment.status.value,
                    changes.amendment_type.value,
                    changes.description,
                    changes.reason,
                    changes.changeset.model_dump_json(),
                    amendment.supersedes_id,
                    to_iso(amendment.created_at),
                    to_iso(amendment.updated_at),
                )
            )
        return amendment

    def get_amendment(self, amendment_id: str, conn: sqlite3.Connection = None) -> Optional[Amendment]:
        with self._use(conn) as c:
            row = c.execute("SELECT * FROM amendments WHERE id = ?", (amendment_id,)).fetchone()
            if row is None:
                return None
            responses = c.execute(
                "SELECT * FROM amendment_responses WHERE amendment_id = ? ORDER BY id", (amendment_id,)
            ).fetchall()
        return self._row_to_amendment(row, responses)

    def list_amendments(self, deal_id: str, status: AmendmentStatus = None,
                        conn: sqlite3.Connection = None) -> List[Amendment]:
        query = "SELECT id FROM amendments WHERE deal_id = ?"
        params: List[Any] = [deal_id]
        if status is not None:
            query += " AND status = ?"
            params.append(AmendmentStatus(status).value)
        query += " ORDER BY seq DESC"
        with self._use(conn) as c:
            ids = [row['id'] for row in c.execute(query, params).fetchall()]
            return [self.get_amendment(amendment_id, conn=c) for amendment_id in ids]

    def insert_response(self, amendment_id: str, response: AmendmentResponse,
                        conn: sqlite3.Connection = None) -> bool:
        """Append a party response. Returns False if the party already responded."""
        with self._use(conn) as c:
            cursor = c.execute(
                '''INSERT OR IGNORE INTO amendment_responses
                       (amendment_id, party_id, response_type, notes, responded_at)
                   VALUES (?, ?, ?, ?, ?)''',
                (amendment_id, response.party_id, response.response_type.value, response.notes,
                 to_iso(response.responded_at))
            )
            return cursor.rowcount == 1

    def compare_and_set_amendment_status(self, amendment_id: str, expected: AmendmentStatus,
                                         new_status: AmendmentStatus, conn: sqlite3.Connection = None) -> bool:
        with self._use(conn) as c:
            cursor = c.execute(
                "UPDATE amendments SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (AmendmentStatus(new_status).value, to_iso(utcnow()), amendment_id,
                 AmendmentStatus(expected).value)
            )
            return cursor.rowcount == 1

    def set_admin_resolution(self, amendment_id: str, resolution: AdminResolution,
                             conn: sqlite3.Connection = None):
        with self._use(conn) as c:
            c.execute(
                '''UPDATE amendments SET resolution_type = ?, resolution_notes = ?, resolved_by = ?,
                       resolved_at = ?, updated_at = ? WHERE id = ?''',
                (resolution.type.value, resolution.notes, resolution.resolved_by,
                 to_iso(resolution.resolved_at), to_iso(utcnow()), amendment_id)
            )

    @staticmethod
    def _row_to_amendment(row: sqlite3.Row, response_rows: List[sqlite3.Row]) -> Amendment:
        resolution = None
        if row['resolution_type']:
            resolution = AdminResolution(
                type=ResolutionType(row['resolution_type']),
                notes=row['resolution_notes'] or "",
                resolved_by=row['resolved_by'],
                resolved_at=from_iso(row['resolved_at']),
            )
        return Amendment(
            id=row['id'],
            deal_id=row['deal_id'],
            proposer_id=row['proposer_id'],
            status=AmendmentStatus(row['status']),
            proposed_changes=ProposedChanges(
                amendment_type=AmendmentType(row['amendment_type']),
                description=row['description'],
                reason=row['reason'],
                changeset=changeset_adapter.validate_json(row['changeset']),
            ),
            responses=[
                AmendmentResponse(
                    party_id=r['party_id'],
                    response_type=ResponseType(r['response_type']),
                    notes=r['notes'],
                    responded_at=from_iso(r['responded_at']),
                )
                for r in response_rows
            ],
            admin_resolution=resolution,
            supersedes_id=row['supersedes_id'],
            created_at=from_iso(row['created_at']),
            updated_at=from_iso(row['updated_at']),
        )

    # ------------------------------------------------------------------
    # Audit trail and applied changes
    # ------------------------------------------------------------------

    def insert_audit_event(self, event: AuditEvent, conn: sqlite3.Connection = None):
        with self._use(conn) as c:
            c.execute(
                '''INSERT INTO audit_events (actor, action, entity_type, entity_id, timestamp, metadata)
                   VALUES (?, ?, ?, ?, ?, ?)''',
                (event.actor, event.action, event.entity_type, event.entity_id, to_iso(event.timestamp),
                 json.dumps(event.metadata, default=str))
            )

    def list_audit_events(self, entity_id: str = None, conn: sqlite3.Connection = None) -> List[AuditEvent]:
        query = "SELECT * FROM audit_events"
        params: List[Any] = []
        if entity_id is not None:
            query += " WHERE entity_id = ?"
            params.append(entity_id)
        query += " ORDER BY id"
        with self._use(conn) as c:
            rows = c.execute(query, params).fetchall()
        return [
            AuditEvent(
                actor=row['actor'],
                action=row['action'],
                entity_type=row['entity_type'],
                entity_id=row['entity_id'],
                timestamp=from_iso(row['timestamp']),
                metadata=json.loads(row['metadata']) if row['metadata'] else {},
            )
            for row in rows
        ]

    def insert_applied_change(self, deal_id: str, kind: str, payload: str, conn: sqlite3.Connection = None):
        with self._use(conn) as c:
            c.execute(
                "INSERT INTO applied_changes (deal_id, kind, payload, applied_at) VALUES (?, ?, ?, ?)",
                (deal_id, kind, payload, to_iso(utcnow()))
            )

    def list_applied_changes(self, deal_id: str, conn: sqlite3.Connection = None) -> List[Dict[str, Any]]:
        with self._use(conn) as c:
            rows = c.execute(
                "SELECT deal_id, kind, payload, applied_at FROM applied_changes WHERE deal_id = ? ORDER BY id",
                (deal_id,)
            ).fetchall()
        return [dict(row) for row in rows]
