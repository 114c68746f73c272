"""
SQLite foundation for the consensus engine.
Connections are opened per operation; writers serialize through BEGIN IMMEDIATE.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator

from .config import get_busy_timeout, ensure_db_directory


def connect(db_path: str) -> sqlite3.Connection:
    """Open a connection in autocommit mode so transactions are explicit."""
    conn = sqlite3.connect(db_path, timeout=get_busy_timeout(), isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def get_db(db_path: str) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection for reads."""
    conn = connect(db_path)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(db_path: str) -> Generator[sqlite3.Connection, None, None]:
    """Run a block as one serialized unit of work.

    BEGIN IMMEDIATE takes the database write lock before the first read,
    so every read inside the block sees the latest committed state and no
    other writer can interleave until COMMIT. Any exception rolls back.
    """
    conn = connect(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def init_db(db_path: str):
    """Initialize the database with required tables."""
    ensure_db_directory(db_path)
    with get_db(db_path) as conn:
        conn.executescript('''
            CREATE TABLE IF NOT EXISTS actors (
                id TEXT PRIMARY KEY,
                name TEXT,
                email TEXT,
                role TEXT NOT NULL,
                delegated_authority TEXT,  -- cached summary, never authoritative
                assigned_by TEXT,
                assigned_at TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS delegations (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,  -- creation order, drives tie-break
                id TEXT NOT NULL UNIQUE,
                grantee_id TEXT NOT NULL REFERENCES actors(id),
                grantor_id TEXT NOT NULL REFERENCES actors(id),
                approval_types TEXT NOT NULL,
                max_amount TEXT,
                requires_senior_review INTEGER NOT NULL DEFAULT 1,
                valid_until TEXT,
                active INTEGER NOT NULL DEFAULT 1,
                notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS deals (
                id TEXT PRIMARY KEY,
                title TEXT,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                activated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS parties (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                deal_id TEXT NOT NULL REFERENCES deals(id),
                name TEXT,
                role TEXT,
                invitation_status TEXT NOT NULL,
                invitation_token TEXT NOT NULL UNIQUE,
                responded_at TEXT,
                decline_reason TEXT
            );

            CREATE TABLE IF NOT EXISTS party_members (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                party_id TEXT NOT NULL REFERENCES parties(id),
                actor_id TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS amendments (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                deal_id TEXT NOT NULL REFERENCES deals(id),
                proposer_id TEXT NOT NULL,
                status TEXT NOT NULL,
                amendment_type TEXT NOT NULL,
                description TEXT NOT NULL,
                reason TEXT NOT NULL,
                changeset TEXT NOT NULL,
                supersedes_id TEXT,
                resolution_type TEXT,
                resolution_notes TEXT,
                resolved_by TEXT,
                resolved_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS amendment_responses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                amendment_id TEXT NOT NULL REFERENCES amendments(id),
                party_id TEXT NOT NULL REFERENCES parties(id),
                response_type TEXT NOT NULL,
                notes TEXT,
                responded_at TEXT NOT NULL,
                UNIQUE (amendment_id, party_id)
            );

            CREATE TABLE IF NOT EXISTS audit_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                actor TEXT NOT NULL,
                action TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                metadata TEXT
            );

            CREATE TABLE IF NOT EXISTS applied_changes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                deal_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                payload TEXT NOT NULL,
                applied_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_delegations_grantee ON delegations(grantee_id, active);
            CREATE INDEX IF NOT EXISTS idx_parties_deal ON parties(deal_id);
            CREATE INDEX IF NOT EXISTS idx_amendments_deal ON amendments(deal_id, status);
            CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_events(entity_id, timestamp);
        ''')


REQUIRED_TABLES = [
    'actors', 'delegations', 'deals', 'parties', 'party_members',
    'amendments', 'amendment_responses', 'audit_events', 'applied_changes',
]


def health_check(db_path: str) -> bool:
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
            table_names = {row[0] for row in rows}
            return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False

