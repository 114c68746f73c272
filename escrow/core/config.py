"""
Runtime configuration for the consensus engine.
All settings come from environment variables and default to safe values.
"""

import os
from pathlib import Path

# Database path configuration
DB_PATH = os.getenv("ESCROW_DB_PATH", "./data/escrow.db")

# Seconds a writer waits for the SQLite write lock before giving up
DB_BUSY_TIMEOUT_SEC = float(os.getenv("DB_BUSY_TIMEOUT_SEC", "30"))

# Delegation defaults
DELEGATION_DEFAULT_SENIOR_REVIEW = os.getenv("DELEGATION_DEFAULT_SENIOR_REVIEW", "true").lower() == "true"

# Side-effect fan-out
AUDIT_ENABLED = os.getenv("AUDIT_ENABLED", "true").lower() == "true"
NOTIFICATIONS_ENABLED = os.getenv("NOTIFICATIONS_ENABLED", "true").lower() == "true"


def get_db_path():
    """Get the configured database path."""
    return DB_PATH


def get_busy_timeout():
    """Get the write-lock wait in seconds."""
    return DB_BUSY_TIMEOUT_SEC


def default_requires_senior_review():
    return DELEGATION_DEFAULT_SENIOR_REVIEW


def is_audit_enabled():
    return AUDIT_ENABLED


def are_notifications_enabled():
    return NOTIFICATIONS_ENABLED


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def validate_config():
    """Validate configuration and return any issues."""
    issues = []

    if not DB_PATH or not DB_PATH.strip():
        issues.append("ESCROW_DB_PATH must not be empty")

    if DB_BUSY_TIMEOUT_SEC <= 0:
        issues.append("DB_BUSY_TIMEOUT_SEC must be > 0")

    return issues
