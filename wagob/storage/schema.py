"""Database schema for the wagob SQLite state store.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- Database initialization (init_db)
"""

import logging
import sqlite3

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Allowed table names for SQL queries (prevents SQL injection via table names)
ALLOWED_TABLES = frozenset(
    {
        "jobs",
        "escrows",
        "reputation_accounts",
        "ratings",
        "processed_transactions",
        "deferred_events",
        "dead_letters",
        "poll_cursors",
        "pending_notifications",
        "contract_health",
        "metric_snapshots",
        "alerts",
        "schema_version",
    }
)


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection."""
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Jobs mirrored from the job registry contract
CREATE TABLE IF NOT EXISTS jobs (
    job_id INTEGER PRIMARY KEY,
    employer_account TEXT NOT NULL,
    worker_account TEXT,
    wages_amount INTEGER NOT NULL,
    duration_hours INTEGER NOT NULL,
    category TEXT NOT NULL,
    status TEXT NOT NULL,
    cancellation_reason TEXT,
    transaction_hash TEXT,
    created_at TEXT,
    updated_at TEXT,
    assigned_at TEXT,
    completed_at TEXT,
    cancelled_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, job_id);
CREATE INDEX IF NOT EXISTS idx_jobs_category ON jobs(category, status, job_id);

-- One escrow per job; deadline in epoch seconds for SQL comparison
CREATE TABLE IF NOT EXISTS escrows (
    escrow_id INTEGER PRIMARY KEY,
    job_id INTEGER NOT NULL UNIQUE,
    amount INTEGER NOT NULL,
    funded_amount INTEGER NOT NULL DEFAULT 0,
    employer_account TEXT NOT NULL,
    worker_account TEXT NOT NULL,
    status TEXT NOT NULL,
    deadline INTEGER NOT NULL,
    dispute_reason TEXT,
    disputed_by TEXT,
    resolved_to TEXT,
    released_to TEXT,
    released_amount INTEGER NOT NULL DEFAULT 0,
    platform_fee INTEGER NOT NULL DEFAULT 0,
    transaction_hash TEXT,
    created_at TEXT,
    updated_at TEXT,
    funded_at TEXT,
    locked_at TEXT,
    completed_at TEXT,
    disputed_at TEXT,
    resolved_at TEXT,
    refunded_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_escrows_status_deadline ON escrows(status, deadline);

CREATE TABLE IF NOT EXISTS reputation_accounts (
    account_hash INTEGER PRIMARY KEY,
    weighted_score INTEGER NOT NULL,
    rating_count INTEGER NOT NULL DEFAULT 0,
    last_updated_at TEXT
);

-- Dedup index for ratings: one per (job, rater)
CREATE TABLE IF NOT EXISTS ratings (
    job_id INTEGER NOT NULL,
    rater_account TEXT NOT NULL,
    ratee_hash INTEGER NOT NULL,
    value INTEGER NOT NULL,
    transaction_hash TEXT NOT NULL,
    created_at TEXT,
    PRIMARY KEY (job_id, rater_account)
);
CREATE INDEX IF NOT EXISTS idx_ratings_ratee ON ratings(ratee_hash, created_at);

CREATE TABLE IF NOT EXISTS processed_transactions (
    transaction_hash TEXT PRIMARY KEY,
    event_kind TEXT NOT NULL,
    outcome TEXT NOT NULL,
    detail TEXT,
    processed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS deferred_events (
    transaction_hash TEXT PRIMARY KEY,
    event_kind TEXT NOT NULL,
    entity_id INTEGER,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    first_seen_at TEXT NOT NULL,
    last_attempt_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS dead_letters (
    transaction_hash TEXT PRIMARY KEY,
    event_kind TEXT NOT NULL,
    entity_id INTEGER,
    attempts INTEGER NOT NULL,
    error TEXT NOT NULL,
    escalated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS poll_cursors (
    address TEXT PRIMARY KEY,
    last_sequence INTEGER NOT NULL DEFAULT 0,
    last_transaction_hash TEXT,
    updated_at TEXT
);

-- Notification outbox: written with the mutation, deleted once published
CREATE TABLE IF NOT EXISTS pending_notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    transaction_hash TEXT NOT NULL,
    kind TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id INTEGER,
    details TEXT NOT NULL DEFAULT '{}',
    occurred_at TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL
);

-- Contract monitoring
CREATE TABLE IF NOT EXISTS contract_health (
    address TEXT PRIMARY KEY,
    last_success_at TEXT,
    last_failure_at TEXT,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    last_sequence INTEGER NOT NULL DEFAULT 0,
    caught_up INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS metric_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    address TEXT NOT NULL,
    metric_name TEXT NOT NULL,
    value REAL NOT NULL,
    recorded_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_metric_snapshots ON metric_snapshots(address, metric_name, recorded_at);

CREATE TABLE IF NOT EXISTS alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    address TEXT NOT NULL,
    alert_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    message TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    resolved_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_alerts_status ON alerts(status, severity);
CREATE INDEX IF NOT EXISTS idx_alerts_address ON alerts(address, alert_type, status);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables and record the schema version."""
    conn.executescript(SCHEMA)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    current = row[0] if row and row[0] is not None else None
    if current is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        logger.debug(f"Initialized schema version {SCHEMA_VERSION}")
    elif current > SCHEMA_VERSION:
        logger.warning(
            f"Database schema version {current} is newer than supported {SCHEMA_VERSION}"
        )
