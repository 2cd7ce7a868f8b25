"""
schema.py - Entity store table definitions.

Timestamps are stored as ISO-8601 text in UTC.
"""

import sqlite3

from aac_sync.config import STORE_SCHEMA_VERSION

PHRASES_TABLE = """
CREATE TABLE IF NOT EXISTS phrases (
    id TEXT PRIMARY KEY,
    phrase_text TEXT NOT NULL,
    category TEXT,
    usage_count INTEGER NOT NULL DEFAULT 0,
    is_favorite INTEGER NOT NULL DEFAULT 0,
    sync_state TEXT NOT NULL,
    server_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""

PHRASES_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_phrases_sync_state ON phrases(sync_state)",
    "CREATE INDEX IF NOT EXISTS idx_phrases_server_id ON phrases(server_id)",
)

USER_SETTINGS_TABLE = """
CREATE TABLE IF NOT EXISTS user_settings (
    id TEXT PRIMARY KEY,
    singleton INTEGER NOT NULL DEFAULT 1 UNIQUE CHECK (singleton = 1),
    language TEXT NOT NULL,
    voice_speed REAL NOT NULL,
    ai_enabled INTEGER NOT NULL,
    response_mode TEXT NOT NULL,
    sync_state TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""

USAGE_LOGS_TABLE = """
CREATE TABLE IF NOT EXISTS usage_logs (
    id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    event_data TEXT,
    phrase_used TEXT,
    session_id TEXT,
    sync_state TEXT NOT NULL,
    created_at TEXT NOT NULL
)
"""

USAGE_LOGS_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_usage_logs_sync_state ON usage_logs(sync_state)",
)

PEER_OUTBOX_TABLE = """
CREATE TABLE IF NOT EXISTS peer_outbox (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    message_type TEXT NOT NULL,
    payload BLOB NOT NULL,
    queued_at TEXT NOT NULL
)
"""

INSTRUCTION_AUDIT_TABLE = """
CREATE TABLE IF NOT EXISTS instruction_audit (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    instruction_id TEXT,
    instruction_type TEXT,
    source TEXT NOT NULL,
    state TEXT NOT NULL,
    detail TEXT,
    received_at TEXT NOT NULL,
    finished_at TEXT
)
"""

INSTRUCTION_AUDIT_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_instruction_audit_id ON instruction_audit(instruction_id)",
)


def initialize_schema(conn: sqlite3.Connection) -> None:
    """Create all store tables. Safe to call on an existing database."""
    for ddl in (
        PHRASES_TABLE,
        USER_SETTINGS_TABLE,
        USAGE_LOGS_TABLE,
        PEER_OUTBOX_TABLE,
        INSTRUCTION_AUDIT_TABLE,
    ):
        conn.execute(ddl)
    for ddl in PHRASES_INDEXES + USAGE_LOGS_INDEXES + INSTRUCTION_AUDIT_INDEXES:
        conn.execute(ddl)
    conn.execute(f"PRAGMA user_version = {STORE_SCHEMA_VERSION}")


def get_schema_version(conn: sqlite3.Connection) -> int:
    return conn.execute("PRAGMA user_version").fetchone()[0]
