"""SQLite-backed security audit store with WAL mode and indexed queries.

Provides functions to initialize the database, insert audit entries, and
query the audit trail with flexible filtering. Uses parameterized queries
exclusively (never string concatenation) to prevent SQL injection.
"""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

from mailgate.audit.models import AuditEntry


def init_audit_db(db_path: Path) -> sqlite3.Connection:
    """Create and initialize the audit database with WAL mode and indexes.

    The connection may be shared across threads; callers serialize writes
    (see :class:`~mailgate.audit.logger.SecurityAuditLogger`).

    Args:
        db_path: Path to the SQLite database file.

    Returns:
        An open sqlite3.Connection with WAL mode enabled.
    """
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL")

    conn.execute("""
        CREATE TABLE IF NOT EXISTS security_audit (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            event_type TEXT NOT NULL,
            agent_name TEXT,
            message_id TEXT,
            sender TEXT,
            policy TEXT,
            reason TEXT,
            metadata TEXT
        )
    """)

    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_security_audit_agent ON security_audit (agent_name)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_security_audit_sender ON security_audit (sender)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_security_audit_timestamp ON security_audit (timestamp)"
    )

    conn.commit()
    return conn


def insert_audit_entry(conn: sqlite3.Connection, entry: AuditEntry) -> int:
    """Insert an audit entry into the database.

    Serializes the metadata dict to a JSON string if present; values that
    are not JSON-native (datetimes) are stored as strings.

    Args:
        conn: An open database connection.
        entry: The audit entry to insert.

    Returns:
        The row ID of the inserted entry.
    """
    metadata_json: str | None = None
    if entry.metadata is not None:
        metadata_json = json.dumps(entry.metadata, default=str)

    cursor = conn.execute(
        """
        INSERT INTO security_audit (
            timestamp, event_type, agent_name, message_id, sender,
            policy, reason, metadata
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry.timestamp.strftime("%Y-%m-%dT%H:%M:%SZ"),
            entry.event_type.value,
            entry.agent_name,
            entry.message_id,
            entry.sender,
            entry.policy,
            entry.reason,
            metadata_json,
        ),
    )
    conn.commit()
    return cursor.lastrowid or 0


def query_audit_trail(
    conn: sqlite3.Connection,
    *,
    agent_name: str | None = None,
    sender: str | None = None,
    event_type: str | None = None,
    from_date: str | None = None,
    to_date: str | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    """Query the audit trail with flexible filtering.

    All filters are optional. Results are ordered newest first.

    Args:
        conn: An open database connection.
        agent_name: Filter by agent name (exact match).
        sender: Filter by sender address (exact match).
        event_type: Filter by event type (exact match).
        from_date: Filter entries on or after this ISO 8601 date.
        to_date: Filter entries on or before this ISO 8601 date.
        limit: Maximum number of results to return (default 50).

    Returns:
        A list of dicts, one per matching audit entry, newest first.
    """
    conditions: list[str] = []
    params: list[str | int] = []

    if agent_name is not None:
        conditions.append("agent_name = ?")
        params.append(agent_name)

    if sender is not None:
        conditions.append("sender = ?")
        params.append(sender)

    if event_type is not None:
        conditions.append("event_type = ?")
        params.append(event_type)

    if from_date is not None:
        conditions.append("timestamp >= ?")
        params.append(from_date)

    if to_date is not None:
        conditions.append("timestamp <= ?")
        params.append(to_date)

    where_clause = ""
    if conditions:
        where_clause = "WHERE " + " AND ".join(conditions)

    query = (
        f"SELECT * FROM security_audit {where_clause} "
        "ORDER BY timestamp DESC, id DESC LIMIT ?"
    )
    params.append(limit)

    cursor = conn.execute(query, params)
    columns = [col[0] for col in cursor.description]

    results: list[dict[str, Any]] = []
    for row in cursor.fetchall():
        row_dict = dict(zip(columns, row, strict=True))
        if row_dict.get("metadata") is not None:
            row_dict["metadata"] = json.loads(row_dict["metadata"])
        results.append(row_dict)

    return results


def close_audit_db(conn: sqlite3.Connection) -> None:
    """Close the audit database connection.

    Args:
        conn: The database connection to close.
    """
    conn.close()
