"""Convenience class for recording security decisions in the audit trail.

Each method builds a properly structured :class:`AuditEntry` and inserts
it via :func:`insert_audit_entry` under a lock, so the logger can be shared
between the event loop and FastAPI's worker threads.
"""

from __future__ import annotations

import sqlite3
import threading
from typing import Any

from mailgate.audit.models import AuditEntry, EventType
from mailgate.audit.store import insert_audit_entry, query_audit_trail
from mailgate.domain.models import SecurityResult


class SecurityAuditLogger:
    """Typed API for inserting security audit entries.

    Args:
        conn: An open SQLite connection to the audit database.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def _insert(self, entry: AuditEntry) -> int:
        with self._lock:
            return insert_audit_entry(self._conn, entry)

    def log_decision(
        self,
        agent_name: str,
        message_id: str,
        sender: str,
        result: SecurityResult,
    ) -> int:
        """Log the outcome of one validation.

        Quarantining denials are recorded as ``security_quarantine``, other
        denials as ``security_block``, and allows as ``security_allow``.
        Rate-limit details are folded into the metadata.

        Returns:
            The row ID of the inserted audit entry.
        """
        if result.allowed:
            event_type = EventType.SECURITY_ALLOW
        elif result.quarantine:
            event_type = EventType.SECURITY_QUARANTINE
        else:
            event_type = EventType.SECURITY_BLOCK

        metadata: dict[str, Any] = dict(result.metadata or {})
        if result.rate_limit is not None:
            metadata["rate_limit"] = result.rate_limit.model_dump(mode="json")

        entry = AuditEntry(
            event_type=event_type,
            agent_name=agent_name,
            message_id=message_id,
            sender=sender,
            policy=result.policy,
            reason=result.reason,
            metadata=metadata or None,
        )
        return self._insert(entry)

    def log_policy_error(
        self,
        agent_name: str,
        message_id: str,
        policy: str,
        error: str,
    ) -> int:
        """Log a policy that could not be evaluated and was skipped."""
        entry = AuditEntry(
            event_type=EventType.POLICY_ERROR,
            agent_name=agent_name,
            message_id=message_id,
            policy=policy,
            reason=error,
        )
        return self._insert(entry)

    def log_config_update(
        self,
        agent_name: str,
        changes: dict[str, Any],
        actor: str | None = None,
    ) -> int:
        """Log a configuration write.

        Args:
            agent_name: The agent whose configuration changed.
            changes: The fields that were explicitly set.
            actor: Who made the change, when known.
        """
        metadata: dict[str, Any] = {"changes": changes}
        if actor:
            metadata["actor"] = actor
        entry = AuditEntry(
            event_type=EventType.CONFIG_UPDATE,
            agent_name=agent_name,
            reason="configuration updated",
            metadata=metadata,
        )
        return self._insert(entry)

    def query(
        self,
        *,
        agent_name: str | None = None,
        sender: str | None = None,
        event_type: str | None = None,
        from_date: str | None = None,
        to_date: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Query the trail under the write lock, newest first.

        See :func:`~mailgate.audit.store.query_audit_trail` for the filters.
        """
        with self._lock:
            return query_audit_trail(
                self._conn,
                agent_name=agent_name,
                sender=sender,
                event_type=event_type,
                from_date=from_date,
                to_date=to_date,
                limit=limit,
            )
