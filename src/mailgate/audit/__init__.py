"""Security audit trail: models, SQLite storage, logger, and CLI."""

from mailgate.audit.cli import build_parser
from mailgate.audit.logger import SecurityAuditLogger
from mailgate.audit.models import AuditEntry, EventType
from mailgate.audit.store import (
    close_audit_db,
    init_audit_db,
    insert_audit_entry,
    query_audit_trail,
)

__all__ = [
    "AuditEntry",
    "EventType",
    "SecurityAuditLogger",
    "build_parser",
    "close_audit_db",
    "init_audit_db",
    "insert_audit_entry",
    "query_audit_trail",
]
