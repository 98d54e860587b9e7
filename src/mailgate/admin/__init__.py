"""HTTP admin surface for agent security configuration and the audit log."""

from mailgate.admin.router import require_admin_token, router

__all__ = [
    "require_admin_token",
    "router",
]
