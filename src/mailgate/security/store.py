"""Per-agent configuration stores.

The security layer depends only on the :class:`ConfigStore` protocol
(get / set / list / delete of whole :class:`AgentSecurityConfig` snapshots,
last write wins).  Two implementations are provided: an in-memory dict and
a SQLite table that mirrors the audit store's conventions (WAL mode,
parameterized queries, synchronous commits).
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from mailgate.security.models import AgentSecurityConfig


class ConfigStore(Protocol):
    """Keyed storage of agent configuration snapshots."""

    def get(self, agent_name: str) -> AgentSecurityConfig | None:
        """Return the snapshot for *agent_name*, if any."""
        ...

    def set(self, config: AgentSecurityConfig) -> None:
        """Replace the snapshot for ``config.agent_name``."""
        ...

    def list(self) -> list[AgentSecurityConfig]:
        """Return every stored snapshot ordered by agent name."""
        ...

    def delete(self, agent_name: str) -> bool:
        """Remove *agent_name*; return True if it existed."""
        ...


class InMemoryConfigStore:
    """Process-local store backed by a plain dict.

    Makes no atomicity promise of its own; pair it with
    ``SecurityLayer(..., store_is_atomic=False)``.
    """

    def __init__(self, configs: list[AgentSecurityConfig] | None = None) -> None:
        self._configs: dict[str, AgentSecurityConfig] = {
            c.agent_name: c for c in configs or []
        }

    def get(self, agent_name: str) -> AgentSecurityConfig | None:
        return self._configs.get(agent_name)

    def set(self, config: AgentSecurityConfig) -> None:
        self._configs[config.agent_name] = config

    def list(self) -> list[AgentSecurityConfig]:
        return [self._configs[name] for name in sorted(self._configs)]

    def delete(self, agent_name: str) -> bool:
        return self._configs.pop(agent_name, None) is not None


def init_config_db(db_path: Path) -> sqlite3.Connection:
    """Create and initialize the agent configuration database.

    Args:
        db_path: Path to the SQLite database file (``:memory:`` allowed).

    Returns:
        An open connection usable from any thread.
    """
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("""
        CREATE TABLE IF NOT EXISTS agent_security_config (
            agent_name TEXT PRIMARY KEY,
            config_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    conn.commit()
    return conn


class SqliteConfigStore:
    """Durable store with one JSON row per agent.

    Each write is a single ``INSERT OR REPLACE`` committed before returning,
    and the connection is guarded by a lock, so readers see either the old
    or the new snapshot.  Safe to use with ``store_is_atomic=True``.

    Args:
        conn: A connection from :func:`init_config_db`.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def get(self, agent_name: str) -> AgentSecurityConfig | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT config_json FROM agent_security_config WHERE agent_name = ?",
                (agent_name,),
            ).fetchone()
        if row is None:
            return None
        return AgentSecurityConfig.model_validate_json(row[0])

    def set(self, config: AgentSecurityConfig) -> None:
        now = datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO agent_security_config (
                    agent_name, config_json, updated_at
                ) VALUES (?, ?, ?)
                """,
                (config.agent_name, config.model_dump_json(), now),
            )
            self._conn.commit()

    def list(self) -> list[AgentSecurityConfig]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT config_json FROM agent_security_config ORDER BY agent_name"
            ).fetchall()
        return [AgentSecurityConfig.model_validate_json(r[0]) for r in rows]

    def delete(self, agent_name: str) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM agent_security_config WHERE agent_name = ?",
                (agent_name,),
            )
            self._conn.commit()
        return cursor.rowcount > 0
