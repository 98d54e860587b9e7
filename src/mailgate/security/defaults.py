"""Load agent mailboxes and seed security configuration from YAML.

The packaged ``agents.yaml`` is used unless a deployment points
``AGENTS_CONFIG_PATH`` at its own file.  Seed configurations are only
written for agents the config store does not already know, so operator
changes made through the admin API survive a restart.
"""

from __future__ import annotations

from pathlib import Path

import structlog
import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, Field

from mailgate.routing.router import RoutingAddresses
from mailgate.security.layer import SecurityLayer
from mailgate.security.models import AgentSecurityConfigUpdate

logger = structlog.get_logger()

DEFAULT_AGENTS_PATH = Path(__file__).resolve().parent / "agents.yaml"


class MailboxConfig(BaseModel):
    """Agent mailboxes as local parts on the service domain."""

    intelligence_tags: list[str] = Field(default_factory=lambda: ["polly", "t5t"])
    task_tags: list[str] = Field(default_factory=lambda: ["todo", "alex", "faq"])
    intelligence_mailboxes: list[str] = Field(default_factory=list)
    task_mailboxes: list[str] = Field(default_factory=list)
    agent_mailboxes: list[str] = Field(default_factory=list)


class AgentsFile(BaseModel):
    """Parsed contents of an agents YAML file."""

    routing: MailboxConfig = Field(default_factory=MailboxConfig)
    aliases: dict[str, str] = Field(default_factory=dict)
    agents: list[AgentSecurityConfigUpdate] = Field(default_factory=list)

    def routing_addresses(self, service_domain: str) -> RoutingAddresses:
        """Expand the mailboxes into full addresses on *service_domain*."""
        domain = service_domain.strip().lower()

        def _on_domain(mailboxes: list[str]) -> list[str]:
            return [f"{m}@{domain}" for m in mailboxes]

        return RoutingAddresses(
            service_domain=domain,
            intelligence_tags=self.routing.intelligence_tags,
            task_tags=self.routing.task_tags,
            intelligence_addresses=_on_domain(self.routing.intelligence_mailboxes),
            task_addresses=_on_domain(self.routing.task_mailboxes),
            agent_addresses=_on_domain(self.routing.agent_mailboxes),
        )

    def agent_for_mailbox(self, mailbox: str) -> str:
        """Return the agent serving *mailbox* (a local part or tag)."""
        key = mailbox.lower()
        return self.aliases.get(key, key)


def load_agents_file(path: Path = DEFAULT_AGENTS_PATH) -> AgentsFile:
    """Load and validate an agents YAML file.

    Args:
        path: Path to the YAML file.

    Returns:
        The validated file.  An empty file yields all defaults.

    Raises:
        FileNotFoundError: If *path* does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        pydantic.ValidationError: If the contents do not match the schema.
    """
    if not path.exists():
        raise FileNotFoundError(f"Agents config not found: {path}")

    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        return AgentsFile()
    return AgentsFile.model_validate(raw)


def seed_agent_configs(layer: SecurityLayer, agents_file: AgentsFile) -> list[str]:
    """Write seed configurations for agents the layer has not seen yet.

    Returns:
        Names of the agents that were seeded.
    """
    seeded: list[str] = []
    for update in agents_file.agents:
        if layer.get_agent_config(update.agent_name) is not None:
            continue
        layer.set_agent_config(update, actor="seed")
        seeded.append(update.agent_name)
    logger.info("agent_configs_seeded", agents=seeded)
    return seeded
