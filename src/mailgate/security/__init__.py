"""Security policies, per-agent configuration, and the enforcing security layer."""

from mailgate.security.content import ContentScanResult, scan_content
from mailgate.security.defaults import AgentsFile, load_agents_file, seed_agent_configs
from mailgate.security.layer import EmailCommand, SecureCommand, SecurityLayer
from mailgate.security.models import (
    AgentSecurityConfig,
    AgentSecurityConfigUpdate,
    BulkUpdateResult,
    PolicyChain,
    parse_policy_chain,
)
from mailgate.security.policies import (
    ChainOutcome,
    PolicyDependencies,
    evaluate_policy,
    run_policy_chain,
)
from mailgate.security.rate_limit import RateLimitCounter
from mailgate.security.store import (
    ConfigStore,
    InMemoryConfigStore,
    SqliteConfigStore,
    init_config_db,
)
from mailgate.security.trust import (
    HttpTrustStore,
    InMemoryTrustStore,
    TrustStore,
    lookup_trust_status,
)

__all__ = [
    "AgentSecurityConfig",
    "AgentSecurityConfigUpdate",
    "AgentsFile",
    "BulkUpdateResult",
    "ChainOutcome",
    "ConfigStore",
    "ContentScanResult",
    "EmailCommand",
    "HttpTrustStore",
    "InMemoryConfigStore",
    "InMemoryTrustStore",
    "PolicyChain",
    "PolicyDependencies",
    "RateLimitCounter",
    "SecureCommand",
    "SecurityLayer",
    "SqliteConfigStore",
    "TrustStore",
    "evaluate_policy",
    "init_config_db",
    "load_agents_file",
    "lookup_trust_status",
    "parse_policy_chain",
    "run_policy_chain",
    "scan_content",
    "seed_agent_configs",
]
