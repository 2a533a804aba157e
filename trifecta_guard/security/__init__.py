"""
Rule of Two security layer for the agent work loop.

This package keeps autonomous agents away from the "lethal trifecta":
- Trifecta state (per work unit capability flags with violation detection)
- Rule of Two enforcer (concurrent work units and audit log)
- Secrets registry (secret name -> environment variable, persisted per project)
- Secrets proxy (short-lived tokens instead of raw credentials)
- Work loop adapter (the orchestrator's integration facade)
- Watch mode handler (bounded retry, then escalate to a human)
"""

from trifecta_guard.security.config import (
    RuleOfTwoConfig,
    SecretsProxyConfig,
    SecurityConfig,
    WatchModeConfig,
    load_security_config,
)
from trifecta_guard.security.enforcer import PolicyDecision, RuleOfTwoEnforcer
from trifecta_guard.security.errors import (
    ConfigurationError,
    FrozenStateError,
    PolicyViolation,
    SecretsProxyError,
    SecurityError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    UnknownFlagError,
    UnregisteredSecretError,
)
from trifecta_guard.security.secrets_proxy import ProxyToken, SecretsProxy
from trifecta_guard.security.secrets_registry import SecretRegistration, SecretsRegistry
from trifecta_guard.security.services import SecurityServices
from trifecta_guard.security.trifecta import TrifectaFlag, TrifectaState
from trifecta_guard.security.watch_mode_handler import (
    RecoveryAction,
    RecoveryResult,
    RepositoryClient,
    WatchModeHandler,
)
from trifecta_guard.security.work_loop_adapter import WorkLoopAdapter

__all__ = [
    # Config
    "RuleOfTwoConfig",
    "SecretsProxyConfig",
    "WatchModeConfig",
    "SecurityConfig",
    "load_security_config",
    # Errors
    "SecurityError",
    "UnknownFlagError",
    "FrozenStateError",
    "PolicyViolation",
    "UnregisteredSecretError",
    "SecretsProxyError",
    "TokenExpiredError",
    "TokenAlreadyUsedError",
    "ConfigurationError",
    # Trifecta
    "TrifectaFlag",
    "TrifectaState",
    "PolicyDecision",
    "RuleOfTwoEnforcer",
    # Secrets
    "SecretRegistration",
    "SecretsRegistry",
    "ProxyToken",
    "SecretsProxy",
    # Integration
    "WorkLoopAdapter",
    "RecoveryAction",
    "RecoveryResult",
    "RepositoryClient",
    "WatchModeHandler",
    "SecurityServices",
]
