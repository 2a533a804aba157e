"""Security services container.

Built once by the orchestrator process at startup and passed to whatever
needs it; there are no module-level singletons. Each orchestrator task gets
its own WorkLoopAdapter over the shared enforcer and proxy.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

import structlog

from trifecta_guard.security.config import SecurityConfig, load_security_config
from trifecta_guard.security.enforcer import RuleOfTwoEnforcer
from trifecta_guard.security.secrets_proxy import SecretsProxy
from trifecta_guard.security.secrets_registry import SecretsRegistry
from trifecta_guard.security.watch_mode_handler import RepositoryClient, WatchModeHandler
from trifecta_guard.security.work_loop_adapter import WorkLoopAdapter

logger = structlog.get_logger(__name__)


@dataclass
class SecurityServices:
    """Shared security components for one orchestrator process."""

    project_dir: Path
    config: SecurityConfig
    registry: SecretsRegistry
    enforcer: RuleOfTwoEnforcer
    secrets_proxy: SecretsProxy

    @classmethod
    def build(
        cls,
        project_dir: str | Path,
        config: Optional[SecurityConfig | Mapping[str, Any]] = None,
    ) -> "SecurityServices":
        """Construct every shared component for a project.

        Args:
            project_dir: Project root
            config: Security config or raw mapping; loaded from
                ``<project>/.aidp/aidp.yml`` when omitted
        """
        project_dir = Path(project_dir)
        if config is None:
            resolved = load_security_config(project_dir)
        else:
            resolved = SecurityConfig.from_mapping(config)

        registry = SecretsRegistry(project_dir)
        services = cls(
            project_dir=project_dir,
            config=resolved,
            registry=registry,
            enforcer=RuleOfTwoEnforcer(
                enabled=resolved.rule_of_two.enabled,
                audit_log_limit=resolved.rule_of_two.audit_log_limit,
            ),
            secrets_proxy=SecretsProxy(registry, config=resolved.secrets_proxy),
        )

        logger.info(
            "security_services_started",
            project_dir=str(project_dir),
            rule_of_two_enabled=resolved.rule_of_two.enabled,
            registered_secrets=len(registry),
        )
        return services

    def new_adapter(self) -> WorkLoopAdapter:
        """Adapter for one orchestrator task."""
        return WorkLoopAdapter(
            project_dir=self.project_dir,
            enforcer=self.enforcer,
            secrets_proxy=self.secrets_proxy,
            config=self.config,
        )

    def new_watch_mode_handler(
        self, repository_client: RepositoryClient
    ) -> WatchModeHandler:
        return WatchModeHandler(repository_client, config=self.config.watch_mode)

    def unregister_secret(self, name: str) -> dict[str, Any]:
        """Remove a secret and revoke its outstanding tokens."""
        revoked = self.secrets_proxy.revoke_all_for_secret(name)
        removed = self.registry.unregister(name)
        return {"removed": removed, "revoked_tokens": revoked}

    def security_status(self) -> dict[str, Any]:
        """Aggregate posture: enforcement, registered secrets, tokens."""
        active_tokens = self.secrets_proxy.active_tokens_summary()
        return {
            "rule_of_two": {
                **self.enforcer.status_summary(),
                "policy": self.config.rule_of_two.policy,
            },
            "secrets_proxy": {
                "enabled": self.config.secrets_proxy.enabled,
                "token_ttl": self.config.secrets_proxy.token_ttl,
                "registered_secrets": len(self.registry),
                "active_tokens": len(active_tokens),
            },
        }

    def shutdown(self) -> None:
        """Drop all in-memory work units, tokens and logs."""
        self.enforcer.reset()
        self.secrets_proxy.reset()
        logger.info("security_services_stopped", project_dir=str(self.project_dir))
