"""Work loop adapter, the orchestrator's single entry point into the Rule of Two.

Tracks trifecta state for the work unit the orchestrator task is currently
processing and checks policy before each agent call:

    adapter = services.new_adapter()
    adapter.begin_work_unit("issue_42", context={"issue_number": 42})
    adapter.check_agent_call_allowed("git_push")
    adapter.end_work_unit()

Each orchestrator task should hold its own adapter; the enforcer and
secrets proxy behind it are shared.
"""

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional

import structlog

from trifecta_guard.security.config import SecurityConfig, load_security_config
from trifecta_guard.security.enforcer import PolicyDecision, RuleOfTwoEnforcer
from trifecta_guard.security.errors import PolicyViolation, UnregisteredSecretError
from trifecta_guard.security.secrets_proxy import SecretsProxy
from trifecta_guard.security.trifecta import TrifectaFlag, TrifectaState

logger = structlog.get_logger(__name__)

# Operations that constitute egress (external communication)
EGRESS_OPERATIONS = frozenset(
    {
        "git_push",
        "git_fetch",
        "api_call",
        "http_request",
        "webhook_send",
        "email_send",
        "file_upload",
        "pr_comment",
        "issue_comment",
    }
)
EGRESS_PREFIXES = ("git_", "api_", "http_")


def is_egress_operation(operation: str) -> bool:
    return operation in EGRESS_OPERATIONS or operation.startswith(EGRESS_PREFIXES)


def _nested_get(context: Mapping[str, Any], key: str, field: str) -> Any:
    value = context.get(key)
    if isinstance(value, Mapping):
        return value.get(field)
    return None


def detect_untrusted_sources(context: Mapping[str, Any]) -> list[str]:
    """Names of the untrusted input sources present in a work context."""
    sources = []

    if (
        context.get("issue_number")
        or context.get("issue_url")
        or _nested_get(context, "issue", "number")
    ):
        sources.append("github_issue")

    if (
        context.get("pr_number")
        or context.get("pr_url")
        or _nested_get(context, "pull_request", "number")
    ):
        sources.append("github_pr")

    if context.get("external_url") or context.get("user_url"):
        sources.append("external_url")

    # An empty payload still means the content came from outside
    if context.get("webhook_payload") is not None or context.get("webhook_event"):
        sources.append("webhook_payload")

    if str(context.get("workflow_type") or "") == "watch_mode":
        sources.append("watch_mode_untrusted_content")

    return sources


class WorkLoopAdapter:
    """Facade over RuleOfTwoEnforcer and SecretsProxy for one orchestrator task."""

    def __init__(
        self,
        project_dir: str | Path,
        enforcer: RuleOfTwoEnforcer,
        secrets_proxy: SecretsProxy,
        config: Optional[SecurityConfig | Mapping[str, Any]] = None,
    ) -> None:
        """Initialize adapter.

        Args:
            project_dir: Project root (used to load config when none is given)
            enforcer: Shared Rule of Two enforcer
            secrets_proxy: Shared secrets proxy
            config: Security config or raw mapping; loaded from the project
                when omitted
        """
        self.project_dir = Path(project_dir)
        if config is None:
            self.config = load_security_config(self.project_dir)
        else:
            self.config = SecurityConfig.from_mapping(config)
        self.enforcer = enforcer
        self.secrets_proxy = secrets_proxy

        self.current_work_unit_id: Optional[str] = None
        self.current_state: Optional[TrifectaState] = None

    @property
    def enabled(self) -> bool:
        return self.config.rule_of_two.enabled

    # ── Work unit lifecycle ───────────────────────────────────────

    def begin_work_unit(
        self,
        work_unit_id: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Optional[TrifectaState]:
        """Begin tracking a work unit and flag untrusted input from context.

        Args:
            work_unit_id: Work unit identifier
            context: Work context (issue_number, pr_number, external_url,
                webhook_payload, workflow_type, ...)

        Returns:
            The work unit's state, or None when security is disabled
        """
        if not self.enabled:
            return None

        self.current_work_unit_id = work_unit_id
        self.current_state = self.enforcer.begin_work_unit(work_unit_id)

        sources = detect_untrusted_sources(context or {})
        if sources:
            try:
                self.current_state.enable(
                    TrifectaFlag.UNTRUSTED_INPUT, source=", ".join(sources)
                )
            except PolicyViolation as e:
                # Only possible when resuming a unit that already holds two flags
                logger.error(
                    "unexpected_policy_violation",
                    work_unit_id=work_unit_id,
                    error=str(e),
                )
                raise
            logger.debug(
                "untrusted_input_detected",
                work_unit_id=work_unit_id,
                sources=sources,
            )

        logger.debug(
            "adapter_work_unit_started",
            work_unit_id=work_unit_id,
            initial_state=self.current_state.to_dict(),
        )
        return self.current_state

    def end_work_unit(self) -> Optional[dict[str, Any]]:
        """End the tracked work unit and return its final summary."""
        if not self.enabled or self.current_work_unit_id is None:
            return None

        summary = self.enforcer.end_work_unit(self.current_work_unit_id)
        self.current_work_unit_id = None
        self.current_state = None

        logger.debug("adapter_work_unit_ended", summary=summary)
        return summary

    # ── Policy checks ─────────────────────────────────────────────

    def check_agent_call_allowed(
        self,
        operation: str | Any,
        requires_credentials: bool = False,
    ) -> Optional[TrifectaState]:
        """Record the capabilities an agent call needs, enforcing the policy.

        Args:
            operation: Operation name (e.g. "git_push")
            requires_credentials: Whether the operation needs credentials

        Returns:
            The current state, or None when disabled or idle

        Raises:
            PolicyViolation: If the call would create the lethal trifecta
        """
        if not self.enabled or self.current_state is None:
            return None

        operation = str(getattr(operation, "value", operation))

        if is_egress_operation(operation):
            try:
                self.current_state.enable(
                    TrifectaFlag.EGRESS, source=f"agent_operation:{operation}"
                )
            except PolicyViolation as e:
                logger.warning(
                    "egress_blocked",
                    operation=operation,
                    reason=str(e),
                    current_state=self.current_state.to_dict(),
                )
                raise

        if requires_credentials:
            try:
                self.current_state.enable(
                    TrifectaFlag.PRIVATE_DATA, source=f"credential_access:{operation}"
                )
            except PolicyViolation as e:
                logger.warning(
                    "credential_access_blocked",
                    operation=operation,
                    reason=str(e),
                    current_state=self.current_state.to_dict(),
                )
                raise

        return self.current_state

    def request_credential(
        self, secret_name: str, scope: Optional[str] = None
    ) -> dict[str, Any]:
        """Obtain a credential token for a registered secret.

        When security is disabled the secret's current value is returned
        directly, tagged ``direct_access``.

        Raises:
            PolicyViolation: If private data access would create the trifecta
            UnregisteredSecretError: If the secret is not registered
        """
        if not self.enabled:
            env_var = self.secrets_proxy.registry.env_var_for(secret_name)
            if env_var is None:
                raise UnregisteredSecretError(secret_name)
            logger.debug("direct_credential_access", secret_name=secret_name)
            return {"token": os.environ.get(env_var), "direct_access": True}

        state = self.current_state
        if state is not None and state.would_create_trifecta(TrifectaFlag.PRIVATE_DATA):
            logger.warning(
                "credential_request_blocked",
                secret_name=secret_name,
                work_unit_id=self.current_work_unit_id,
            )
            raise PolicyViolation(
                flag=TrifectaFlag.PRIVATE_DATA,
                source=f"credential_request:{secret_name}",
                current_state=state.to_dict(),
                message=(
                    f"Cannot access credentials for '{secret_name}' - "
                    "would create lethal trifecta"
                ),
            )

        token = self.secrets_proxy.request_token(secret_name=secret_name, scope=scope)
        if state is not None:
            try:
                state.enable(TrifectaFlag.PRIVATE_DATA, source=f"secrets_proxy:{secret_name}")
            except Exception:
                self.secrets_proxy.revoke_token(token["token"])
                raise
        return token

    def would_allow(self, flag: TrifectaFlag | str) -> PolicyDecision:
        """Non-raising check of whether flag could be enabled now."""
        if not self.enabled:
            return PolicyDecision(allowed=True, reason="Security disabled")
        if self.current_state is None:
            return PolicyDecision(allowed=True, reason="No active work unit")

        if self.current_state.would_create_trifecta(flag):
            return PolicyDecision(
                allowed=False,
                reason="Would create lethal trifecta",
                current_state=self.current_state.to_dict(),
            )
        return PolicyDecision(
            allowed=True,
            reason="Operation allowed",
            enabled_count=self.current_state.enabled_count,
        )

    def status(self) -> dict[str, Any]:
        """Security status for display."""
        if not self.enabled:
            return {"enabled": False}

        return {
            "enabled": True,
            "active_work_unit": self.current_work_unit_id,
            "state": self.current_state.to_dict() if self.current_state else None,
            "status_string": (
                self.current_state.status_string
                if self.current_state
                else "No active work unit"
            ),
        }

    # ── Environment ───────────────────────────────────────────────

    def sanitized_environment(self) -> dict[str, str]:
        return self.secrets_proxy.sanitized_environment()

    @contextmanager
    def sanitized_env(self) -> Iterator[None]:
        with self.secrets_proxy.sanitized_env():
            yield
