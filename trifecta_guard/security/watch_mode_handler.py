"""Watch mode handler: fail-forward recovery for Rule of Two violations.

When a violation occurs during unattended operation the handler does not
crash the run. It signals the orchestrator to retry with an alternative
approach up to ``max_retry_attempts`` times, then escalates to a human:

    first attempt -> retrying (1..max) -> exhausted -> failed

On failure a security-incident comment and a "needs input" label are posted
to the issue or pull request through the repository client, and the retry
counter for the work unit is cleared.

Mitigation strategies are extension points. The built-in ones only log the
attempt; none of them recovers on its own.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Protocol

import structlog
from pydantic import BaseModel, Field

from trifecta_guard.security.config import WatchModeConfig
from trifecta_guard.security.errors import PolicyViolation
from trifecta_guard.security.trifecta import TrifectaFlag

logger = structlog.get_logger(__name__)


class RepositoryClient(Protocol):
    """Issue/PR comment and label API used on escalation."""

    def add_issue_comment(self, number: int, body: str) -> Any: ...

    def add_pr_comment(self, number: int, body: str) -> Any: ...

    def add_labels(self, number: int, labels: list[str]) -> Any: ...


class RecoveryAction(str, Enum):
    """What the orchestrator should do after a violation."""

    RETRY = "retry"
    FAIL = "fail"
    RECOVERED = "recovered"


class RecoveryResult(BaseModel):
    """Outcome of handling a violation.

    Attributes:
        recovered: True if a mitigation strategy resolved the violation
        action: Next step for the orchestrator
        message: Human-readable explanation
        retry_count: Attempts so far for this work unit (retry/recovered)
        needs_input: True when a human must intervene
        strategy: Mitigation strategy that was tried
    """

    recovered: bool
    action: RecoveryAction
    message: str
    retry_count: Optional[int] = None
    needs_input: bool = False
    strategy: Optional[str] = None


@dataclass
class MitigationStrategy:
    """An alternative approach to try for a violation."""

    name: str
    description: str
    action: str


@dataclass
class StrategyOutcome:
    """Result of executing a mitigation strategy."""

    recovered: bool
    strategy: Optional[str]
    reason: str = ""


StrategyHandler = Callable[[PolicyViolation, Mapping[str, Any]], StrategyOutcome]

FLAG_STRATEGIES: dict[TrifectaFlag, MitigationStrategy] = {
    TrifectaFlag.PRIVATE_DATA: MitigationStrategy(
        name="use_secrets_proxy",
        description="Route credential access through secrets proxy",
        action="convert_to_proxy_access",
    ),
    TrifectaFlag.EGRESS: MitigationStrategy(
        name="defer_egress",
        description="Queue egress operation for later execution",
        action="queue_for_later",
    ),
    TrifectaFlag.UNTRUSTED_INPUT: MitigationStrategy(
        name="sanitize_input",
        description="Sanitize untrusted input before processing",
        action="sanitize",
    ),
}

GENERIC_STRATEGIES = [
    MitigationStrategy(
        name="use_deterministic_unit",
        description="Convert to deterministic unit (no agent call)",
        action="convert_to_deterministic",
    ),
    MitigationStrategy(
        name="request_trusted_context",
        description="Request elevated trust context",
        action="request_trust",
    ),
]


class WatchModeHandler:
    """Bounded-retry, fail-forward handling of policy violations."""

    def __init__(
        self,
        repository_client: RepositoryClient,
        config: Optional[WatchModeConfig | Mapping[str, Any]] = None,
    ) -> None:
        """Initialize handler.

        Args:
            repository_client: Client used to comment and label on escalation
            config: Watch mode settings or a raw mapping with string keys
        """
        self.repository_client = repository_client
        self.config = WatchModeConfig.from_mapping(config)

        self._retry_counts: dict[str, int] = {}
        self._lock = threading.Lock()
        self._strategy_handlers: dict[str, StrategyHandler] = {
            "convert_to_proxy_access": self._convert_to_proxy_access,
            "queue_for_later": self._queue_for_later,
            "sanitize": self._not_implemented("Input sanitization not yet implemented"),
            "convert_to_deterministic": self._not_implemented(
                "Deterministic conversion not yet implemented"
            ),
            "request_trust": self._not_implemented(
                "Trust elevation requires manual approval"
            ),
        }

    @property
    def enabled(self) -> bool:
        return self.config.fail_forward_enabled

    @property
    def max_retry_attempts(self) -> int:
        return self.config.max_retry_attempts

    @property
    def needs_input_label(self) -> str:
        return self.config.needs_input_label

    def register_strategy(self, action: str, handler: StrategyHandler) -> None:
        """Install or replace the handler for a mitigation action."""
        with self._lock:
            self._strategy_handlers[action] = handler
        logger.debug("mitigation_strategy_registered", action=action)

    # ── Violation handling ────────────────────────────────────────

    def handle_violation(
        self,
        violation: PolicyViolation,
        context: Mapping[str, Any],
    ) -> RecoveryResult:
        """Decide whether to retry or escalate a violation.

        Args:
            violation: The violation that occurred
            context: Operation context: work_unit_id, issue_number or
                pr_number, operation

        Returns:
            RecoveryResult telling the orchestrator what to do next
        """
        work_unit_id = str(context.get("work_unit_id") or "unknown")

        with self._lock:
            retry_count = self._retry_counts.get(work_unit_id, 0) + 1
            self._retry_counts[work_unit_id] = retry_count

        logger.debug(
            "handling_violation",
            work_unit_id=work_unit_id,
            flag=_flag_name(violation.flag),
            source=violation.source,
            attempt=retry_count,
        )

        if retry_count <= self.max_retry_attempts:
            outcome = self._attempt_fail_forward(violation, context, retry_count)

            if outcome.recovered:
                logger.info(
                    "violation_recovered",
                    work_unit_id=work_unit_id,
                    attempt=retry_count,
                    strategy=outcome.strategy,
                )
                return RecoveryResult(
                    recovered=True,
                    action=RecoveryAction.RECOVERED,
                    message=f"Recovered using strategy '{outcome.strategy}'",
                    retry_count=retry_count,
                    strategy=outcome.strategy,
                )

            logger.debug(
                "fail_forward_attempt_failed",
                work_unit_id=work_unit_id,
                attempt=retry_count,
                max_attempts=self.max_retry_attempts,
            )
            return RecoveryResult(
                recovered=False,
                action=RecoveryAction.RETRY,
                message=(
                    "Security violation, attempting alternative approach "
                    f"({retry_count}/{self.max_retry_attempts})"
                ),
                retry_count=retry_count,
                strategy=outcome.strategy,
            )

        logger.warning(
            "max_retries_exceeded",
            work_unit_id=work_unit_id,
            retry_count=retry_count,
        )
        self._post_needs_input(violation, context)
        self.reset_retry_count(work_unit_id)

        return RecoveryResult(
            recovered=False,
            action=RecoveryAction.FAIL,
            message=(
                "Security policy violation cannot be resolved automatically. "
                "Manual intervention required."
            ),
            needs_input=True,
        )

    def reset_retry_count(self, work_unit_id: str) -> None:
        """Clear the retry counter for one work unit."""
        with self._lock:
            self._retry_counts.pop(work_unit_id, None)

    def retry_count(self, work_unit_id: str) -> int:
        with self._lock:
            return self._retry_counts.get(work_unit_id, 0)

    # ── Mitigation strategies ─────────────────────────────────────

    def build_mitigation_strategies(
        self, violation: PolicyViolation
    ) -> list[MitigationStrategy]:
        """Ordered strategies for a violation: flag-specific first."""
        strategies = []
        try:
            flag = TrifectaFlag.coerce(violation.flag)
        except ValueError:
            flag = None
        if flag is not None:
            strategies.append(FLAG_STRATEGIES[flag])
        strategies.extend(GENERIC_STRATEGIES)
        return strategies

    def _attempt_fail_forward(
        self,
        violation: PolicyViolation,
        context: Mapping[str, Any],
        attempt_number: int,
    ) -> StrategyOutcome:
        strategies = self.build_mitigation_strategies(violation)
        if attempt_number > len(strategies):
            return StrategyOutcome(recovered=False, strategy=None)

        strategy = strategies[attempt_number - 1]
        logger.debug("trying_strategy", strategy=strategy.name, attempt=attempt_number)

        with self._lock:
            handler = self._strategy_handlers.get(strategy.action)
        if handler is None:
            return StrategyOutcome(
                recovered=False, strategy=strategy.name, reason="Unknown strategy"
            )

        outcome = handler(violation, context)
        if outcome.strategy is None:
            outcome.strategy = strategy.name
        return outcome

    @staticmethod
    def _convert_to_proxy_access(
        violation: PolicyViolation, context: Mapping[str, Any]
    ) -> StrategyOutcome:
        return StrategyOutcome(
            recovered=False,
            strategy="use_secrets_proxy",
            reason="Proxy conversion not yet implemented",
        )

    @staticmethod
    def _queue_for_later(
        violation: PolicyViolation, context: Mapping[str, Any]
    ) -> StrategyOutcome:
        logger.info(
            "egress_queued",
            work_unit_id=context.get("work_unit_id"),
            operation=context.get("operation"),
        )
        return StrategyOutcome(
            recovered=False,
            strategy="defer_egress",
            reason="Egress queued for manual review",
        )

    @staticmethod
    def _not_implemented(reason: str) -> StrategyHandler:
        def handler(violation: PolicyViolation, context: Mapping[str, Any]) -> StrategyOutcome:
            return StrategyOutcome(recovered=False, strategy=None, reason=reason)

        return handler

    # ── Escalation ────────────────────────────────────────────────

    def _post_needs_input(
        self, violation: PolicyViolation, context: Mapping[str, Any]
    ) -> None:
        """Comment on the PR (preferred) or issue and apply the label."""
        pr_number = context.get("pr_number")
        issue_number = context.get("issue_number")
        is_pr = pr_number is not None
        number = pr_number if is_pr else issue_number

        if number is None:
            logger.info(
                "needs_input_not_posted",
                work_unit_id=context.get("work_unit_id"),
                reason="no issue or pull request number",
            )
            return

        body = self.build_security_comment(violation, context)
        try:
            if is_pr:
                self.repository_client.add_pr_comment(number, body)
            else:
                self.repository_client.add_issue_comment(number, body)
            self.repository_client.add_labels(number, [self.needs_input_label])
        except Exception as e:
            logger.error("failed_to_post_needs_input", number=number, error=str(e))
            return

        logger.info(
            "needs_input_posted",
            number=number,
            is_pr=is_pr,
            label=self.needs_input_label,
        )

    def build_security_comment(
        self, violation: PolicyViolation, context: Mapping[str, Any]
    ) -> str:
        """Markdown body explaining the violation to a human."""
        subject = "pull request" if context.get("pr_number") is not None else "issue"
        return "\n".join(
            [
                "## 🛡️ Security Policy Violation - Manual Intervention Required",
                "",
                f"A **Rule of Two security violation** blocked work on this {subject}.",
                "",
                "### What happened",
                "",
                "The requested operation would have enabled the \"lethal trifecta\":",
                "- **Untrusted input** - processing content from external sources",
                "- **Private data access** - access to secrets or credentials",
                "- **Egress capability** - ability to communicate externally",
                "",
                "With all three active, a compromised prompt could exfiltrate sensitive data.",
                "",
                "### Violation details",
                "",
                f"- **Blocked flag**: `{_flag_name(violation.flag)}`",
                f"- **Source**: {violation.source or 'unknown'}",
                f"- **Work unit**: {context.get('work_unit_id') or 'unknown'}",
                "",
                "### Current state",
                self._format_state(violation.current_state),
                "",
                "### What you can do",
                "",
                "1. **Use the Secrets Proxy** - register secrets and use proxy tokens "
                "instead of direct credential access",
                "2. **Sanitize input** - mark the input source as trusted (if appropriate)",
                "3. **Defer egress** - queue the external communication for manual execution",
                "4. **Review and retry** - change the request to avoid the conflict",
                "",
                "---",
                f"*Remove the `{self.needs_input_label}` label after resolving.*",
            ]
        )

    @staticmethod
    def _format_state(state: Optional[Mapping[str, Any]]) -> str:
        if not isinstance(state, Mapping) or not state:
            return "No state available"

        lines = []
        for flag in TrifectaFlag:
            if state.get(flag.value):
                source = state.get(f"{flag.value}_source") or "unknown source"
                lines.append(f"- `{flag.value}`: ✓ enabled ({source})")
            else:
                lines.append(f"- `{flag.value}`: ✗ disabled")
        return "\n".join(lines)


def _flag_name(flag: Any) -> str:
    return str(getattr(flag, "value", flag))
