"""Rule of Two enforcer. Owns the trifecta state of every active work unit.

The enforcer is built once per orchestrator process and shared by every
work-unit task. All registry mutations happen under a lock so that
concurrent work units never corrupt each other's entries.
"""

import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

import structlog

from trifecta_guard.security.trifecta import TrifectaFlag, TrifectaState

logger = structlog.get_logger(__name__)

DEFAULT_AUDIT_LOG_LIMIT = 1000


@dataclass
class PolicyDecision:
    """Verdict on whether a flag may be enabled.

    Attributes:
        allowed: True if enabling the flag would not create the trifecta
        reason: Human-readable explanation
        current_state: State snapshot, included when the flag is refused
        enabled_count: Flags already enabled, included when allowed
    """

    allowed: bool
    reason: str
    current_state: Optional[dict[str, Any]] = None
    enabled_count: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"allowed": self.allowed, "reason": self.reason}
        if self.current_state is not None:
            result["current_state"] = self.current_state
        if self.enabled_count is not None:
            result["enabled_count"] = self.enabled_count
        return result


class RuleOfTwoEnforcer:
    """Registry of live TrifectaState objects keyed by work unit id."""

    def __init__(
        self,
        enabled: bool = True,
        audit_log_limit: int = DEFAULT_AUDIT_LOG_LIMIT,
    ) -> None:
        """Initialize enforcer.

        Args:
            enabled: Whether Rule of Two enforcement is switched on (reported
                in status_summary)
            audit_log_limit: Maximum completed work units kept in the audit log
        """
        self.enabled = enabled
        self._states: dict[str, TrifectaState] = {}
        self._audit_log: deque[dict[str, Any]] = deque(maxlen=audit_log_limit)
        self._lock = threading.RLock()

    # ── Lifecycle ─────────────────────────────────────────────────

    def begin_work_unit(self, work_unit_id: Optional[str] = None) -> TrifectaState:
        """Start tracking a work unit, or return its state if already active.

        Args:
            work_unit_id: Work unit identifier (generated if omitted)

        Returns:
            The TrifectaState for this work unit
        """
        with self._lock:
            if work_unit_id is not None and work_unit_id in self._states:
                logger.debug("work_unit_already_active", work_unit_id=work_unit_id)
                return self._states[work_unit_id]

            state = TrifectaState(work_unit_id)
            self._states[state.work_unit_id] = state

        logger.info("work_unit_started", work_unit_id=state.work_unit_id)
        return state

    def end_work_unit(self, work_unit_id: str) -> Optional[dict[str, Any]]:
        """Stop tracking a work unit and archive its final state.

        Returns:
            The archived summary, or None if the work unit is not active
        """
        with self._lock:
            state = self._states.pop(work_unit_id, None)
            if state is None:
                logger.debug("end_unknown_work_unit", work_unit_id=work_unit_id)
                return None

            state.freeze()
            summary = self._build_summary(state)
            self._audit_log.append(summary)

        logger.info(
            "work_unit_ended",
            work_unit_id=work_unit_id,
            enabled_count=summary["enabled_count"],
            violation_count=summary["violation_count"],
        )
        if summary["lethal_trifecta_reached"]:
            logger.error("lethal_trifecta_reached", work_unit_id=work_unit_id)

        return summary

    @contextmanager
    def work_unit(self, work_unit_id: Optional[str] = None) -> Iterator[TrifectaState]:
        """Track a work unit for the duration of a with-block.

        The work unit is ended on every exit path, including exceptions.

        Example:
            with enforcer.work_unit("issue-42") as state:
                state.enable("untrusted_input", source="github_issue")
        """
        state = self.begin_work_unit(work_unit_id)
        try:
            yield state
        finally:
            self.end_work_unit(state.work_unit_id)

    # ── Lookup ────────────────────────────────────────────────────

    def state_for(self, work_unit_id: str) -> Optional[TrifectaState]:
        with self._lock:
            return self._states.get(work_unit_id)

    def is_active(self, work_unit_id: str) -> bool:
        with self._lock:
            return work_unit_id in self._states

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._states)

    # ── Enforcement ───────────────────────────────────────────────

    def would_allow(
        self, work_unit_id: str, flag: TrifectaFlag | str
    ) -> PolicyDecision:
        """Check, without mutating, whether flag could be enabled.

        An unknown work unit has nothing to violate and is always allowed.
        """
        flag = TrifectaFlag.coerce(flag)
        state = self.state_for(work_unit_id)
        if state is None:
            return PolicyDecision(allowed=True, reason="No active work unit")

        if state.would_create_trifecta(flag):
            return PolicyDecision(
                allowed=False,
                reason="Would create lethal trifecta",
                current_state=state.to_dict(),
            )
        return PolicyDecision(
            allowed=True,
            reason="Operation allowed",
            enabled_count=state.enabled_count,
        )

    def enforce(
        self,
        work_unit_id: str,
        flag: TrifectaFlag | str,
        source: Optional[str] = None,
    ) -> TrifectaState:
        """Enable flag on a work unit, beginning the unit if needed.

        Raises:
            PolicyViolation: If the flag would complete the trifecta
        """
        with self._lock:
            state = self._states.get(work_unit_id)
        if state is None:
            logger.debug("enforce_implicit_begin", work_unit_id=work_unit_id)
            state = self.begin_work_unit(work_unit_id)

        return state.enable(flag, source=source)

    # ── Audit & status ────────────────────────────────────────────

    def audit_log(self, limit: Optional[int] = None) -> list[dict[str, Any]]:
        """Completed work unit summaries, oldest first."""
        with self._lock:
            entries = list(self._audit_log)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def status_summary(self) -> dict[str, Any]:
        with self._lock:
            return {
                "enabled": self.enabled,
                "active_work_units": len(self._states),
                "completed_work_units": len(self._audit_log),
            }

    def reset(self) -> None:
        """Drop all active work units and the audit log."""
        with self._lock:
            active = len(self._states)
            self._states.clear()
            self._audit_log.clear()
        logger.info("enforcer_reset", dropped_work_units=active)

    @staticmethod
    def _build_summary(state: TrifectaState) -> dict[str, Any]:
        snapshot = state.to_dict()
        return {
            "work_unit_id": state.work_unit_id,
            "untrusted_input": snapshot["untrusted_input"],
            "untrusted_input_source": snapshot["untrusted_input_source"],
            "private_data": snapshot["private_data"],
            "private_data_source": snapshot["private_data_source"],
            "egress": snapshot["egress"],
            "egress_source": snapshot["egress_source"],
            "enabled_count": snapshot["enabled_count"],
            "lethal_trifecta_reached": state.lethal_trifecta_reached,
            "violation_count": state.violation_count,
            "started_at": state.created_at.isoformat(),
            "ended_at": datetime.now(timezone.utc).isoformat(),
        }
