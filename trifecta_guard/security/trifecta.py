"""Per work unit capability tracking.

A work unit may hold at most two of three capabilities at any instant:

    untrusted_input   it reads attacker-controllable content
    private_data      it can reach secrets or credentials
    egress            it can talk to the outside world (network, VCS push)

All three together form the "lethal trifecta": a prompt-injected agent could
read a secret and exfiltrate it. TrifectaState refuses the enable call that
would complete the set.
"""

import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

import structlog

from trifecta_guard.security.errors import (
    FrozenStateError,
    PolicyViolation,
    UnknownFlagError,
)

logger = structlog.get_logger(__name__)


class TrifectaFlag(str, Enum):
    """The three capabilities tracked per work unit."""

    UNTRUSTED_INPUT = "untrusted_input"
    PRIVATE_DATA = "private_data"
    EGRESS = "egress"

    @classmethod
    def coerce(cls, flag: Any) -> "TrifectaFlag":
        """Resolve an enum member or its string value.

        Raises:
            UnknownFlagError: If the value names no flag
        """
        if isinstance(flag, cls):
            return flag
        try:
            return cls(str(flag))
        except ValueError:
            raise UnknownFlagError(flag) from None


class TrifectaState:
    """Capability record for a single work unit.

    Attributes:
        work_unit_id: Identifier of the work unit
        created_at: When tracking started
    """

    def __init__(self, work_unit_id: Optional[str] = None) -> None:
        self.work_unit_id = work_unit_id or f"wu_{uuid4().hex[:12]}"
        self.created_at = datetime.now(timezone.utc)

        self._flags: dict[TrifectaFlag, bool] = {flag: False for flag in TrifectaFlag}
        self._sources: dict[TrifectaFlag, Optional[str]] = {
            flag: None for flag in TrifectaFlag
        }
        self._frozen = False
        self._violation_count = 0
        self._lock = threading.RLock()

    # ── Flag accessors ────────────────────────────────────────────

    @property
    def untrusted_input(self) -> bool:
        return self._flags[TrifectaFlag.UNTRUSTED_INPUT]

    @property
    def private_data(self) -> bool:
        return self._flags[TrifectaFlag.PRIVATE_DATA]

    @property
    def egress(self) -> bool:
        return self._flags[TrifectaFlag.EGRESS]

    def is_enabled(self, flag: TrifectaFlag | str) -> bool:
        return self._flags[TrifectaFlag.coerce(flag)]

    def source_for(self, flag: TrifectaFlag | str) -> Optional[str]:
        return self._sources[TrifectaFlag.coerce(flag)]

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def violation_count(self) -> int:
        """Number of enable calls rejected for this work unit."""
        return self._violation_count

    # ── Mutation ──────────────────────────────────────────────────

    def enable(
        self, flag: TrifectaFlag | str, source: Optional[str] = None
    ) -> "TrifectaState":
        """Enable a capability flag.

        Args:
            flag: Flag to enable
            source: Why the flag is being enabled (e.g. "github_issue")

        Returns:
            self, for chaining

        Raises:
            UnknownFlagError: If flag is not one of the three
            FrozenStateError: If the state is frozen
            PolicyViolation: If the flag would complete the trifecta
        """
        flag = TrifectaFlag.coerce(flag)

        with self._lock:
            if self._frozen:
                raise FrozenStateError(self.work_unit_id, operation="enable")

            if self.would_create_trifecta(flag):
                self._violation_count += 1
                snapshot = self.to_dict()
                logger.warning(
                    "trifecta_enable_rejected",
                    work_unit_id=self.work_unit_id,
                    flag=flag.value,
                    source=source,
                    enabled_count=snapshot["enabled_count"],
                )
                raise PolicyViolation(
                    flag=flag,
                    source=source,
                    current_state=snapshot,
                )

            self._flags[flag] = True
            self._sources[flag] = source
        logger.debug(
            "trifecta_flag_enabled",
            work_unit_id=self.work_unit_id,
            flag=flag.value,
            source=source,
        )
        return self

    def disable(self, flag: TrifectaFlag | str) -> "TrifectaState":
        """Clear a capability flag and its source. No-op if already clear.

        Raises:
            UnknownFlagError: If flag is not one of the three
            FrozenStateError: If the state is frozen
        """
        flag = TrifectaFlag.coerce(flag)

        with self._lock:
            if self._frozen:
                raise FrozenStateError(self.work_unit_id, operation="disable")
            if not self._flags[flag]:
                return self

            self._flags[flag] = False
            self._sources[flag] = None

        logger.debug(
            "trifecta_flag_disabled",
            work_unit_id=self.work_unit_id,
            flag=flag.value,
        )
        return self

    def freeze(self) -> "TrifectaState":
        """Mark the state terminal. Later enable/disable calls fail."""
        with self._lock:
            self._frozen = True
        return self

    # ── Queries ───────────────────────────────────────────────────

    def would_create_trifecta(self, flag: TrifectaFlag | str) -> bool:
        """True iff flag is off and the other two flags are both on."""
        flag = TrifectaFlag.coerce(flag)
        with self._lock:
            if self._flags[flag]:
                return False
            return all(
                enabled for other, enabled in self._flags.items() if other is not flag
            )

    @property
    def is_lethal_trifecta(self) -> bool:
        """All three flags on at once.

        enable() rejects the transition into this state, so this only turns
        true when flags were set some other way.
        """
        return all(self._flags.values())

    @property
    def lethal_trifecta_reached(self) -> bool:
        """Alias of is_lethal_trifecta used in audit summaries."""
        return self.is_lethal_trifecta

    @property
    def enabled_count(self) -> int:
        return sum(1 for enabled in self._flags.values() if enabled)

    @property
    def enabled_flags(self) -> list[TrifectaFlag]:
        return [flag for flag, enabled in self._flags.items() if enabled]

    @property
    def status_string(self) -> str:
        count = self.enabled_count
        if count == 0:
            return "No flags enabled"
        names = ", ".join(flag.value for flag in self.enabled_flags)
        return f"{count} of 3 flags enabled ({names})"

    def to_dict(self) -> dict[str, Any]:
        """Flattened snapshot of the state."""
        with self._lock:
            snapshot: dict[str, Any] = {"work_unit_id": self.work_unit_id}
            for flag in TrifectaFlag:
                snapshot[flag.value] = self._flags[flag]
                snapshot[f"{flag.value}_source"] = self._sources[flag]
            snapshot["enabled_count"] = self.enabled_count
            snapshot["lethal_trifecta"] = self.is_lethal_trifecta
            snapshot["frozen"] = self._frozen
            return snapshot

    def __repr__(self) -> str:
        return (
            f"TrifectaState(work_unit_id={self.work_unit_id!r}, "
            f"status={self.status_string!r}, frozen={self._frozen})"
        )
