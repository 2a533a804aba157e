"""
Error taxonomy for the Rule of Two security layer.

PolicyViolation is the expected, recoverable error that drives watch-mode
retry/escalation. Everything else signals a programmer or configuration
mistake and propagates to the caller unchanged.
"""

from typing import Any, Optional


class SecurityError(Exception):
    """Base class for all security layer errors."""


class UnknownFlagError(SecurityError, ValueError):
    """Raised when a flag outside the trifecta set is named."""

    def __init__(self, flag: Any) -> None:
        self.flag = flag
        super().__init__(
            f"Unknown trifecta flag: {flag!r} "
            "(expected untrusted_input, private_data or egress)"
        )


class FrozenStateError(SecurityError):
    """Raised when a frozen (terminal) TrifectaState is mutated."""

    def __init__(self, work_unit_id: str, operation: str = "modify") -> None:
        self.work_unit_id = work_unit_id
        self.operation = operation
        super().__init__(
            f"Cannot {operation} frozen trifecta state for work unit '{work_unit_id}'"
        )


class PolicyViolation(SecurityError):
    """Raised when enabling a flag would create the lethal trifecta.

    Attributes:
        flag: Flag that would have become the third enabled flag
        source: Source that attempted the enable
        current_state: Snapshot of the state at the moment of rejection
    """

    def __init__(
        self,
        flag: Any,
        source: Optional[str] = None,
        current_state: Optional[dict[str, Any]] = None,
        message: Optional[str] = None,
    ) -> None:
        self.flag = flag
        self.source = source
        self.current_state = dict(current_state or {})
        flag_name = getattr(flag, "value", flag)
        super().__init__(
            message
            or f"Rule of Two violation: enabling '{flag_name}' "
            f"(source: {source or 'unknown'}) would create lethal trifecta"
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise violation details for logs and comments."""
        return {
            "flag": getattr(self.flag, "value", self.flag),
            "source": self.source,
            "current_state": self.current_state,
            "message": str(self),
        }


class UnregisteredSecretError(SecurityError):
    """Raised when a secret name has no registry entry."""

    def __init__(self, secret_name: str) -> None:
        self.secret_name = secret_name
        super().__init__(
            f"Secret '{secret_name}' is not registered with the secrets proxy"
        )


class SecretsProxyError(SecurityError):
    """Raised on token lookup or validity failures."""

    def __init__(self, secret_name: str = "unknown", reason: str = "") -> None:
        self.secret_name = secret_name
        self.reason = reason
        super().__init__(f"Secrets proxy error for '{secret_name}': {reason}")


class TokenExpiredError(SecretsProxyError):
    """Raised when an expired token is exchanged."""

    def __init__(self, secret_name: str, expired_at: str) -> None:
        self.expired_at = expired_at
        super().__init__(
            secret_name=secret_name,
            reason=f"Token expired at {expired_at}",
        )


class TokenAlreadyUsedError(SecretsProxyError):
    """Raised when a single-use token is exchanged a second time."""

    def __init__(self, secret_name: str) -> None:
        super().__init__(
            secret_name=secret_name,
            reason="Token has already been redeemed",
        )


class ConfigurationError(SecurityError):
    """Raised when the security configuration cannot be loaded."""
