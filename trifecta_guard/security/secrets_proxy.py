"""
Secrets proxy: brokers credential access through short-lived tokens.

Agents never receive raw secrets. Instead:

1. A secret is registered (name -> environment variable) in the registry.
2. The agent work loop requests a token for it, optionally scoped.
3. The token is exchanged for the live value only inside the isolated
   execution context that needs it, before the token expires.

Tokens live in memory only. Agent subprocesses run with every registered
environment variable stripped from their environment.
"""

import os
import secrets
import threading
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Mapping, Optional

import structlog
from pydantic import BaseModel, Field

from trifecta_guard.security.config import SecretsProxyConfig
from trifecta_guard.security.errors import (
    SecretsProxyError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    UnregisteredSecretError,
)
from trifecta_guard.security.secrets_registry import SecretsRegistry

logger = structlog.get_logger(__name__)

TOKEN_PREFIX = "aidp_proxy_"

# Serializes os.environ mutation across every proxy in the process.
_ENVIRON_LOCK = threading.RLock()


class ProxyToken(BaseModel):
    """Metadata for an issued token. Never contains the secret value.

    Attributes:
        token: Opaque bearer string
        secret_name: Registered secret this token redeems
        scope: Intended use (for audit)
        env_var: Environment variable resolved at exchange time
        issued_at: Issue timestamp
        expires_at: Expiry timestamp
        used: Set on first successful exchange
        used_at: Last successful exchange
    """

    token: str = Field(..., description="Opaque bearer token")
    secret_name: str = Field(..., description="Registered secret name")
    scope: Optional[str] = Field(default=None, description="Operation scope")
    env_var: str = Field(..., description="Backing environment variable")
    issued_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Issue timestamp",
    )
    expires_at: datetime = Field(..., description="Expiry timestamp")
    used: bool = Field(default=False, description="Redeemed at least once")
    used_at: Optional[datetime] = Field(default=None, description="Last redemption")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) > self.expires_at


class SecretsProxy:
    """Issues, redeems and revokes ephemeral secret tokens."""

    def __init__(
        self,
        registry: SecretsRegistry,
        config: Optional[SecretsProxyConfig] = None,
    ) -> None:
        """Initialize secrets proxy.

        Args:
            registry: Registry that maps secret names to environment variables
            config: Proxy settings (default TTL, single-use, log size)
        """
        self.registry = registry
        self.config = config or SecretsProxyConfig()

        self._active_tokens: dict[str, ProxyToken] = {}
        self._usage_log: deque[dict[str, Any]] = deque(
            maxlen=self.config.usage_log_limit
        )
        self._lock = threading.RLock()

    @property
    def default_ttl(self) -> float:
        return self.config.token_ttl

    # ── Token lifecycle ───────────────────────────────────────────

    def request_token(
        self,
        secret_name: str,
        scope: Optional[str] = None,
        ttl: Optional[float] = None,
    ) -> dict[str, Any]:
        """Issue a token for a registered secret.

        Args:
            secret_name: Registered secret name
            scope: Intended use of the token; must be one of the registered
                scopes when the registration declares any
            ttl: Lifetime in seconds (defaults to the configured TTL)

        Returns:
            Dict with token, secret_name, scope, ttl and expires_at (ISO-8601)

        Raises:
            UnregisteredSecretError: If the secret is not registered
            SecretsProxyError: If the scope is not allowed for the secret
        """
        with self._lock:
            registration = self.registry.get(secret_name)
            if registration is None:
                logger.warning("token_requested_for_unregistered_secret", secret_name=secret_name)
                raise UnregisteredSecretError(secret_name)

            if registration.scopes and scope and scope not in registration.scopes:
                raise SecretsProxyError(
                    secret_name=secret_name,
                    reason=(
                        f"Scope '{scope}' not allowed. "
                        f"Allowed scopes: {', '.join(registration.scopes)}"
                    ),
                )

            token_ttl = self.default_ttl if ttl is None else ttl
            now = datetime.now(timezone.utc)
            token = ProxyToken(
                token=f"{TOKEN_PREFIX}{secrets.token_hex(24)}",
                secret_name=secret_name,
                scope=scope,
                env_var=registration.env_var,
                issued_at=now,
                expires_at=now + timedelta(seconds=token_ttl),
            )
            self._active_tokens[token.token] = token

        logger.debug(
            "token_issued",
            secret_name=secret_name,
            scope=scope,
            expires_in=token_ttl,
            token_prefix=token.token[:8],
        )

        return {
            "token": token.token,
            "secret_name": secret_name,
            "scope": scope,
            "ttl": token_ttl,
            "expires_at": token.expires_at.isoformat(),
        }

    def exchange_token(self, token: str) -> str:
        """Redeem a token for the live secret value.

        Only call this inside the isolated execution context that needs the
        credential.

        Raises:
            SecretsProxyError: If the token is unknown or the env var is unset
            TokenExpiredError: If the token has expired
            TokenAlreadyUsedError: If single-use tokens are configured and the
                token was already redeemed
        """
        with self._lock:
            data = self._active_tokens.get(token)
            if data is None:
                logger.warning("invalid_token_exchange", token_prefix=(token or "")[:8])
                raise SecretsProxyError(secret_name="unknown", reason="Invalid or unknown token")

            now = datetime.now(timezone.utc)
            if data.is_expired(now):
                del self._active_tokens[token]
                logger.warning(
                    "expired_token_exchange",
                    secret_name=data.secret_name,
                    token_prefix=token[:8],
                )
                raise TokenExpiredError(
                    secret_name=data.secret_name,
                    expired_at=data.expires_at.isoformat(),
                )

            if data.used and self.config.single_use:
                raise TokenAlreadyUsedError(data.secret_name)

            value = os.environ.get(data.env_var)
            if value is None:
                raise SecretsProxyError(
                    secret_name=data.secret_name,
                    reason=f"Environment variable '{data.env_var}' not set",
                )

            data.used = True
            data.used_at = now
            self._usage_log.append(
                {
                    "secret_name": data.secret_name,
                    "scope": data.scope,
                    "issued_at": data.issued_at.isoformat(),
                    "used_at": now.isoformat(),
                    "ttl_remaining": max(int((data.expires_at - now).total_seconds()), 0),
                }
            )

        logger.debug(
            "token_exchanged",
            secret_name=data.secret_name,
            scope=data.scope,
            token_prefix=token[:8],
        )
        return value

    def revoke_token(self, token: str) -> bool:
        """Revoke a token before it expires. Returns True if it existed."""
        with self._lock:
            removed = self._active_tokens.pop(token, None)
        if removed is None:
            return False

        logger.info("token_revoked", secret_name=removed.secret_name, token_prefix=token[:8])
        return True

    def revoke_all_for_secret(self, secret_name: str) -> int:
        """Revoke every active token for a secret. Returns the count."""
        with self._lock:
            doomed = [t for t, data in self._active_tokens.items() if data.secret_name == secret_name]
            for t in doomed:
                del self._active_tokens[t]

        logger.info("tokens_revoked_for_secret", secret_name=secret_name, count=len(doomed))
        return len(doomed)

    def cleanup_expired(self) -> int:
        """Remove every token past its expiry. Returns the count."""
        now = datetime.now(timezone.utc)
        with self._lock:
            expired = [t for t, data in self._active_tokens.items() if data.is_expired(now)]
            for t in expired:
                del self._active_tokens[t]

        if expired:
            logger.debug("expired_tokens_cleaned", count=len(expired))
        return len(expired)

    # ── Environment sanitization ──────────────────────────────────

    def sanitized_environment(
        self, base_env: Optional[Mapping[str, str]] = None
    ) -> dict[str, str]:
        """Copy of the environment with every registered secret removed.

        Args:
            base_env: Environment to sanitize (defaults to os.environ)
        """
        env = dict(os.environ if base_env is None else base_env)
        for var in self.registry.env_vars_to_strip():
            if env.pop(var, None) is not None:
                logger.debug("env_var_stripped", env_var=var)
        return env

    @contextmanager
    def sanitized_env(self) -> Iterator[None]:
        """Strip registered secrets from os.environ for a with-block.

        Original values are restored on every exit path. Blocks are
        serialized process-wide because os.environ is shared.
        """
        with _ENVIRON_LOCK:
            original: dict[str, str] = {}
            for var in self.registry.env_vars_to_strip():
                if var in os.environ:
                    original[var] = os.environ.pop(var)

            logger.debug("environment_sanitized", stripped_count=len(original))
            try:
                yield
            finally:
                os.environ.update(original)
                logger.debug("environment_restored", restored_count=len(original))

    # ── Introspection ─────────────────────────────────────────────

    def active_tokens_summary(self) -> list[dict[str, Any]]:
        """Summaries of active tokens. Token strings are never included."""
        now = datetime.now(timezone.utc)
        with self._lock:
            tokens = list(self._active_tokens.values())

        return [
            {
                "secret_name": data.secret_name,
                "scope": data.scope,
                "issued_at": data.issued_at.isoformat(),
                "expires_at": data.expires_at.isoformat(),
                "used": data.used,
                "remaining_ttl": max(int((data.expires_at - now).total_seconds()), 0),
            }
            for data in tokens
        ]

    def usage_log(self, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent token redemptions, oldest first."""
        with self._lock:
            entries = list(self._usage_log)
        return entries[-limit:] if limit > 0 else []

    def reset(self) -> None:
        """Drop all tokens and the usage log."""
        with self._lock:
            self._active_tokens.clear()
            self._usage_log.clear()
