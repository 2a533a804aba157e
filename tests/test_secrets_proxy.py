"""Unit tests for SecretsProxy.

Tests cover:
- Token issuance, scopes and expiry
- Token redemption and revocation
- Environment sanitization
- Usage audit
"""

import os
import time
from pathlib import Path

import pytest

from trifecta_guard.security.config import SecretsProxyConfig
from trifecta_guard.security.errors import (
    SecretsProxyError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    UnregisteredSecretError,
)
from trifecta_guard.security.secrets_proxy import TOKEN_PREFIX, SecretsProxy
from trifecta_guard.security.secrets_registry import SecretsRegistry


@pytest.fixture
def registry(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> SecretsRegistry:
    """Create registry with one scoped and one unscoped secret."""
    monkeypatch.setenv("TEST_SECRET", "secret_value_123")
    monkeypatch.setenv("GH_TOKEN_VAR", "ghp_abc")
    registry = SecretsRegistry(tmp_path)
    registry.register("test_secret", "TEST_SECRET")
    registry.register("github_token", "GH_TOKEN_VAR", scopes=["git_push"])
    return registry


@pytest.fixture
def proxy(registry: SecretsRegistry) -> SecretsProxy:
    """Create proxy with default config."""
    return SecretsProxy(registry)


class TestTokenLifecycle:
    """Test token request, exchange and revocation."""

    def test_request_token(self, proxy: SecretsProxy) -> None:
        """Test issued tokens carry prefix, ttl and expiry."""
        result = proxy.request_token("test_secret", scope="api_call")

        assert result["token"].startswith(TOKEN_PREFIX)
        assert len(result["token"]) == len(TOKEN_PREFIX) + 48
        assert result["secret_name"] == "test_secret"
        assert result["scope"] == "api_call"
        assert result["ttl"] == 300
        assert isinstance(result["expires_at"], str)

    def test_tokens_are_unique(self, proxy: SecretsProxy) -> None:
        """Test repeated requests yield distinct tokens."""
        tokens = {proxy.request_token("test_secret")["token"] for _ in range(20)}
        assert len(tokens) == 20

    def test_request_unregistered(self, proxy: SecretsProxy) -> None:
        """Test unregistered secrets are refused."""
        with pytest.raises(UnregisteredSecretError):
            proxy.request_token("nope")

    def test_scope_enforced_when_declared(self, proxy: SecretsProxy) -> None:
        """Test declared scopes restrict token requests."""
        assert proxy.request_token("github_token", scope="git_push")["scope"] == "git_push"
        assert proxy.request_token("github_token")["scope"] is None

        with pytest.raises(SecretsProxyError, match="not allowed"):
            proxy.request_token("github_token", scope="email_send")

    def test_exchange_returns_live_value(
        self, proxy: SecretsProxy, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test the value is resolved at exchange time, not issue time."""
        token = proxy.request_token("test_secret")["token"]
        monkeypatch.setenv("TEST_SECRET", "rotated_value")

        assert proxy.exchange_token(token) == "rotated_value"

    def test_exchange_marks_used(self, proxy: SecretsProxy) -> None:
        """Test a redeemed token is flagged as used."""
        token = proxy.request_token("test_secret")["token"]

        assert proxy.exchange_token(token) == "secret_value_123"
        assert proxy.active_tokens_summary()[0]["used"] is True
        # reusable until expiry unless single_use is configured
        assert proxy.exchange_token(token) == "secret_value_123"

    def test_single_use_tokens(self, registry: SecretsRegistry) -> None:
        """Test single-use tokens cannot be redeemed twice."""
        proxy = SecretsProxy(registry, SecretsProxyConfig(single_use=True))
        token = proxy.request_token("test_secret")["token"]

        proxy.exchange_token(token)
        with pytest.raises(TokenAlreadyUsedError):
            proxy.exchange_token(token)

    def test_exchange_unknown_token(self, proxy: SecretsProxy) -> None:
        """Test unknown tokens are refused."""
        with pytest.raises(SecretsProxyError, match="Invalid or unknown token"):
            proxy.exchange_token("aidp_proxy_bogus")

    def test_exchange_expired_token(self, proxy: SecretsProxy) -> None:
        """Test expired tokens raise and are discarded."""
        token = proxy.request_token("test_secret", ttl=0)["token"]
        time.sleep(0.01)

        with pytest.raises(TokenExpiredError) as exc_info:
            proxy.exchange_token(token)
        assert exc_info.value.secret_name == "test_secret"

        with pytest.raises(SecretsProxyError) as exc_info:
            proxy.exchange_token(token)
        assert not isinstance(exc_info.value, TokenExpiredError)

    def test_exchange_with_unset_env_var(
        self, proxy: SecretsProxy, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test redemption fails when the backing variable is gone."""
        token = proxy.request_token("test_secret")["token"]
        monkeypatch.delenv("TEST_SECRET")

        with pytest.raises(SecretsProxyError, match="TEST_SECRET"):
            proxy.exchange_token(token)

    def test_revoke_token(self, proxy: SecretsProxy) -> None:
        """Test revoked tokens can no longer be redeemed."""
        token = proxy.request_token("test_secret")["token"]

        assert proxy.revoke_token(token) is True
        assert proxy.revoke_token(token) is False
        with pytest.raises(SecretsProxyError):
            proxy.exchange_token(token)

    def test_revoke_all_for_secret(self, proxy: SecretsProxy) -> None:
        """Test bulk revocation only touches the named secret."""
        for _ in range(3):
            proxy.request_token("test_secret")
        proxy.request_token("github_token")

        assert proxy.revoke_all_for_secret("test_secret") == 3
        remaining = proxy.active_tokens_summary()
        assert [entry["secret_name"] for entry in remaining] == ["github_token"]

    def test_cleanup_expired(self, proxy: SecretsProxy) -> None:
        """Test cleanup removes only expired tokens."""
        proxy.request_token("test_secret", ttl=0)
        proxy.request_token("test_secret", ttl=0)
        proxy.request_token("test_secret", ttl=60)
        time.sleep(0.01)

        assert proxy.cleanup_expired() == 2
        assert len(proxy.active_tokens_summary()) == 1
        assert proxy.cleanup_expired() == 0

    def test_custom_default_ttl(self, registry: SecretsRegistry) -> None:
        """Test the configured TTL is used by default."""
        proxy = SecretsProxy(registry, SecretsProxyConfig(token_ttl=30))

        assert proxy.default_ttl == 30
        assert proxy.request_token("test_secret")["ttl"] == 30
        assert proxy.request_token("test_secret", ttl=5)["ttl"] == 5


class TestEnvironmentSanitization:
    """Test stripping registered secrets from environments."""

    def test_sanitized_environment(self, proxy: SecretsProxy) -> None:
        """Test a sanitized copy drops registered variables only."""
        env = proxy.sanitized_environment()

        assert "TEST_SECRET" not in env
        assert "GH_TOKEN_VAR" not in env
        assert os.environ["TEST_SECRET"] == "secret_value_123"
        if "PATH" in os.environ:
            assert env["PATH"] == os.environ["PATH"]

    def test_sanitized_environment_with_base(self, proxy: SecretsProxy) -> None:
        """Test an explicit base environment is sanitized without mutation."""
        base = {"TEST_SECRET": "x", "HOME": "/home/agent"}

        assert proxy.sanitized_environment(base) == {"HOME": "/home/agent"}
        assert base["TEST_SECRET"] == "x"

    def test_sanitized_env_restores(self, proxy: SecretsProxy) -> None:
        """Test variables are stripped inside the block and restored after."""
        with proxy.sanitized_env():
            assert "TEST_SECRET" not in os.environ
            assert "GH_TOKEN_VAR" not in os.environ

        assert os.environ["TEST_SECRET"] == "secret_value_123"
        assert os.environ["GH_TOKEN_VAR"] == "ghp_abc"

    def test_sanitized_env_restores_on_exception(self, proxy: SecretsProxy) -> None:
        """Test restoration happens when the block raises."""
        with pytest.raises(RuntimeError):
            with proxy.sanitized_env():
                raise RuntimeError("subprocess failed")

        assert os.environ["TEST_SECRET"] == "secret_value_123"

    def test_sanitized_env_leaves_unset_vars_unset(
        self, registry: SecretsRegistry, proxy: SecretsProxy, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test registered but unset variables are not created on restore."""
        monkeypatch.delenv("NEVER_SET_VAR", raising=False)
        registry.register("ghost", "NEVER_SET_VAR")

        with proxy.sanitized_env():
            pass

        assert "NEVER_SET_VAR" not in os.environ


class TestAudit:
    """Test introspection of tokens and redemptions."""

    def test_active_tokens_summary_hides_tokens(self, proxy: SecretsProxy) -> None:
        """Test summaries never expose token strings."""
        token = proxy.request_token("test_secret", scope="api_call")["token"]

        summary = proxy.active_tokens_summary()

        assert len(summary) == 1
        assert "token" not in summary[0]
        assert token not in repr(summary)
        assert summary[0]["scope"] == "api_call"
        assert summary[0]["used"] is False
        assert 0 < summary[0]["remaining_ttl"] <= 300

    def test_usage_log(self, proxy: SecretsProxy) -> None:
        """Test redemptions are logged without values."""
        for _ in range(3):
            token = proxy.request_token("test_secret", scope="api_call")["token"]
            proxy.exchange_token(token)

        log = proxy.usage_log()
        assert len(log) == 3
        assert log[0]["secret_name"] == "test_secret"
        assert log[0]["scope"] == "api_call"
        assert "secret_value_123" not in repr(log)
        assert len(proxy.usage_log(limit=2)) == 2
        assert proxy.usage_log(limit=0) == []

    def test_usage_log_bounded(self, registry: SecretsRegistry) -> None:
        """Test the usage log keeps only the configured number of entries."""
        proxy = SecretsProxy(registry, SecretsProxyConfig(usage_log_limit=2))
        for _ in range(5):
            proxy.exchange_token(proxy.request_token("test_secret")["token"])

        assert len(proxy.usage_log()) == 2

    def test_reset(self, proxy: SecretsProxy) -> None:
        """Test reset drops tokens and log."""
        proxy.exchange_token(proxy.request_token("test_secret")["token"])
        proxy.reset()

        assert proxy.active_tokens_summary() == []
        assert proxy.usage_log() == []
