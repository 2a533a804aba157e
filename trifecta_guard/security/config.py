"""
Security configuration.

Raw configuration arrives as a nested mapping (from YAML, a host
application's settings, or test code) whose keys may be plain strings or
enum members. It is normalized once, here, into pydantic models with
defaults applied; the rest of the package reads named fields only.

Example ``.aidp/aidp.yml``:

    security:
      rule_of_two:
        enabled: true
      secrets_proxy:
        token_ttl: 300
      watch_mode:
        max_retry_attempts: 3
        needs_input_label: aidp-needs-input
"""

import os
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from trifecta_guard.security.errors import ConfigurationError

logger = structlog.get_logger(__name__)

CONFIG_FILENAME = "aidp.yml"

DEFAULT_TOKEN_TTL = 300
DEFAULT_MAX_RETRY_ATTEMPTS = 3
DEFAULT_NEEDS_INPUT_LABEL = "aidp-needs-input"


class _ConfigSection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[Any, Any]] = None):
        """Build a section from a loosely-keyed mapping.

        Raises:
            ConfigurationError: If a value has the wrong type
        """
        if isinstance(raw, cls):
            return raw
        try:
            return cls.model_validate(normalize_keys(raw or {}))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid {cls.__name__}: {e}") from e


class RuleOfTwoConfig(_ConfigSection):
    """Rule of Two enforcement settings."""

    enabled: bool = Field(default=True, description="Enforce the Rule of Two")
    policy: str = Field(default="strict", description="Policy name (informational)")
    audit_log_limit: int = Field(
        default=1000, ge=1, description="Completed work units kept in memory"
    )


class SecretsProxyConfig(_ConfigSection):
    """Secrets proxy settings."""

    enabled: bool = Field(default=True, description="Broker secrets via tokens")
    token_ttl: float = Field(
        default=DEFAULT_TOKEN_TTL, ge=0, description="Default token lifetime (seconds)"
    )
    single_use: bool = Field(
        default=False, description="Reject a second exchange of the same token"
    )
    usage_log_limit: int = Field(
        default=1000, ge=1, description="Token redemptions kept in memory"
    )


class WatchModeConfig(_ConfigSection):
    """Fail-forward settings for unattended operation."""

    max_retry_attempts: int = Field(
        default=DEFAULT_MAX_RETRY_ATTEMPTS, ge=0, description="Retries before escalating"
    )
    fail_forward_enabled: bool = Field(default=True, description="Retry before failing")
    needs_input_label: str = Field(
        default=DEFAULT_NEEDS_INPUT_LABEL, description="Label applied on escalation"
    )


class SecurityConfig(_ConfigSection):
    """Top-level security configuration."""

    rule_of_two: RuleOfTwoConfig = Field(default_factory=RuleOfTwoConfig)
    secrets_proxy: SecretsProxyConfig = Field(default_factory=SecretsProxyConfig)
    watch_mode: WatchModeConfig = Field(default_factory=WatchModeConfig)


def normalize_keys(value: Any) -> Any:
    """Recursively convert mapping keys to plain strings.

    Enum members become their value; a leading ':' (symbol-style keys from
    other tooling) is dropped; ``None`` values are removed so defaults apply.
    """
    if isinstance(value, Mapping):
        normalized = {}
        for key, item in value.items():
            if item is None:
                continue
            if isinstance(key, Enum):
                key = key.value
            normalized[str(key).lstrip(":")] = normalize_keys(item)
        return normalized
    if isinstance(value, list):
        return [normalize_keys(item) for item in value]
    return value


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _section_for_override(raw: dict[str, Any], name: str) -> dict[str, Any]:
    section = raw.setdefault(name, {})
    if not isinstance(section, dict):
        raise ConfigurationError(
            f"Config section 'security.{name}' must be a mapping, got {type(section).__name__}"
        )
    return section


def load_security_config(project_dir: str | Path) -> SecurityConfig:
    """Load the ``security`` section of ``<project>/.aidp/aidp.yml``.

    A missing file yields defaults. Environment overrides
    ``AIDP_RULE_OF_TWO_ENABLED`` and ``AIDP_SECRETS_TOKEN_TTL`` are applied
    on top.

    Raises:
        ConfigurationError: If the file is not valid YAML or has bad values
    """
    config_path = Path(project_dir) / ".aidp" / CONFIG_FILENAME
    raw: dict[str, Any] = {}

    if config_path.exists():
        try:
            with open(config_path) as f:
                document = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Malformed config file {config_path}: {e}") from e

        if not isinstance(document, dict):
            raise ConfigurationError(f"Config file {config_path} must be a mapping")
        raw = normalize_keys(document.get("security") or {})
        if not isinstance(raw, dict):
            raise ConfigurationError(
                f"'security' in {config_path} must be a mapping"
            )

    enabled_override = os.getenv("AIDP_RULE_OF_TWO_ENABLED")
    if enabled_override is not None:
        _section_for_override(raw, "rule_of_two")["enabled"] = _parse_bool(enabled_override)

    ttl_override = os.getenv("AIDP_SECRETS_TOKEN_TTL")
    if ttl_override is not None:
        try:
            ttl = float(ttl_override)
        except ValueError as e:
            raise ConfigurationError(
                f"AIDP_SECRETS_TOKEN_TTL must be a number, got {ttl_override!r}"
            ) from e
        _section_for_override(raw, "secrets_proxy")["token_ttl"] = ttl

    config = SecurityConfig.from_mapping(raw)
    logger.debug(
        "security_config_loaded",
        path=str(config_path),
        file_present=config_path.exists(),
        rule_of_two_enabled=config.rule_of_two.enabled,
    )
    return config
