"""
Secrets registry: maps logical secret names to environment variables.

The registry never stores secret values. It records which environment
variable holds each secret so that the secrets proxy can resolve it at
redemption time and strip it from agent subprocess environments.

State is persisted as a JSON document keyed by secret name at
``<project>/.aidp/security/secrets_registry.json``.
"""

import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

import structlog
from pydantic import BaseModel, Field, ValidationError

logger = structlog.get_logger(__name__)

CONTROL_DIR = ".aidp"
REGISTRY_SUBDIR = "security"
REGISTRY_FILENAME = "secrets_registry.json"


class SecretRegistration(BaseModel):
    """A registered secret.

    Attributes:
        name: Logical secret name (e.g. "github_token")
        env_var: Environment variable that holds the value
        description: Optional human description
        scopes: Operations the secret may be used for (empty = any)
        id: Generated registration identifier
        registered_at: ISO-8601 registration timestamp
    """

    name: str = Field(..., description="Logical secret name")
    env_var: str = Field(..., description="Environment variable holding the value")
    description: Optional[str] = Field(default=None, description="Description")
    scopes: list[str] = Field(default_factory=list, description="Allowed scopes")
    id: str = Field(
        default_factory=lambda: f"secret_{uuid4().hex[:16]}",
        description="Registration ID",
    )
    registered_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
        description="Registration timestamp",
    )


class SecretsRegistry:
    """Durable mapping of secret names to environment variables."""

    def __init__(
        self,
        project_dir: str | Path,
        registry_path: Optional[str | Path] = None,
    ) -> None:
        """Initialize registry and load any persisted registrations.

        Args:
            project_dir: Project root
            registry_path: Override for the JSON document location
        """
        self.project_dir = Path(project_dir)
        if registry_path is None:
            registry_path = (
                self.project_dir / CONTROL_DIR / REGISTRY_SUBDIR / REGISTRY_FILENAME
            )
        self.registry_path = Path(registry_path)
        self.registry_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._secrets: dict[str, SecretRegistration] = self._load()

    # ── Mutation ──────────────────────────────────────────────────

    def register(
        self,
        name: str,
        env_var: str,
        description: Optional[str] = None,
        scopes: Optional[list[str]] = None,
    ) -> SecretRegistration:
        """Register (or overwrite) a secret mapping and persist it.

        Args:
            name: Logical secret name
            env_var: Environment variable holding the value
            description: Optional description
            scopes: Optional list of operation names the secret may serve

        Returns:
            The stored registration
        """
        if not name:
            raise ValueError("Secret name must not be empty")
        if not env_var:
            raise ValueError("Environment variable name must not be empty")

        registration = SecretRegistration(
            name=name,
            env_var=env_var,
            description=description,
            scopes=list(scopes or []),
        )

        with self._lock:
            replaced = name in self._secrets
            updated = {**self._secrets, name: registration}
            self._save(updated)
            self._secrets = updated

        logger.info(
            "secret_registered",
            name=name,
            env_var=env_var,
            scopes=registration.scopes,
            replaced=replaced,
        )
        return registration

    def unregister(self, name: str) -> bool:
        """Remove a registration. Returns True if something was removed."""
        with self._lock:
            if name not in self._secrets:
                return False
            updated = {k: v for k, v in self._secrets.items() if k != name}
            self._save(updated)
            self._secrets = updated

        logger.info("secret_unregistered", name=name)
        return True

    # ── Queries ───────────────────────────────────────────────────

    def is_registered(self, name: str) -> bool:
        with self._lock:
            return name in self._secrets

    def get(self, name: str) -> Optional[SecretRegistration]:
        with self._lock:
            registration = self._secrets.get(name)
            return registration.model_copy(deep=True) if registration else None

    def env_var_for(self, name: str) -> Optional[str]:
        with self._lock:
            registration = self._secrets.get(name)
            return registration.env_var if registration else None

    def list_secrets(self) -> list[dict[str, Any]]:
        """All registrations, each annotated with ``has_value``.

        ``has_value`` only reports whether the environment variable is set
        and non-empty; the value itself is never returned.
        """
        with self._lock:
            registrations = list(self._secrets.values())

        return [
            {**registration.model_dump(), "has_value": bool(os.environ.get(registration.env_var))}
            for registration in registrations
        ]

    def env_vars_to_strip(self) -> list[str]:
        """Environment variables to remove from agent subprocess environments."""
        with self._lock:
            seen: list[str] = []
            for registration in self._secrets.values():
                if registration.env_var not in seen:
                    seen.append(registration.env_var)
            return seen

    def is_env_var_registered(self, env_var: str) -> bool:
        with self._lock:
            return any(r.env_var == env_var for r in self._secrets.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._secrets)

    # ── Persistence ───────────────────────────────────────────────

    def _load(self) -> dict[str, SecretRegistration]:
        """Load registrations from disk. Missing or unreadable -> empty."""
        if not self.registry_path.exists():
            return {}

        try:
            with open(self.registry_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(
                "secrets_registry_unreadable",
                path=str(self.registry_path),
                error=str(e),
            )
            return {}

        if not isinstance(data, dict):
            logger.warning("secrets_registry_invalid_format", path=str(self.registry_path))
            return {}

        secrets: dict[str, SecretRegistration] = {}
        for name, entry in data.items():
            if not isinstance(entry, dict):
                logger.warning("secrets_registry_entry_skipped", name=name)
                continue
            try:
                secrets[name] = SecretRegistration(name=name, **{
                    k: v for k, v in entry.items() if k != "name"
                })
            except ValidationError as e:
                logger.warning(
                    "secrets_registry_entry_invalid",
                    name=name,
                    error=str(e),
                )

        logger.debug(
            "secrets_registry_loaded",
            path=str(self.registry_path),
            count=len(secrets),
        )
        return secrets

    def _save(self, secrets: dict[str, SecretRegistration]) -> None:
        """Atomically write secrets as the registry document.

        Caller must hold the lock and only adopt secrets once this returns.
        """
        document = {
            name: registration.model_dump(exclude={"name"})
            for name, registration in secrets.items()
        }

        self.registry_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.registry_path.parent,
            prefix=f".{self.registry_path.name}.",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.registry_path)
        except Exception:
            Path(tmp_path).unlink(missing_ok=True)
            raise
