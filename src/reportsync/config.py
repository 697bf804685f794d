"""Configuration management for the offline report queue.

Settings are validated with Pydantic and stored as YAML. A missing file
means defaults; an invalid file raises :class:`ConfigurationError` with
one message per offending field.
"""

from __future__ import annotations

import logging
import os
import shutil
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import ConfigurationError
from .retry_policy import RetryPolicy
from .stats import HealthThresholds
from .storage import FileKeyValueStore, KeyValueStore, MemoryKeyValueStore, SQLiteKeyValueStore
from .store import DEFAULT_QUEUE_KEY

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "REPORTSYNC_CONFIG"
DEFAULT_WORKSPACE = Path.home() / ".reportsync"


class StorageBackend(str, Enum):
    FILE = "file"
    SQLITE = "sqlite"
    MEMORY = "memory"


class StorageConfig(BaseModel):
    """Durable store configuration.

    Attributes:
        backend: Which key-value backend holds the queue
        path: Directory (file backend) or database file (sqlite backend);
            relative paths resolve against the workspace
        queue_key: Key under which the queue document is stored
    """

    backend: StorageBackend = Field(default=StorageBackend.FILE)
    path: Optional[Path] = Field(default=None)
    queue_key: str = Field(default=DEFAULT_QUEUE_KEY, min_length=1)
    lock_timeout_seconds: float = Field(default=10.0, gt=0, le=300)


class RetryConfig(BaseModel):
    max_retries: int = Field(default=3, ge=1, le=20, description="Automatic attempts per item")
    inter_item_delay_seconds: float = Field(
        default=1.0, ge=0.0, le=60.0, description="Pause between items within a pass"
    )
    permanent_failures_no_retry: bool = Field(
        default=True, description="Skip permanent/validation failures in automatic passes"
    )

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(**self.model_dump())


class SchedulerConfig(BaseModel):
    sync_interval_seconds: float = Field(default=30.0, gt=0, le=86400)
    initial_delay_seconds: float = Field(default=2.0, ge=0, le=3600)


class TransportConfig(BaseModel):
    """Ingestion service endpoint.

    Attributes:
        base_url: Service root, e.g. ``https://reports.example.org/api``
        timeout_seconds: Per-request timeout enforced by the transport
        probe_url: URL probed for connectivity (defaults to base_url)
        headers: Extra headers sent with every request
    """

    base_url: Optional[str] = None
    timeout_seconds: float = Field(default=30.0, gt=0, le=600)
    probe_url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)


class HealthConfig(BaseModel):
    max_failed: int = Field(default=10, ge=0)
    max_pending: int = Field(default=100, ge=0)
    max_total_retries: int = Field(default=50, ge=0)

    def to_thresholds(self) -> HealthThresholds:
        return HealthThresholds(**self.model_dump())


class SyncConfig(BaseModel):
    """Top-level configuration.

    Attributes:
        version: Configuration schema version
        workspace: Root directory for local state
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    version: int = Field(default=1, description="Configuration schema version")
    workspace: Path = Field(default=DEFAULT_WORKSPACE)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    def storage_path(self) -> Path:
        workspace = self.workspace.expanduser()
        path = self.storage.path
        if path is None:
            if self.storage.backend == StorageBackend.SQLITE:
                return workspace / "queue" / "queue.db"
            return workspace / "queue"
        path = path.expanduser()
        return path if path.is_absolute() else workspace / path


def create_backend(config: SyncConfig) -> KeyValueStore:
    """Instantiate the configured key-value backend."""
    backend = config.storage.backend
    if backend == StorageBackend.MEMORY:
        return MemoryKeyValueStore()
    if backend == StorageBackend.SQLITE:
        return SQLiteKeyValueStore(config.storage_path())
    return FileKeyValueStore(
        config.storage_path(), lock_timeout=config.storage.lock_timeout_seconds
    )


def _format_errors(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]


class ConfigurationManager:
    """Loads, validates and saves the YAML configuration file."""

    def __init__(self, config_path: Optional[Path] = None) -> None:
        env_path = os.getenv(CONFIG_ENV_VAR)
        self._config_path = (
            config_path
            or (Path(env_path) if env_path else None)
            or DEFAULT_WORKSPACE / "config.yaml"
        ).expanduser()
        self._config: Optional[SyncConfig] = None

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self) -> SyncConfig:
        """Load and validate configuration.

        Raises:
            ConfigurationError: If the file is not valid YAML or fails validation
        """
        if not self._config_path.exists():
            logger.debug(
                "Configuration file not found, using defaults",
                extra={"config_path": str(self._config_path)},
            )
            self._config = SyncConfig()
            return self._config

        try:
            with open(self._config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML configuration: {exc}") from exc

        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a mapping")

        data = migrate_config(data)
        try:
            self._config = SyncConfig(**data)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid configuration: {'; '.join(_format_errors(exc))}"
            ) from exc
        return self._config

    def save(self, config: SyncConfig) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        if self._config_path.exists():
            shutil.copy(self._config_path, self._config_path.with_suffix(".yaml.backup"))
        data = config.model_dump(mode="json")
        with open(self._config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        self._config = config

    def validate(self, config_path: Optional[Path] = None) -> List[str]:
        """Validate a configuration file without loading it.

        Returns:
            List of validation errors (empty if valid)
        """
        path = config_path or self._config_path
        if not path.exists():
            return [f"Configuration file not found: {path}"]

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            SyncConfig(**migrate_config(data))
        except ValidationError as exc:
            return _format_errors(exc)
        except Exception as exc:  # noqa: BLE001
            return [f"Failed to load configuration: {exc}"]
        return []


def migrate_config(data: Dict[str, Any]) -> Dict[str, Any]:
    """Upgrade older flat configuration keys to the nested layout."""
    data = dict(data)
    if "max_retries" in data:
        data.setdefault("retry", {})
        data["retry"]["max_retries"] = data.pop("max_retries")
    if "sync_interval" in data:
        data.setdefault("scheduler", {})
        data["scheduler"]["sync_interval_seconds"] = data.pop("sync_interval")
    if "api_url" in data:
        data.setdefault("transport", {})
        data["transport"]["base_url"] = data.pop("api_url")
    return data


__all__ = [
    "CONFIG_ENV_VAR",
    "ConfigurationManager",
    "HealthConfig",
    "RetryConfig",
    "SchedulerConfig",
    "StorageBackend",
    "StorageConfig",
    "SyncConfig",
    "TransportConfig",
    "create_backend",
    "migrate_config",
]
