from __future__ import annotations

import os
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .constants import (
    CONFIG_ENV_VAR,
    DEFAULT_CONFIG_FILE,
    DEFAULT_LOG_PATH,
    DEFAULT_STATE_PATH,
    DEFAULT_TASK_NAME,
    STATE_URL_ENV_VAR,
)
from .errors import ConfigurationError


class VerificationSettings(BaseModel):
    """Retry policy for post-migration checks."""

    attempts: int = Field(default=3, ge=1)
    delay_seconds: float = Field(default=10.0, ge=0)
    backoff: Literal["fixed", "exponential"] = "exponential"


class ContinuationSettings(BaseModel):
    """How the next stage is re-triggered after a reboot."""

    backend: Literal["file", "scheduled_task", "memory"] = "file"
    task_name: str = DEFAULT_TASK_NAME
    marker_dir: Optional[str] = None
    command: str = "migrate"


class MigrationConfig(BaseModel):
    """Top-level configuration model."""

    local_state_path: str = DEFAULT_STATE_PATH
    required_applications: List[str] = Field(default_factory=list)
    max_parallel: int = Field(default=5, ge=1)
    rollback_retention_days: int = Field(default=7, ge=0)
    stage_timeout_seconds: int = Field(default=1800, gt=0)

    state_url: Optional[str] = None
    backup_path: Optional[str] = None
    required_policy_markers: List[str] = Field(default_factory=list)
    transient_retries: int = Field(default=1, ge=0)
    retry_base_delay: float = Field(default=2.0, ge=0)
    verification: VerificationSettings = VerificationSettings()
    continuation: ContinuationSettings = ContinuationSettings()
    capabilities_factory: Optional[str] = None
    probe_factory: Optional[str] = None
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    remote_timeout_seconds: float = Field(default=7200.0, gt=0)
    log_path: str = DEFAULT_LOG_PATH
    log_level: str = "INFO"

    @field_validator("required_applications", "required_policy_markers")
    @classmethod
    def _strip_blank(cls, v: List[str]) -> List[str]:
        return [item.strip() for item in v if item and item.strip()]

    @property
    def state_dir(self) -> Path:
        return Path(self.local_state_path).expanduser().parent

    @property
    def resolved_backup_path(self) -> Path:
        if self.backup_path:
            return Path(self.backup_path).expanduser()
        return self.state_dir / "backups"

    @property
    def resolved_marker_dir(self) -> Path:
        if self.continuation.marker_dir:
            return Path(self.continuation.marker_dir).expanduser()
        return self.state_dir / "continuations"


def load_config(path: Optional[str] = None) -> MigrationConfig:
    """Load configuration from a YAML file.

    Args:
        path: Optional path to config file. Falls back to the DEVMIGRATE_CONFIG
            env variable or 'devmigrate.yaml' in the current directory.

    Raises:
        ConfigurationError: The file exists but is not valid YAML or does not
            match the configuration schema.
    """

    config_path = path or os.getenv(CONFIG_ENV_VAR, DEFAULT_CONFIG_FILE)
    data: dict = {}
    if os.path.exists(config_path):
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration in {config_path} must be a mapping")
    elif path:
        raise ConfigurationError(f"Configuration file not found: {path}")

    try:
        config = MigrationConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    env_state_url = os.getenv(STATE_URL_ENV_VAR)
    if env_state_url:
        config.state_url = env_state_url
    return config
