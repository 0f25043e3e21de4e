"""
Configuration for the Conversion Job Orchestrator

Settings are pydantic models loaded from YAML. The bundled
``config/default.yaml`` is read first, then the file named by the
``CJO_CONFIG`` environment variable (or an explicit path), then any
overrides passed in code.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator, model_validator

from ..core.exceptions import ConfigurationError

CONFIG_ENV_VAR = "CJO_CONFIG"
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "default.yaml"

JOB_TYPE_NAMES = ("conversion", "validation", "analysis", "packaging")
PRIORITY_NAMES = ("low", "normal", "high", "urgent")


class _Settings(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ResourceRequirementSettings(_Settings):
    """Per-job resource estimate used when a job declares none."""

    memory_mb: float = Field(1024.0, ge=0)
    cpu: float = Field(1.0, ge=0)
    disk_mb: float = Field(512.0, ge=0)


class QueueSettings(_Settings):
    default_priority: str = "normal"
    default_max_retries: int = Field(3, ge=0)
    default_timeout: Optional[float] = Field(None, gt=0)
    max_history: int = Field(10000, ge=1)
    retention_seconds: Optional[float] = Field(None, gt=0)
    default_requirements: ResourceRequirementSettings = Field(default_factory=ResourceRequirementSettings)

    @field_validator("default_priority")
    @classmethod
    def check_priority(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in PRIORITY_NAMES:
            raise ValueError(f"must be one of {', '.join(PRIORITY_NAMES)}")
        return value


class WorkerPoolSettings(_Settings):
    min_workers: int = Field(4, ge=0)
    max_workers: int = Field(8, ge=1)
    heartbeat_interval: float = Field(30.0, gt=0)
    worker_timeout: float = Field(300.0, gt=0)
    recovery_delay: float = Field(5.0, ge=0)
    idle_timeout: float = Field(300.0, gt=0)
    max_worker_failures: int = Field(3, ge=1)
    drain_poll_interval: float = Field(0.1, gt=0)
    shutdown_timeout: float = Field(30.0, ge=0)
    profiles: Dict[str, List[str]] = Field(default_factory=lambda: {
        "conversion-worker": ["conversion"],
        "validation-worker": ["validation"],
        "analysis-worker": ["analysis"],
        "packaging-worker": ["packaging"],
    })

    @field_validator("profiles")
    @classmethod
    def check_profiles(cls, value: Dict[str, List[str]]) -> Dict[str, List[str]]:
        if not value:
            raise ValueError("at least one worker profile is required")
        for name, job_types in value.items():
            if not job_types:
                raise ValueError(f"profile {name!r} has no job types")
            unknown = [job_type for job_type in job_types if job_type not in JOB_TYPE_NAMES]
            if unknown:
                raise ValueError(f"profile {name!r} lists unknown job types {unknown}")
        return value

    @model_validator(mode="after")
    def check_bounds(self) -> "WorkerPoolSettings":
        if self.max_workers < self.min_workers:
            raise ValueError("max_workers must be >= min_workers")
        return self


class ResourceSettings(_Settings):
    """Allocator capacity; dimensions left unset are detected from the host."""

    memory_mb: Optional[float] = Field(None, ge=0)
    cpu: Optional[float] = Field(None, ge=0)
    disk_mb: Optional[float] = Field(None, ge=0)
    system_fraction: float = Field(0.8, gt=0, le=1)
    scale_up_threshold: float = Field(0.9, gt=0, le=1)
    default_pool_size: int = Field(8, ge=1)
    pools: Dict[str, int] = Field(default_factory=lambda: {"temp_files": 16})

    @field_validator("pools")
    @classmethod
    def check_pools(cls, value: Dict[str, int]) -> Dict[str, int]:
        for name, size in value.items():
            if size < 1:
                raise ValueError(f"pool {name!r} must have size >= 1")
        return value


class RetrySettings(_Settings):
    initial_delay: float = Field(1.0, ge=0)
    max_delay: float = Field(60.0, ge=0)
    backoff: str = "exponential"
    exponential_base: float = Field(2.0, ge=1)

    @field_validator("backoff")
    @classmethod
    def check_backoff(cls, value: str) -> str:
        if value not in ("exponential", "linear"):
            raise ValueError("must be 'exponential' or 'linear'")
        return value


class HistorySettings(_Settings):
    path: Optional[str] = None
    max_entries: int = Field(10000, ge=1)
    flush_interval: float = Field(1.0, gt=0)


class OrchestratorSettings(_Settings):
    poll_interval: float = Field(1.0, gt=0)
    metrics_enabled: bool = True


class LoggingSettings(_Settings):
    level: str = "INFO"
    structured: bool = True
    log_file: Optional[str] = None

    @field_validator("level")
    @classmethod
    def check_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError("unknown log level")
        return value


class SchedulerConfig(_Settings):
    """Complete orchestrator configuration."""

    queue: QueueSettings = Field(default_factory=QueueSettings)
    workers: WorkerPoolSettings = Field(default_factory=WorkerPoolSettings)
    resources: ResourceSettings = Field(default_factory=ResourceSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    history: HistorySettings = Field(default_factory=HistorySettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        raise ConfigurationError(str(path), "configuration file not found")
    except yaml.YAMLError as e:
        raise ConfigurationError(str(path), f"invalid YAML: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(str(path), "top level must be a mapping")
    return data


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> SchedulerConfig:
    """
    Load the effective configuration.

    Args:
        path: YAML file layered over the defaults; falls back to $CJO_CONFIG
        overrides: Nested mapping applied last

    Raises:
        ConfigurationError: If a file is missing or malformed, or a setting is invalid
    """
    data = _read_yaml(DEFAULT_CONFIG_PATH) if DEFAULT_CONFIG_PATH.exists() else {}

    path = path or os.environ.get(CONFIG_ENV_VAR)
    if path:
        data = deep_merge(data, _read_yaml(Path(path)))
    if overrides:
        data = deep_merge(data, overrides)

    try:
        return SchedulerConfig.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        key = ".".join(str(part) for part in first.get("loc", ())) or "config"
        raise ConfigurationError(key, first.get("msg", str(e)))


def dump_config(config: SchedulerConfig) -> str:
    """Render a configuration as YAML."""
    return yaml.safe_dump(config.model_dump(), sort_keys=False, default_flow_style=False)
