"""
Resource models for admission control

Memory and disk are expressed in megabytes, CPU in cores (fractions allowed).
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, Union
from dataclasses import dataclass, field
from uuid import uuid4

from ..core.exceptions import ValidationError

RESOURCE_DIMENSIONS = ("memory_mb", "cpu", "disk_mb")

DEFAULT_MEMORY_MB = 1024.0
DEFAULT_CPU = 1.0
DEFAULT_DISK_MB = 512.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ResourceRequirements:
    """Declared resource estimate of a job."""

    memory_mb: float = DEFAULT_MEMORY_MB
    cpu: float = DEFAULT_CPU
    disk_mb: float = DEFAULT_DISK_MB

    def __post_init__(self):
        for name in RESOURCE_DIMENSIONS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f"resource_requirements.{name}", "must be a number", value)
            if value < 0:
                raise ValidationError(f"resource_requirements.{name}", "must not be negative", value)

    @classmethod
    def coerce(cls, value: Union["ResourceRequirements", Dict[str, Any], None]) -> "ResourceRequirements":
        """Accept an instance, a mapping (``memory``/``disk`` aliases allowed) or None."""
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        if isinstance(value, dict):
            data = dict(value)
            if "memory" in data:
                data.setdefault("memory_mb", data.pop("memory"))
            if "disk" in data:
                data.setdefault("disk_mb", data.pop("disk"))
            unknown = set(data) - set(RESOURCE_DIMENSIONS)
            if unknown:
                raise ValidationError("resource_requirements", f"unknown keys {sorted(unknown)}", value)
            return cls(**data)
        raise ValidationError("resource_requirements", "must be a mapping", value)

    def to_dict(self) -> Dict[str, float]:
        return {"memory_mb": self.memory_mb, "cpu": self.cpu, "disk_mb": self.disk_mb}


@dataclass(frozen=True)
class ResourceUsage:
    """Aggregate amounts per dimension (usage, availability or capacity)."""

    memory_mb: float = 0.0
    cpu: float = 0.0
    disk_mb: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {"memory_mb": self.memory_mb, "cpu": self.cpu, "disk_mb": self.disk_mb}


@dataclass
class ResourceAllocation:
    """Resources reserved for one job attempt."""

    job_id: str
    memory_mb: float
    cpu: float
    disk_mb: float
    allocation_id: str = field(default_factory=lambda: f"alloc-{uuid4().hex[:12]}")
    worker_id: Optional[str] = None
    allocated_at: datetime = field(default_factory=_utcnow)
    released_at: Optional[datetime] = None

    @property
    def is_released(self) -> bool:
        return self.released_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allocation_id": self.allocation_id,
            "job_id": self.job_id,
            "memory_mb": self.memory_mb,
            "cpu": self.cpu,
            "disk_mb": self.disk_mb,
            "worker_id": self.worker_id,
            "allocated_at": self.allocated_at.isoformat(),
            "released_at": self.released_at.isoformat() if self.released_at else None
        }
