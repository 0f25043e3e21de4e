"""
ResourceAllocator service for the Conversion Job Orchestrator

Admission control over memory, CPU and disk, plus named counted pools for
sub-resources such as temporary files.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Optional, Any, Union

import psutil

from ..core.exceptions import ResourceExhaustedError, ValidationError
from ..models.resources import (
    RESOURCE_DIMENSIONS, ResourceAllocation, ResourceRequirements, ResourceUsage
)
from ..utils.logger import get_logger, set_log_context

BYTES_PER_MB = 1024 * 1024


class ResourceAllocator:
    """
    Tracks resource reservations against a fixed capacity.

    reserve() is an atomic check-and-reserve across every dimension: either
    the whole requirement fits and is reserved, or nothing changes and None
    is returned. The sum of active allocations never exceeds capacity.
    """

    def __init__(
        self,
        capacity: Optional[Union[ResourceUsage, Dict[str, float]]] = None,
        pool_limits: Optional[Dict[str, int]] = None,
        default_pool_size: int = 8,
        scale_up_threshold: float = 0.9
    ):
        """
        Initialize ResourceAllocator.

        Args:
            capacity: Total memory_mb/cpu/disk_mb; detected from the host when omitted
            pool_limits: Sizes of named sub-resource pools
            default_pool_size: Size of a pool first requested without a configured limit
            scale_up_threshold: Utilisation above which the worker pool stops growing
        """
        if capacity is None:
            capacity = detect_system_capacity()
        elif isinstance(capacity, dict):
            capacity = ResourceUsage(**{name: float(capacity[name]) for name in RESOURCE_DIMENSIONS})

        for name in RESOURCE_DIMENSIONS:
            if getattr(capacity, name) < 0:
                raise ValidationError(f"capacity.{name}", "must not be negative", getattr(capacity, name))
        if default_pool_size < 1:
            raise ValidationError("default_pool_size", "must be at least 1", default_pool_size)

        self.capacity = capacity
        self.pool_limits = dict(pool_limits or {})
        self.default_pool_size = default_pool_size
        self.scale_up_threshold = scale_up_threshold

        self._allocations: Dict[str, ResourceAllocation] = {}
        self._used = {name: 0.0 for name in RESOURCE_DIMENSIONS}
        self._pools: Dict[str, asyncio.Semaphore] = {}
        self._pool_in_use: Dict[str, int] = {}

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="resource_allocator")

    @classmethod
    def from_system(cls, fraction: float = 0.8, **kwargs) -> "ResourceAllocator":
        """Build an allocator sized to a fraction of this host's memory, cores and free disk."""
        return cls(capacity=detect_system_capacity(fraction), **kwargs)

    # Reservations

    def fits_capacity(self, requirements: ResourceRequirements) -> bool:
        """Whether the requirement could ever be granted, even on an idle system."""
        return all(getattr(requirements, name) <= getattr(self.capacity, name) for name in RESOURCE_DIMENSIONS)

    def reserve(
        self,
        requirements: ResourceRequirements,
        job_id: str,
        worker_id: Optional[str] = None
    ) -> Optional[ResourceAllocation]:
        """
        Reserve resources for a job attempt.

        Returns:
            The allocation, or None when any dimension lacks headroom
        """
        if job_id in self._allocations:
            raise ValidationError("job_id", "already holds an active allocation", job_id)

        for name in RESOURCE_DIMENSIONS:
            if self._used[name] + getattr(requirements, name) > getattr(self.capacity, name):
                self.logger.debug("Resource reservation denied", extra={
                    "job_id": job_id,
                    "resource_type": name,
                    "requested": getattr(requirements, name),
                    "available": getattr(self.capacity, name) - self._used[name]
                })
                return None

        allocation = ResourceAllocation(
            job_id=job_id,
            memory_mb=requirements.memory_mb,
            cpu=requirements.cpu,
            disk_mb=requirements.disk_mb,
            worker_id=worker_id
        )
        for name in RESOURCE_DIMENSIONS:
            self._used[name] += getattr(allocation, name)
        self._allocations[job_id] = allocation

        self.logger.debug("Resources reserved", extra={
            "job_id": job_id,
            "allocation_id": allocation.allocation_id,
            "utilization": self.utilization()
        })
        return allocation

    def release(self, allocation: Optional[ResourceAllocation]) -> bool:
        """Return an allocation's resources; False if it was already released."""
        if allocation is None or allocation.is_released:
            return False
        if self._allocations.get(allocation.job_id) is not allocation:
            return False

        del self._allocations[allocation.job_id]
        for name in RESOURCE_DIMENSIONS:
            self._used[name] = max(0.0, self._used[name] - getattr(allocation, name))
        allocation.released_at = datetime.now(timezone.utc)

        self.logger.debug("Resources released", extra={
            "job_id": allocation.job_id,
            "allocation_id": allocation.allocation_id
        })
        return True

    def bind_worker(self, allocation: ResourceAllocation, worker_id: str):
        allocation.worker_id = worker_id

    def get_allocation(self, job_id: str) -> Optional[ResourceAllocation]:
        return self._allocations.get(job_id)

    @property
    def active_allocations(self) -> int:
        return len(self._allocations)

    def get_usage(self) -> ResourceUsage:
        return ResourceUsage(**self._used)

    def get_available(self) -> ResourceUsage:
        return ResourceUsage(**{
            name: max(0.0, getattr(self.capacity, name) - self._used[name])
            for name in RESOURCE_DIMENSIONS
        })

    def utilization(self) -> float:
        """Highest used/capacity ratio across the dimensions with non-zero capacity."""
        ratios = [
            self._used[name] / getattr(self.capacity, name)
            for name in RESOURCE_DIMENSIONS
            if getattr(self.capacity, name) > 0
        ]
        return max(ratios) if ratios else 0.0

    def allows_scale_up(self) -> bool:
        return self.utilization() < self.scale_up_threshold

    @asynccontextmanager
    async def reservation(self, requirements: ResourceRequirements, job_id: str):
        """Reserve for the duration of the block; raises ResourceExhaustedError when denied."""
        allocation = self.reserve(requirements, job_id)
        if allocation is None:
            raise ResourceExhaustedError(self._first_short_dimension(requirements))
        try:
            yield allocation
        finally:
            self.release(allocation)

    # Pooled sub-resources

    @asynccontextmanager
    async def pooled(self, name: str, timeout: Optional[float] = None):
        """
        Hold one unit of a named pool for the duration of the block.

        The unit is returned on success, error and cancellation alike.
        """
        semaphore = self._get_pool(name)
        try:
            if timeout is None:
                await semaphore.acquire()
            else:
                await asyncio.wait_for(semaphore.acquire(), timeout)
        except asyncio.TimeoutError:
            raise ResourceExhaustedError(name, requested=1, limit=self.pool_limits.get(name, self.default_pool_size))

        self._pool_in_use[name] = self._pool_in_use.get(name, 0) + 1
        try:
            yield
        finally:
            self._pool_in_use[name] -= 1
            semaphore.release()

    def pool_in_use(self, name: str) -> int:
        return self._pool_in_use.get(name, 0)

    def _get_pool(self, name: str) -> asyncio.Semaphore:
        if name not in self._pools:
            size = self.pool_limits.get(name, self.default_pool_size)
            self._pools[name] = asyncio.Semaphore(size)
        return self._pools[name]

    def _first_short_dimension(self, requirements: ResourceRequirements) -> str:
        for name in RESOURCE_DIMENSIONS:
            if self._used[name] + getattr(requirements, name) > getattr(self.capacity, name):
                return name
        return "resources"

    def get_status(self) -> Dict[str, Any]:
        return {
            "capacity": self.capacity.to_dict(),
            "used": self.get_usage().to_dict(),
            "available": self.get_available().to_dict(),
            "utilization": self.utilization(),
            "active_allocations": len(self._allocations),
            "pools": {name: {"in_use": self.pool_in_use(name),
                             "limit": self.pool_limits.get(name, self.default_pool_size)}
                      for name in self._pools}
        }


def detect_system_capacity(fraction: float = 0.8, disk_path: str = "/") -> ResourceUsage:
    """Capacity from the host: a fraction of total memory and free disk, all logical cores."""
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage(disk_path)
    return ResourceUsage(
        memory_mb=memory.total / BYTES_PER_MB * fraction,
        cpu=float(psutil.cpu_count(logical=True) or 1),
        disk_mb=disk.free / BYTES_PER_MB * fraction
    )
