"""
JobHistory service for the Conversion Job Orchestrator

Keeps a bounded, append-only log of job status changes, optionally mirrored
to a JSON-lines file for audit.
"""

import asyncio
import json
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

import aiofiles
import aiofiles.os

from ..core import events
from ..core.events import EventBus
from ..core.exceptions import ValidationError
from ..utils.logger import get_logger, set_log_context

RECORDED_EVENTS = (
    events.JOB_QUEUED,
    events.JOB_STARTED,
    events.JOB_RETRYING,
    events.JOB_COMPLETED,
    events.JOB_FAILED,
    events.JOB_CANCELLED,
)


class JobHistory:
    """
    Bounded history of job status updates.

    The in-memory ring holds the latest ``max_entries`` updates. When a path
    is configured, new entries are appended to the file by flush(); once the
    file grows past twice the bound it is rewritten with only the latest
    ``max_entries`` lines (temp file + rename).
    """

    def __init__(
        self,
        path: Optional[str] = None,
        max_entries: int = 10000,
        flush_interval: float = 1.0
    ):
        if max_entries < 1:
            raise ValidationError("max_entries", "must be at least 1", max_entries)

        self.path = Path(path) if path else None
        self.max_entries = max_entries
        self.flush_interval = flush_interval

        self._entries: Deque[Dict[str, Any]] = deque(maxlen=max_entries)
        self._unflushed: List[Dict[str, Any]] = []
        self._lines_on_disk = 0
        self._lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._unsubscribers: List[Callable[[], None]] = []

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="job_history")

    def attach(self, event_bus: EventBus):
        """Record job lifecycle events published on ``event_bus``."""
        for event in RECORDED_EVENTS:
            self._unsubscribers.append(event_bus.on(event, self.record))

    def detach(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def record(self, event: str, payload: Dict[str, Any]):
        """Append one status update built from a job event payload."""
        job = payload.get("job") or {}
        error = job.get("error") or {}
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "job_id": payload.get("job_id"),
            "job_type": payload.get("job_type"),
            "status": job.get("status"),
            "attempts": job.get("attempts"),
            "retry_count": job.get("retry_count"),
            "worker_id": payload.get("worker_id", job.get("worker_id")),
            "error": error.get("message")
        }
        self._entries.append(entry)
        if self.path is not None:
            self._unflushed.append(entry)
            if len(self._unflushed) > self.max_entries:
                del self._unflushed[:-self.max_entries]

    def get_entries(self, job_id: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Entries oldest first, optionally for one job and/or only the latest ``limit``."""
        entries = [entry for entry in self._entries if job_id is None or entry["job_id"] == job_id]
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def __len__(self) -> int:
        return len(self._entries)

    async def start(self):
        """Count existing file lines and start the periodic flush."""
        if self.path is None or self._flush_task is not None:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        if await aiofiles.os.path.exists(self.path):
            async with aiofiles.open(self.path, "r", encoding="utf-8") as handle:
                self._lines_on_disk = sum(1 for line in (await handle.read()).splitlines() if line.strip())

        self._stop_event.clear()
        self._flush_task = asyncio.create_task(self._flush_loop())
        self.logger.info("Job history persistence started", extra={
            "path": str(self.path),
            "existing_entries": self._lines_on_disk
        })

    async def stop(self):
        """Stop the periodic flush and write what is left."""
        self._stop_event.set()
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        await self.flush()

    async def flush(self) -> int:
        """Append unflushed entries to the history file; returns how many were written."""
        if self.path is None or not self._unflushed:
            return 0

        async with self._lock:
            batch, self._unflushed = self._unflushed, []
            lines = "".join(json.dumps(entry, default=str) + "\n" for entry in batch)
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(self.path, "a", encoding="utf-8") as handle:
                    await handle.write(lines)
            except OSError:
                # Keep at most max_entries pending lines
                self._unflushed = (batch + self._unflushed)[-self.max_entries:]
                self.logger.error("Failed to write job history", exc_info=True, extra={"path": str(self.path)})
                raise

            self._lines_on_disk += len(batch)
            if self._lines_on_disk > 2 * self.max_entries:
                await self._compact()
            return len(batch)

    async def load(self) -> List[Dict[str, Any]]:
        """Read the persisted history back; malformed lines are skipped."""
        if self.path is None or not await aiofiles.os.path.exists(self.path):
            return []

        entries = []
        async with aiofiles.open(self.path, "r", encoding="utf-8") as handle:
            async for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    self.logger.warning("Skipping malformed history line", extra={"path": str(self.path)})
        return entries

    async def _compact(self):
        async with aiofiles.open(self.path, "r", encoding="utf-8") as handle:
            lines = [line for line in (await handle.read()).splitlines() if line.strip()]
        kept = lines[-self.max_entries:]

        temp_path = self.path.with_name(self.path.name + ".tmp")
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as handle:
            await handle.write("".join(line + "\n" for line in kept))
        await aiofiles.os.replace(temp_path, self.path)

        self.logger.info("Job history compacted", extra={
            "path": str(self.path),
            "dropped": len(lines) - len(kept)
        })
        self._lines_on_disk = len(kept)

    async def _flush_loop(self):
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.flush_interval)
            except asyncio.TimeoutError:
                pass
            try:
                await self.flush()
            except OSError:
                # Already logged; keep the entries for the next round
                continue


async def read_history_file(path: str, job_id: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Load a persisted history file, optionally filtered by job and trimmed to the latest ``limit``."""
    entries = await JobHistory(path=path).load()
    if job_id is not None:
        entries = [entry for entry in entries if entry.get("job_id") == job_id]
    if limit is not None:
        entries = entries[-limit:] if limit > 0 else []
    return entries
