"""
Lifecycle events for the Conversion Job Orchestrator

The event names below are part of the public contract. Every payload is a
plain dict; job events carry ``job_id``, ``job_type`` and ``job`` (the
``Job.to_dict()`` snapshot), worker events carry ``worker_id`` and, when a
job is involved, ``job_id``.
"""

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional

from ..utils.logger import get_logger

# Job lifecycle
JOB_QUEUED = "job:queued"
JOB_PRIORITY = "job:priority"
JOB_PROCESS = "job:process"          # a job is ready to be claimed
JOB_STARTED = "job:started"
JOB_PROGRESS = "job:progress"
JOB_RETRYING = "job:retrying"
JOB_COMPLETED = "job:completed"
JOB_FAILED = "job:failed"
JOB_CANCELLED = "job:cancelled"

# Worker lifecycle
WORKER_CREATED = "worker:created"
WORKER_REMOVED = "worker:removed"
WORKER_TIMEOUT = "worker:timeout"
WORKER_RECOVERED = "worker:recovered"
WORKER_JOB_CANCELLED = "worker:job_cancelled"

JOB_TERMINAL_EVENTS = (JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED)

ALL_EVENTS = (
    JOB_QUEUED,
    JOB_PRIORITY,
    JOB_PROCESS,
    JOB_STARTED,
    JOB_PROGRESS,
    JOB_RETRYING,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_CANCELLED,
    WORKER_CREATED,
    WORKER_REMOVED,
    WORKER_TIMEOUT,
    WORKER_RECOVERED,
    WORKER_JOB_CANCELLED,
)

EventHandler = Callable[[str, Dict[str, Any]], Any]


class EventBus:
    """
    Synchronous publish/subscribe hub shared by the scheduling components.

    Handlers receive ``(event_name, payload)``. A handler returning an
    awaitable is scheduled on the running loop. A failing handler is logged
    and never breaks the emitter or the other handlers.
    """

    WILDCARD = "*"

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = {}
        self.logger = get_logger(__name__)

    def on(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to an event (or ``*`` for all); returns an unsubscribe callable."""
        self._handlers.setdefault(event, []).append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: EventHandler) -> bool:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def emit(self, event: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """Deliver an event to its subscribers; returns the number of handlers called."""
        payload = payload or {}
        handlers = list(self._handlers.get(event, [])) + list(self._handlers.get(self.WILDCARD, []))

        for handler in handlers:
            try:
                outcome = handler(event, payload)
                if inspect.isawaitable(outcome):
                    asyncio.ensure_future(outcome)
            except Exception:
                self.logger.error("Event handler failed", exc_info=True, extra={
                    "event": event,
                    "handler": getattr(handler, "__qualname__", repr(handler))
                })

        return len(handlers)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))
