"""Hydration progress events and their delivery onto the primary thread.

Observers always run on the dispatcher's primary thread.  Events emitted from
any other thread (the background hydration worker) are posted to a
single-consumer queue that the primary loop drains with
:meth:`EventDispatcher.drain`.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

logger = logging.getLogger("ToolVault.Hydration.events")

__all__ = ["HydrationEventType", "HydrationEvent", "Observer", "EventDispatcher"]


class HydrationEventType(str, Enum):
    TOOL_STARTED = "tool.started"
    TOOL_PROGRESS = "tool.progress"
    TOOL_COMPLETED = "tool.completed"
    BATCH_COMPLETED = "batch.completed"


@dataclass(frozen=True)
class HydrationEvent:
    """One observer-visible event.

    ``downloaded``/``total`` are set for progress events, ``success``/``reason``
    for tool completion, and ``report`` for batch completion.
    """

    type: HydrationEventType
    tool_id: str = ""
    version: str = ""
    downloaded: int = 0
    total: int = 0
    success: Optional[bool] = None
    reason: str = ""
    report: Any = None


Observer = Callable[[HydrationEvent], None]


class EventDispatcher:
    """Fan events out to observers without ever running them off the primary thread."""

    def __init__(self, primary_thread: Optional[threading.Thread] = None) -> None:
        self._primary = primary_thread or threading.current_thread()
        self._observers: List[Observer] = []
        self._lock = threading.Lock()
        self._queue: "queue.Queue[HydrationEvent]" = queue.Queue()

    @property
    def primary_thread(self) -> threading.Thread:
        return self._primary

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register ``observer`` and return a callable that unregisters it."""
        with self._lock:
            self._observers.append(observer)

        def unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe

    def emit(self, event: HydrationEvent) -> None:
        if threading.current_thread() is self._primary:
            self._deliver(event)
        else:
            self._queue.put(event)

    def pending(self) -> int:
        """Approximate number of queued events awaiting :meth:`drain`."""
        return self._queue.qsize()

    def drain(self, max_events: Optional[int] = None) -> int:
        """Deliver queued events on the calling (primary) thread; returns the count delivered."""
        if threading.current_thread() is not self._primary:
            raise RuntimeError("EventDispatcher.drain must be called from the primary thread")
        delivered = 0
        while max_events is None or delivered < max_events:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                break
            self._deliver(event)
            delivered += 1
        return delivered

    def _deliver(self, event: HydrationEvent) -> None:
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(event)
            except Exception:
                logger.exception(
                    "observer failed",
                    extra={"stage": "events", "extra_fields": {"event": event.type.value}},
                )
