"""
Progress publication and lifecycle events for the batch engine

Two channels decouple reporting from execution:
- ProgressChannel: fan-out of ProgressSnapshots to ProgressObservers,
  invoked at most once per task completion
- EventBus: async publish-subscribe for batch lifecycle events
  (batch started, task retrying, task failed, ...)

A failing observer or handler is logged and isolated; it never affects
the batch.
"""
import time
import asyncio
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional

from batch_engine.models.task import ProgressSnapshot

logger = logging.getLogger(__name__)


class ProgressObserver:
    """
    Receives a ProgressSnapshot after each task completion

    Subclasses override on_progress. Called from the engine's event loop
    thread; implementations must not block for long.
    """

    def on_progress(self, snapshot: ProgressSnapshot) -> None:
        raise NotImplementedError


class CallbackObserver(ProgressObserver):
    """Adapts a plain callable into an observer"""

    def __init__(self, callback: Callable[[ProgressSnapshot], Any]):
        self.callback = callback

    def on_progress(self, snapshot: ProgressSnapshot) -> None:
        self.callback(snapshot)


class QueueProgressObserver(ProgressObserver):
    """
    Message-channel observer

    Snapshots are pushed onto an asyncio.Queue that a consumer coroutine
    drains at its own cadence.
    """

    def __init__(self, maxsize: int = 0):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def on_progress(self, snapshot: ProgressSnapshot) -> None:
        try:
            self.queue.put_nowait(snapshot)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug("Progress queue full, dropping snapshot")

    def drain(self) -> List[ProgressSnapshot]:
        """Return all queued snapshots without waiting"""
        snapshots = []
        while not self.queue.empty():
            snapshots.append(self.queue.get_nowait())
        return snapshots


class ProgressChannel:
    """
    Thread-safe fan-out of progress snapshots

    Subscription changes are guarded by a lock; publication works on a
    copy of the observer list so observers may unsubscribe while being
    notified.
    """

    def __init__(self, observers: Optional[List[ProgressObserver]] = None):
        self._observers: List[ProgressObserver] = list(observers or [])
        self._lock = threading.Lock()
        self.published = 0
        self.observer_errors: List[tuple] = []

    def subscribe(self, observer: ProgressObserver) -> None:
        with self._lock:
            self._observers.append(observer)

    def unsubscribe(self, observer: ProgressObserver) -> None:
        with self._lock:
            try:
                self._observers.remove(observer)
            except ValueError:
                logger.warning("Observer not subscribed")

    @property
    def observers(self) -> List[ProgressObserver]:
        with self._lock:
            return list(self._observers)

    def publish(self, snapshot: ProgressSnapshot) -> None:
        """Deliver a snapshot to every observer"""
        with self._lock:
            observers = list(self._observers)
            self.published += 1

        for observer in observers:
            try:
                observer.on_progress(snapshot)
            except Exception as e:
                logger.error(
                    f"Progress observer {type(observer).__name__} failed: {e}", exc_info=e
                )
                with self._lock:
                    self.observer_errors.append((snapshot, e))


class BatchEventType(str, Enum):
    """Lifecycle events emitted by the engine"""

    BATCH_STARTED = "batch_started"
    BATCH_COMPLETED = "batch_completed"
    BATCH_CANCELLED = "batch_cancelled"

    TASK_DISPATCHED = "task_dispatched"
    TASK_SUCCEEDED = "task_succeeded"
    TASK_RETRYING = "task_retrying"
    TASK_FAILED = "task_failed"


@dataclass(frozen=True)
class Event:
    """Immutable lifecycle event"""

    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    source: Optional[str] = None

    def __str__(self) -> str:
        return f"Event({self.type}, source={self.source}, data_keys={list(self.data.keys())})"


EventHandler = Callable[[Event], Coroutine[Any, Any, None]]


def _event_key(event_type) -> str:
    return event_type.value if isinstance(event_type, Enum) else str(event_type)


class EventBus:
    """
    Publish-subscribe bus for lifecycle events

    Features:
    - Async event handlers, run concurrently per event
    - Wildcard ("*") handlers
    - Error isolation between handlers
    - Optional bounded event history
    """

    def __init__(self, keep_history: bool = False, max_history: int = 1000):
        """
        Initialize event bus

        Args:
            keep_history: Whether to store event history
            max_history: Maximum number of events to keep in history
        """
        self.handlers: Dict[str, List[EventHandler]] = {}
        self.keep_history = keep_history
        self.max_history = max_history
        self.history: List[Event] = []
        self._handler_errors: List[tuple] = []

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Register an async handler for an event type (or "*")"""
        self.handlers.setdefault(_event_key(event_type), []).append(handler)
        logger.debug(f"Registered handler for {event_type}")

    def off(self, event_type: str, handler: EventHandler) -> None:
        """Unregister a handler"""
        try:
            self.handlers.get(_event_key(event_type), []).remove(handler)
            logger.debug(f"Unregistered handler for {event_type}")
        except ValueError:
            logger.warning(f"Handler not found for {event_type}")

    async def emit(
        self,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        source: Optional[str] = None,
    ) -> Event:
        """
        Emit an event to all registered handlers

        Args:
            event_type: The type of event
            data: Event data dictionary
            source: Component that emitted the event

        Returns:
            The emitted Event object
        """
        key = _event_key(event_type)
        event = Event(type=key, data=data or {}, source=source)

        if self.keep_history:
            self.history.append(event)
            if len(self.history) > self.max_history:
                self.history = self.history[-self.max_history:]

        handlers = list(self.handlers.get(key, [])) + list(self.handlers.get("*", []))
        if not handlers:
            return event

        results = await asyncio.gather(
            *[handler(event) for handler in handlers],
            return_exceptions=True,
        )

        for i, result in enumerate(results):
            if isinstance(result, Exception):
                logger.error(f"Handler {i} for {key} failed: {result}", exc_info=result)
                self._handler_errors.append((event, result))

        return event

    def get_history(self, event_type: Optional[str] = None) -> List[Event]:
        """Get recorded events, optionally filtered by type"""
        if not self.keep_history:
            logger.warning("Event history is disabled")
            return []

        if event_type is None:
            return self.history.copy()
        key = _event_key(event_type)
        return [e for e in self.history if e.type == key]

    def get_errors(self) -> List[tuple]:
        """Get (event, exception) pairs for failed handlers"""
        return self._handler_errors.copy()
