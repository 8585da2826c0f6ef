"""Immutable change events and a small in-process publish/subscribe bus."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Union

from .registry import InstanceSnapshot, ServerStatus

_LOGGER = logging.getLogger(__name__)


class TransitionKind(str, Enum):
    STARTED = "started"
    # Went offline while an operation of ours held the instance.
    STOPPED = "stopped"
    STOPPED_UNEXPECTEDLY = "stopped_unexpectedly"
    SHUTDOWN_COMPLETED = "shutdown_completed"


@dataclass(frozen=True)
class InstanceUpdated:
    name: str
    snapshot: InstanceSnapshot


@dataclass(frozen=True)
class StatusTransition:
    name: str
    previous: ServerStatus
    current: ServerStatus
    kind: TransitionKind


@dataclass(frozen=True)
class OperationProgress:
    name: str
    operation: str
    message: str
    remaining: Optional[int] = None


@dataclass(frozen=True)
class OperationOutput:
    name: str
    operation: str
    line: str


@dataclass(frozen=True)
class OperationFinished:
    name: str
    operation: str
    ok: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class ConnectionLostEvent:
    host: str
    reason: str


Event = Union[
    InstanceUpdated,
    StatusTransition,
    OperationProgress,
    OperationOutput,
    OperationFinished,
    ConnectionLostEvent,
]
Listener = Callable[[Event], None]


class EventBus:
    """Fan events out to callbacks and bounded asyncio queues.

    Publishing never blocks: a full queue loses its oldest event.
    """

    def __init__(self, queue_size: int = 1000) -> None:
        self._listeners: List[Listener] = []
        self._queues: List[asyncio.Queue] = []
        self._queue_size = queue_size

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; the returned callable removes it again."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def publish(self, event: Event) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # pragma: no cover - consumer bug
                _LOGGER.exception("Event listener %r failed for %s", listener, type(event).__name__)
        for queue in list(self._queues):
            if queue.full():
                _LOGGER.warning("Event queue full; dropping oldest event")
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:  # pragma: no cover - race with consumer
                    pass
            queue.put_nowait(event)
