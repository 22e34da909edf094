from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

LOGGER = logging.getLogger(__name__)

SESSION_START = "sessionStart"
SESSION_END = "sessionEnd"
STATUS_UPDATE = "statusUpdate"
SERVER_OFFLINE = "serverOffline"
SERVER_ONLINE = "serverOnline"
ERROR = "error"

EVENT_NAMES = frozenset(
    {SESSION_START, SESSION_END, STATUS_UPDATE, SERVER_OFFLINE, SERVER_ONLINE, ERROR}
)

Listener = Callable[..., Any]
QueuedEvent = Tuple[str, Tuple[Any, ...]]


@dataclass(frozen=True)
class SessionStartEvent:
    uuid: str
    username: str
    server_id: int
    session_start: datetime


@dataclass(frozen=True)
class SessionEndEvent:
    session_id: int
    uuid: str
    username: str
    server_id: int
    session_start: datetime
    session_end: datetime
    seconds_played: int


class EventEmitter:
    """Listener registry keyed by event name.

    Every listener runs inside its own error boundary. Coroutine listeners
    are scheduled on the running loop and never awaited by ``emit``.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {name: [] for name in EVENT_NAMES}
        self._queues: List[asyncio.Queue[QueuedEvent]] = []
        self._pending: Set[asyncio.Task[Any]] = set()

    def on(self, event: str, listener: Optional[Listener] = None):
        if event not in EVENT_NAMES:
            raise ValueError(
                f"Unknown event '{event}'. Must be one of {sorted(EVENT_NAMES)}"
            )
        if listener is None:

            def decorator(func: Listener) -> Listener:
                self._listeners[event].append(func)
                return func

            return decorator
        self._listeners[event].append(listener)
        return listener

    def off(self, event: str, listener: Listener) -> bool:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)
            return True
        return False

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def subscribe(self, maxsize: int = 1000) -> asyncio.Queue[QueuedEvent]:
        queue: asyncio.Queue[QueuedEvent] = asyncio.Queue(maxsize=maxsize)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[QueuedEvent]) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def emit(self, event: str, *args: Any) -> bool:
        for queue in list(self._queues):
            self._enqueue(queue, event, args)
        listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            try:
                result = listener(*args)
            except Exception as exc:
                LOGGER.exception("Listener for '%s' failed: %s", event, exc)
                continue
            if inspect.isawaitable(result):
                self._schedule(event, result)
        return bool(listeners)

    def _enqueue(
        self, queue: asyncio.Queue[QueuedEvent], event: str, args: Tuple[Any, ...]
    ) -> None:
        if queue.full():
            dropped_event, _ = queue.get_nowait()
            queue.task_done()
            LOGGER.warning(
                "Event queue full; dropped oldest '%s' event to make room for '%s'",
                dropped_event,
                event,
            )
        queue.put_nowait((event, args))

    def _schedule(self, event: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
            task = asyncio.ensure_future(awaitable, loop=loop)
        except RuntimeError as exc:
            LOGGER.error("Cannot schedule async listener for '%s': %s", event, exc)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        self._pending.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._pending.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                LOGGER.error(
                    "Async listener for '%s' failed: %s",
                    event,
                    exc,
                    exc_info=exc,
                )

        task.add_done_callback(_done)
