from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from .events import (
    SESSION_END,
    SESSION_START,
    QueuedEvent,
    SessionEndEvent,
    SessionStartEvent,
)
from .models import (
    close_open_sessions,
    create_session,
    discard_session,
    finish_session,
)
from .service import PlaytimeService

LOGGER = logging.getLogger(__name__)


class SessionRecorder:
    """Persists session lifecycle events for one engine.

    Events are drained from the engine's outbound queue by a worker task so
    database writes never run inside a poll cycle. Durable ids are handed
    back through ``attach_session_id``.
    """

    def __init__(self, service: PlaytimeService, queue_size: int = 1000):
        self.service = service
        self.queue_size = queue_size
        self.queue: Optional[asyncio.Queue[QueuedEvent]] = None
        self.worker_task: asyncio.Task[None] | None = None

    def connect(self) -> None:
        if self.worker_task:
            return
        loop = asyncio.get_running_loop()
        closed = close_open_sessions(self.service.server_id)
        if closed:
            LOGGER.info(
                "Closed %s orphaned session row(s) for server %s",
                closed,
                self.service.server_id,
            )
        self.queue = self.service.subscribe(self.queue_size)
        self.worker_task = loop.create_task(self._worker(self.queue))
        LOGGER.info("SessionRecorder connected to server %s", self.service.server_id)

    async def close(self) -> None:
        if not self.worker_task or self.queue is None:
            return
        await self.queue.join()
        self.service.unsubscribe(self.queue)
        self.worker_task.cancel()
        try:
            await self.worker_task
        except asyncio.CancelledError:
            pass
        self.worker_task = None
        self.queue = None

    def abort(self) -> None:
        """Detach without draining; used when the server failed to start."""
        if self.queue is not None:
            self.service.unsubscribe(self.queue)
        if self.worker_task:
            self.worker_task.cancel()
        self.worker_task = None
        self.queue = None

    async def _worker(self, queue: asyncio.Queue[QueuedEvent]):
        while True:
            event, args = await queue.get()
            try:
                self.handle(event, *args)
            except Exception as exc:
                LOGGER.exception(
                    "Failed to record '%s' for server %s: %s",
                    event,
                    self.service.server_id,
                    exc,
                )
            finally:
                queue.task_done()

    def handle(self, event: str, *args: Any) -> None:
        if event == SESSION_START:
            self.record_start(args[0])
        elif event == SESSION_END:
            self.record_end(args[0])

    def record_start(self, event: SessionStartEvent) -> Optional[int]:
        row = create_session(
            event.uuid, event.username, event.server_id, event.session_start
        )
        current = self.service.get_session(event.uuid)
        if current is None or current.session_start != event.session_start:
            # The engine already dropped this session; keep no open row for it.
            discard_session(row.id)
            LOGGER.warning(
                "Session for %s (%s) ended before it was recorded; discarded row %s",
                event.username,
                event.uuid,
                row.id,
            )
            return None
        self.service.attach_session_id(event.uuid, row.id)
        LOGGER.info(
            "Session started: %s (%s) - ID: %s", event.username, event.uuid, row.id
        )
        return row.id

    def record_end(self, event: SessionEndEvent) -> bool:
        finished = finish_session(
            event.session_id, event.session_end, event.seconds_played
        )
        if not finished:
            LOGGER.warning(
                "No open session row %s to finish for %s (%s)",
                event.session_id,
                event.username,
                event.uuid,
            )
            return False
        LOGGER.info(
            "Session ended: %s (%s) - %ss",
            event.username,
            event.uuid,
            event.seconds_played,
        )
        return True
