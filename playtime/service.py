from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from .config import TrackerConfig
from .events import (
    ERROR,
    SERVER_OFFLINE,
    SERVER_ONLINE,
    SESSION_END,
    SESSION_START,
    STATUS_UPDATE,
    EventEmitter,
    SessionEndEvent,
    SessionStartEvent,
)
from .status import (
    MinecraftPlayer,
    MinecraftStatusClient,
    ServerStatusSnapshot,
    StatusClientLike,
    StatusQueryError,
    utcnow_naive,
)

LOGGER = logging.getLogger(__name__)


@dataclass
class ActiveSession:
    uuid: str
    username: str
    server_id: int
    session_start: datetime
    session_id: Optional[int] = None


@dataclass(frozen=True)
class ServiceStatus:
    is_running: bool
    active_sessions: int
    consecutive_failures: int
    is_server_offline: bool
    config: TrackerConfig

    def to_dict(self) -> dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "activeSessions": self.active_sessions,
            "consecutiveFailures": self.consecutive_failures,
            "isServerOffline": self.is_server_offline,
            "config": self.config.to_dict(),
        }


def is_transport_error(exc: BaseException) -> bool:
    if isinstance(exc, StatusQueryError):
        return exc.transport
    return isinstance(exc, (asyncio.TimeoutError, OSError))


def seconds_between(start: datetime, end: datetime) -> int:
    return math.floor((end - start).total_seconds())


class PlaytimeService(EventEmitter):
    """Tracks player sessions on one Minecraft server by polling its status.

    Join and leave transitions are derived by diffing each snapshot against
    the in-memory session map, keyed by player UUID. Lifecycle changes are
    announced through the ``sessionStart``/``sessionEnd`` events; a
    persistence collaborator correlates durable ids back through
    ``attach_session_id``.

    Poll failures never stop the loop. After ``MAX_FAILURES_BEFORE_CLEANUP``
    consecutive failures the server is treated as unreachable and every
    session is force-ended; the next successful poll starts fresh sessions.

    All state lives on the event loop that called ``start()``; nothing here
    is thread-safe.
    """

    MAX_FAILURES_BEFORE_CLEANUP = 2

    def __init__(
        self,
        config: TrackerConfig,
        client: StatusClientLike | None = None,
        clock: Callable[[], datetime] = utcnow_naive,
    ):
        super().__init__()
        if not isinstance(config, TrackerConfig):
            raise TypeError("config must be a TrackerConfig")
        self.config = config
        self.client = client or MinecraftStatusClient()
        self._clock = clock
        self._sessions: Dict[str, ActiveSession] = {}
        self._running = False
        self._run_token: object | None = None
        self._stop_event: asyncio.Event | None = None
        self._tasks: Set[asyncio.Task[None]] = set()
        self._poll_token: object | None = None
        self._consecutive_failures = 0
        self._server_offline = False

    @property
    def server_id(self) -> int:
        return self.config.server_id

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_server_offline(self) -> bool:
        return self._server_offline

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def start(self) -> None:
        """Begin polling after the startup delay. Requires a running loop."""
        if self._running:
            LOGGER.warning(
                "PlaytimeService for server %s is already running", self.server_id
            )
            return
        loop = asyncio.get_running_loop()
        self._running = True
        self._consecutive_failures = 0
        self._server_offline = False
        token = object()
        stop_event = asyncio.Event()
        self._run_token = token
        self._stop_event = stop_event
        LOGGER.info(
            "Starting PlaytimeService for %s:%s (server %s, first poll in %sms)",
            self.config.host,
            self.config.port,
            self.server_id,
            self.config.initial_delay_ms,
        )
        task = loop.create_task(self._run(token, stop_event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def stop(self) -> None:
        """Stop polling and finalize every active session."""
        if not self._running:
            return
        self._run_token = None
        if self._stop_event is not None:
            self._stop_event.set()
        self._end_all_sessions()
        self._running = False
        LOGGER.info("PlaytimeService for server %s stopped", self.server_id)

    async def wait_closed(self) -> None:
        """Wait for every loop task started so far, including earlier runs."""
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _is_current(self, token: object | None) -> bool:
        return self._running and token is not None and token is self._run_token

    async def _run(self, token: object, stop_event: asyncio.Event) -> None:
        if await self._wait(stop_event, self.config.initial_delay_ms / 1000):
            return
        loop = asyncio.get_running_loop()
        interval = self.config.poll_interval_ms / 1000
        while self._is_current(token):
            started = loop.time()
            try:
                await self.poll()
            except Exception as exc:
                LOGGER.exception(
                    "Poll cycle for server %s failed: %s", self.server_id, exc
                )
            delay = max(0.0, interval - (loop.time() - started))
            if await self._wait(stop_event, delay):
                return

    @staticmethod
    async def _wait(stop_event: asyncio.Event, seconds: float) -> bool:
        """Sleep up to ``seconds``; True means the run was stopped meanwhile."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def poll(self) -> None:
        """Run one poll cycle: query, then diff the snapshot into sessions."""
        token = self._run_token
        if not self._is_current(token):
            LOGGER.debug("Skipping poll; server %s is not tracked", self.server_id)
            return
        # A query left over from a stopped run does not block this run.
        if self._poll_token is token:
            LOGGER.debug(
                "Skipping poll for server %s; previous poll still running",
                self.server_id,
            )
            return
        self._poll_token = token
        try:
            try:
                snapshot = await self.client.fetch_status(
                    self.config.host, self.config.port, self.config.status_timeout_ms
                )
            except Exception as exc:
                if not self._is_current(token):
                    LOGGER.debug(
                        "Discarding failed poll for stopped server %s: %s",
                        self.server_id,
                        exc,
                    )
                    return
                self._handle_poll_failure(exc)
                return
            if not self._is_current(token):
                LOGGER.debug(
                    "Discarding poll result for stopped server %s", self.server_id
                )
                return
            self._handle_poll_success(snapshot, token)
        finally:
            if self._poll_token is token:
                self._poll_token = None

    def _handle_poll_success(
        self, snapshot: ServerStatusSnapshot, token: object
    ) -> None:
        if self._consecutive_failures > 0:
            LOGGER.info(
                "Server %s connection restored after %s failed poll(s)",
                self.server_id,
                self._consecutive_failures,
            )
        self._consecutive_failures = 0
        if self._server_offline:
            self._server_offline = False
            self.emit(SERVER_ONLINE)

        self.emit(STATUS_UPDATE, snapshot)
        if not self._is_current(token):
            return

        online: Dict[str, MinecraftPlayer] = {}
        for player in snapshot.online_players:
            online[player.uuid] = player

        # Listeners may stop the engine mid-diff; stop() has already
        # finalized whatever was tracked at that point.
        for uuid, player in online.items():
            if not self._is_current(token):
                return
            session = self._sessions.get(uuid)
            if session is None:
                self._handle_player_join(player)
            elif session.username != player.username:
                LOGGER.debug(
                    "Updated username for %s: %s -> %s",
                    uuid,
                    session.username,
                    player.username,
                )
                session.username = player.username

        departed = [uuid for uuid in self._sessions if uuid not in online]
        for uuid in departed:
            if not self._is_current(token):
                return
            session = self._sessions.pop(uuid, None)
            if session is not None:
                self._handle_player_leave(session)

        if online:
            LOGGER.info(
                "Synced %s online player(s) on server %s", len(online), self.server_id
            )

    def _handle_poll_failure(self, exc: Exception) -> None:
        self._consecutive_failures += 1
        if is_transport_error(exc):
            LOGGER.debug(
                "Poll of server %s failed (attempt %s/%s): %s",
                self.server_id,
                self._consecutive_failures,
                self.MAX_FAILURES_BEFORE_CLEANUP,
                exc,
            )
        else:
            LOGGER.error(
                "Poll of server %s failed with unexpected error: %s",
                self.server_id,
                exc,
                exc_info=exc,
            )

        self.emit(ERROR, exc)

        if (
            self._consecutive_failures >= self.MAX_FAILURES_BEFORE_CLEANUP
            and not self._server_offline
        ):
            LOGGER.warning(
                "Server %s unreachable for %s consecutive polls - ending all active sessions",
                self.server_id,
                self._consecutive_failures,
            )
            self._server_offline = True
            self.emit(SERVER_OFFLINE)
            self._end_all_sessions()

    def _handle_player_join(self, player: MinecraftPlayer) -> None:
        session = ActiveSession(
            uuid=player.uuid,
            username=player.username,
            server_id=self.server_id,
            session_start=self._clock(),
        )
        self._sessions[player.uuid] = session
        LOGGER.debug("Session started for %s (%s)", player.username, player.uuid)
        self.emit(
            SESSION_START,
            SessionStartEvent(
                uuid=session.uuid,
                username=session.username,
                server_id=session.server_id,
                session_start=session.session_start,
            ),
        )

    def _handle_player_leave(self, session: ActiveSession) -> None:
        now = self._clock()
        seconds_played = seconds_between(session.session_start, now)
        # Known gap: a session whose durable id has not arrived yet is
        # dropped without a sessionEnd, so its playtime is never recorded.
        if session.session_id is None:
            LOGGER.warning(
                "Cannot emit sessionEnd for %s (%s) - no session id set after %ss. "
                "The persistence layer may not have processed sessionStart yet.",
                session.username,
                session.uuid,
                seconds_played,
            )
            return
        LOGGER.debug(
            "Session ended for %s (%s) - %ss played",
            session.username,
            session.uuid,
            seconds_played,
        )
        self.emit(
            SESSION_END,
            SessionEndEvent(
                session_id=session.session_id,
                uuid=session.uuid,
                username=session.username,
                server_id=session.server_id,
                session_start=session.session_start,
                session_end=now,
                seconds_played=seconds_played,
            ),
        )

    def _end_all_sessions(self) -> None:
        if not self._sessions:
            return
        sessions = list(self._sessions.values())
        self._sessions.clear()
        LOGGER.info(
            "Ending %s active session(s) on server %s", len(sessions), self.server_id
        )
        for session in sessions:
            self._handle_player_leave(session)

    def attach_session_id(self, uuid: str, session_id: int) -> None:
        session = self._sessions.get(uuid)
        if session is None:
            LOGGER.warning(
                "Cannot set session id %s for %s - session not found",
                session_id,
                uuid,
            )
            return
        session.session_id = session_id
        LOGGER.debug("Set session id %s for player %s", session_id, uuid)

    def get_active_sessions(self) -> List[ActiveSession]:
        return [replace(session) for session in self._sessions.values()]

    def get_session(self, uuid: str) -> Optional[ActiveSession]:
        session = self._sessions.get(uuid)
        return replace(session) if session else None

    def is_player_online(self, uuid: str) -> bool:
        return uuid in self._sessions

    def get_online_count(self) -> int:
        return len(self._sessions)

    def get_session_duration(self, uuid: str) -> Optional[int]:
        session = self._sessions.get(uuid)
        if session is None:
            return None
        return seconds_between(session.session_start, self._clock())

    def get_status(self) -> ServiceStatus:
        return ServiceStatus(
            is_running=self._running,
            active_sessions=len(self._sessions),
            consecutive_failures=self._consecutive_failures,
            is_server_offline=self._server_offline,
            config=self.config,
        )
