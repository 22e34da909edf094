from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Protocol, Tuple

from mcstatus import JavaServer

NIL_UUID = "00000000-0000-0000-0000-000000000000"


def utcnow_naive() -> datetime:
    """Return current UTC time without tzinfo, matching SQLite storage."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class StatusQueryError(Exception):
    def __init__(self, message: str, transport: bool = True):
        super().__init__(message)
        self.transport = transport


@dataclass(frozen=True)
class MinecraftPlayer:
    uuid: str
    username: str


@dataclass(frozen=True)
class ServerStatusSnapshot:
    online_players: Tuple[MinecraftPlayer, ...]
    player_count: int
    max_players: int
    timestamp: datetime


class StatusClientLike(Protocol):
    async def fetch_status(
        self, host: str, port: int, timeout_ms: int
    ) -> ServerStatusSnapshot: ...


def build_snapshot(
    sample: Iterable[Any] | None,
    online: int,
    maximum: int,
    timestamp: datetime | None = None,
) -> ServerStatusSnapshot:
    players = []
    for entry in sample or []:
        player_id = str(getattr(entry, "id", "") or "")
        # Servers use the nil UUID for decorative lines in the hover sample.
        if not player_id or player_id == NIL_UUID:
            continue
        players.append(
            MinecraftPlayer(uuid=player_id, username=str(getattr(entry, "name", "")))
        )
    return ServerStatusSnapshot(
        online_players=tuple(players),
        player_count=int(online or 0),
        max_players=int(maximum or 0),
        timestamp=timestamp or utcnow_naive(),
    )


class MinecraftStatusClient:
    """Status Query Client backed by the Minecraft server list ping."""

    async def fetch_status(
        self, host: str, port: int, timeout_ms: int
    ) -> ServerStatusSnapshot:
        timeout = timeout_ms / 1000
        server = JavaServer(host, port, timeout=timeout)
        try:
            response = await asyncio.wait_for(server.async_status(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise StatusQueryError(
                f"Status query to {host}:{port} timed out after {timeout_ms}ms"
            ) from exc
        except OSError as exc:
            # Refused connections, DNS failures and dropped sockets. Bad JSON
            # surfaces as ValueError or KeyError and is treated as unexpected.
            raise StatusQueryError(
                f"Status query to {host}:{port} failed: {exc}"
            ) from exc
        players = response.players
        return build_snapshot(players.sample, players.online, players.max)
