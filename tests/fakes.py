import asyncio
from datetime import datetime, timedelta
from typing import Any, List, Optional

from playtime.status import MinecraftPlayer, ServerStatusSnapshot, StatusQueryError

BASE_TIME = datetime(2025, 6, 1, 12, 0, 0)


def snapshot(*players, max_players: int = 20, timestamp: Optional[datetime] = None):
    online = tuple(MinecraftPlayer(uuid=uuid, username=name) for uuid, name in players)
    return ServerStatusSnapshot(
        online_players=online,
        player_count=len(online),
        max_players=max_players,
        timestamp=timestamp or BASE_TIME,
    )


class FakeClock:
    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)

    def set_offset(self, seconds: float):
        self.now = BASE_TIME + timedelta(seconds=seconds)


class FakeStatusClient:
    """Replays scripted snapshots or exceptions, one per fetch."""

    def __init__(self, responses: Optional[List[Any]] = None, repeat_last=False):
        self.responses = list(responses or [])
        self.repeat_last = repeat_last
        self.calls: List[tuple] = []
        self.gate: Optional[asyncio.Event] = None

    def queue(self, *responses):
        self.responses.extend(responses)

    async def fetch_status(self, host: str, port: int, timeout_ms: int):
        self.calls.append((host, port, timeout_ms))
        if self.gate is not None:
            await self.gate.wait()
        if not self.responses:
            raise StatusQueryError("no scripted response")
        if self.repeat_last and len(self.responses) == 1:
            response = self.responses[0]
        else:
            response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response
