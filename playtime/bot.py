from __future__ import annotations

import asyncio
import logging
from typing import Optional

import discord
from discord.ext import commands

from .config import BotConfig, load_config
from .events import SERVER_OFFLINE, STATUS_UPDATE
from .manager import PlaytimeManager
from .models import close_db, init_db
from .service import PlaytimeService
from .status import ServerStatusSnapshot, StatusClientLike

# Default to INFO until the configured level is applied at startup
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s"
)
LOGGER = logging.getLogger(__name__)

OFFLINE_PRESENCE = "Server offline"


def format_presence(snapshot: Optional[ServerStatusSnapshot]) -> str:
    if snapshot is None:
        return OFFLINE_PRESENCE
    noun = "player" if snapshot.player_count == 1 else "players"
    return f"{snapshot.player_count}/{snapshot.max_players} {noun} online"


class PlaytimeBot(commands.Bot):
    def __init__(self, config: BotConfig, client: StatusClientLike | None = None):
        intents = discord.Intents.default()
        super().__init__(command_prefix="!", intents=intents)
        self.config = config
        self.manager = PlaytimeManager(client=client)
        self.presence_text: Optional[str] = None
        init_db(config.database_path)

    async def setup_hook(self) -> None:
        self.manager.initialize(self.config.servers)
        for service in self.manager.all_services():
            self._connect_presence(service)

    def _connect_presence(self, service: PlaytimeService) -> None:
        # Presence mirrors the first configured server only.
        if self.config.servers and service.server_id != self.config.servers[0].id:
            return

        async def on_status(snapshot: ServerStatusSnapshot):
            await self.update_presence(format_presence(snapshot))

        async def on_offline():
            await self.update_presence(OFFLINE_PRESENCE)

        service.on(STATUS_UPDATE, on_status)
        service.on(SERVER_OFFLINE, on_offline)

    async def update_presence(self, text: str) -> None:
        if text == self.presence_text or not self.is_ready():
            return
        try:
            await self.change_presence(activity=discord.Game(name=text))
        except Exception as exc:
            LOGGER.warning("Failed to update presence to %r: %s", text, exc)
            return
        self.presence_text = text

    async def on_ready(self):
        LOGGER.info("Bot ready as %s", self.user)

    async def close(self) -> None:
        await self.manager.shutdown()
        close_db()
        await super().close()


async def main():
    bot_config = load_config()
    logging.getLogger().setLevel(bot_config.log_level)
    LOGGER.setLevel(bot_config.log_level)
    bot = PlaytimeBot(bot_config)
    async with bot:
        await bot.start(bot_config.token)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
