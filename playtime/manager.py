from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List

from .config import ServerConfig
from .recorder import SessionRecorder
from .service import PlaytimeService
from .status import StatusClientLike

LOGGER = logging.getLogger(__name__)


class ServiceNotFoundError(KeyError):
    pass


class PlaytimeManager:
    """Owns one PlaytimeService per configured server."""

    def __init__(
        self,
        client: StatusClientLike | None = None,
        record_sessions: bool = True,
    ):
        self.client = client
        self.record_sessions = record_sessions
        self.services: Dict[int, PlaytimeService] = {}
        self.recorders: Dict[int, SessionRecorder] = {}

    @property
    def is_initialized(self) -> bool:
        return bool(self.services)

    def initialize(self, servers: Iterable[ServerConfig]) -> int:
        """Build, wire and start an engine per server; return how many started."""
        if self.services:
            LOGGER.warning("PlaytimeServices already initialized")
            return len(self.services)

        server_list = list(servers)
        if not server_list:
            LOGGER.warning("No Minecraft servers configured. Playtime tracking disabled.")
            return 0

        LOGGER.info("Found %s server configuration(s) to initialize", len(server_list))
        for server in server_list:
            try:
                service = PlaytimeService(server.tracker_config(), client=self.client)
            except (TypeError, ValueError) as exc:
                LOGGER.error(
                    "Skipping server %s: invalid configuration: %s", server.label, exc
                )
                continue
            recorder = SessionRecorder(service) if self.record_sessions else None
            try:
                if recorder is not None:
                    recorder.connect()
                service.start()
            except Exception as exc:
                # One broken server must not keep the others from starting.
                LOGGER.exception(
                    "Failed to initialize PlaytimeService for server %s: %s",
                    server.label,
                    exc,
                )
                service.stop()
                if recorder is not None:
                    recorder.abort()
                continue
            if recorder is not None:
                self.recorders[server.id] = recorder
            self.services[server.id] = service
            LOGGER.info(
                "PlaytimeService initialized for server %s (%s:%s)",
                server.label,
                server.host,
                server.port,
            )

        if not self.services:
            LOGGER.error("No PlaytimeServices successfully initialized")
        else:
            LOGGER.info(
                "PlaytimeServices initialization complete for %s/%s server(s)",
                len(self.services),
                len(server_list),
            )
        return len(self.services)

    def get(self, server_id: int) -> PlaytimeService:
        service = self.services.get(server_id)
        if service is not None:
            return service
        if not self.services:
            raise ServiceNotFoundError(
                "PlaytimeService not initialized. Call initialize() first."
            )
        available = ", ".join(str(sid) for sid in sorted(self.services))
        raise ServiceNotFoundError(
            f"PlaytimeService not found for server {server_id}. "
            f"Available servers: {available}"
        )

    def all_services(self) -> List[PlaytimeService]:
        return list(self.services.values())

    def status(self) -> Dict[int, Dict[str, Any]]:
        return {
            server_id: service.get_status().to_dict()
            for server_id, service in self.services.items()
        }

    async def shutdown(self) -> None:
        if not self.services:
            return
        LOGGER.info("Shutting down %s PlaytimeService(s)...", len(self.services))
        for server_id, service in self.services.items():
            LOGGER.info("Stopping PlaytimeService for server %s...", server_id)
            service.stop()
        for service in self.services.values():
            await service.wait_closed()
        for recorder in self.recorders.values():
            await recorder.close()
        self.services.clear()
        self.recorders.clear()
        LOGGER.info("All PlaytimeServices shut down")
