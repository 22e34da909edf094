import os
from dataclasses import dataclass, field
from typing import Any, List, Optional

import yaml

CONFIG_ENV_KEY = "CONFIG_PATH"
DEFAULT_CONFIG_PATH = "config.yml"
DEFAULT_DATABASE_PATH = "playtime.db"

DEFAULT_POLL_INTERVAL_MS = 30000
DEFAULT_STATUS_TIMEOUT_MS = 5000
DEFAULT_INITIAL_DELAY_MS = 5000


@dataclass(frozen=True)
class TrackerConfig:
    """Effective configuration of one tracking engine (durations in ms)."""

    host: str
    port: int
    server_id: int
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    status_timeout_ms: int = DEFAULT_STATUS_TIMEOUT_MS
    initial_delay_ms: int = DEFAULT_INITIAL_DELAY_MS

    def __post_init__(self):
        if not isinstance(self.host, str) or not self.host.strip():
            raise ValueError("Tracker config missing 'host'")
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ValueError(f"Invalid port {self.port!r}")
        if not 1 <= self.port <= 65535:
            raise ValueError(f"Invalid port {self.port}. Must be in 1..65535")
        if isinstance(self.server_id, bool) or not isinstance(self.server_id, int):
            raise ValueError(f"Invalid server id {self.server_id!r}")
        if self.poll_interval_ms <= 0:
            raise ValueError("poll_interval_ms must be positive")
        if self.status_timeout_ms <= 0:
            raise ValueError("status_timeout_ms must be positive")
        if self.initial_delay_ms < 0:
            raise ValueError("initial_delay_ms must not be negative")

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "server_id": self.server_id,
            "poll_interval_ms": self.poll_interval_ms,
            "status_timeout_ms": self.status_timeout_ms,
            "initial_delay_ms": self.initial_delay_ms,
        }


@dataclass
class ServerConfig:
    id: int
    host: str
    port: int
    name: Optional[str] = None
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    status_timeout_ms: int = DEFAULT_STATUS_TIMEOUT_MS
    initial_delay_ms: int = DEFAULT_INITIAL_DELAY_MS

    @property
    def label(self) -> str:
        return f"{self.name} ({self.id})" if self.name else str(self.id)

    def tracker_config(self) -> TrackerConfig:
        return TrackerConfig(
            host=self.host,
            port=self.port,
            server_id=self.id,
            poll_interval_ms=self.poll_interval_ms,
            status_timeout_ms=self.status_timeout_ms,
            initial_delay_ms=self.initial_delay_ms,
        )


@dataclass
class BotConfig:
    token: str
    log_level: str
    database_path: str = DEFAULT_DATABASE_PATH
    servers: List[ServerConfig] = field(default_factory=list)


def _int_value(raw: Any, key: str, default: int | None = None) -> int:
    if raw is None:
        if default is None:
            raise ValueError(f"Config missing '{key}'")
        return default
    if isinstance(raw, bool):
        raise ValueError(f"Invalid '{key}': {raw!r}")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid '{key}': {raw!r}") from None


def _parse_server(entry: Any, index: int) -> ServerConfig:
    if not isinstance(entry, dict):
        raise ValueError(f"Server entry #{index} must be a mapping")
    host = str(entry.get("host") or "").strip()
    if not host:
        raise ValueError(f"Server entry #{index} missing 'host'")
    name = entry.get("name")
    return ServerConfig(
        id=_int_value(entry.get("id"), f"servers[{index}].id"),
        host=host,
        port=_int_value(entry.get("port"), f"servers[{index}].port"),
        name=str(name) if name else None,
        poll_interval_ms=_int_value(
            entry.get("poll_interval_ms"),
            f"servers[{index}].poll_interval_ms",
            DEFAULT_POLL_INTERVAL_MS,
        ),
        status_timeout_ms=_int_value(
            entry.get("status_timeout_ms"),
            f"servers[{index}].status_timeout_ms",
            DEFAULT_STATUS_TIMEOUT_MS,
        ),
        initial_delay_ms=_int_value(
            entry.get("initial_delay_ms"),
            f"servers[{index}].initial_delay_ms",
            DEFAULT_INITIAL_DELAY_MS,
        ),
    )


def load_config(path: str | None = None) -> BotConfig:
    config_path = path or os.environ.get(CONFIG_ENV_KEY, DEFAULT_CONFIG_PATH)
    with open(config_path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    token = str(data.get("token") or "").strip()
    if not token:
        raise ValueError("Config missing 'token'")

    log_level = str(data.get("log_level") or "INFO").upper()
    valid_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
    if log_level not in valid_levels:
        raise ValueError(
            f"Invalid log_level '{log_level}'. Must be one of {sorted(valid_levels)}"
        )

    database_path = str(data.get("database_path") or DEFAULT_DATABASE_PATH)

    raw_servers = data.get("servers") or []
    if not isinstance(raw_servers, list):
        raise ValueError("Config 'servers' must be a list")
    servers = [_parse_server(entry, idx) for idx, entry in enumerate(raw_servers)]
    seen: set[int] = set()
    for server in servers:
        if server.id in seen:
            raise ValueError(f"Duplicate server id {server.id}")
        seen.add(server.id)

    return BotConfig(
        token=token,
        log_level=log_level,
        database_path=database_path,
        servers=servers,
    )
