import pytest

from playtime.config import CONFIG_ENV_KEY, ServerConfig, TrackerConfig, load_config


def write_config(tmp_path, text):
    path = tmp_path / "config.yml"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_load_config_parses_servers_with_defaults(tmp_path):
    path = write_config(
        tmp_path,
        """
token: abc
log_level: debug
database_path: data/sessions.db
servers:
  - id: 1
    name: COGS
    host: mc.example.org
    port: 25565
    poll_interval_ms: 10000
  - id: 2
    host: creative.example.org
    port: "25566"
""",
    )

    config = load_config(path)

    assert config.token == "abc"
    assert config.log_level == "DEBUG"
    assert config.database_path == "data/sessions.db"
    assert [s.id for s in config.servers] == [1, 2]
    first, second = config.servers
    assert first.label == "COGS (1)"
    assert first.poll_interval_ms == 10000
    assert first.status_timeout_ms == 5000
    assert second.port == 25566
    assert second.tracker_config() == TrackerConfig(
        host="creative.example.org", port=25566, server_id=2
    )


def test_load_config_uses_env_path(tmp_path, monkeypatch):
    path = write_config(tmp_path, "token: xyz\n")
    monkeypatch.setenv(CONFIG_ENV_KEY, path)

    config = load_config()

    assert config.token == "xyz"
    assert config.log_level == "INFO"
    assert config.database_path == "playtime.db"
    assert config.servers == []


def test_load_config_requires_token(tmp_path):
    path = write_config(tmp_path, "log_level: INFO\n")

    with pytest.raises(ValueError, match="token"):
        load_config(path)


def test_load_config_rejects_bad_log_level(tmp_path):
    path = write_config(tmp_path, "token: abc\nlog_level: LOUD\n")

    with pytest.raises(ValueError, match="log_level"):
        load_config(path)


def test_load_config_rejects_duplicate_server_ids(tmp_path):
    path = write_config(
        tmp_path,
        """
token: abc
servers:
  - {id: 1, host: a.example.org, port: 25565}
  - {id: 1, host: b.example.org, port: 25565}
""",
    )

    with pytest.raises(ValueError, match="Duplicate server id 1"):
        load_config(path)


def test_load_config_rejects_server_without_host(tmp_path):
    path = write_config(tmp_path, "token: abc\nservers:\n  - {id: 3, port: 25565}\n")

    with pytest.raises(ValueError, match="host"):
        load_config(path)


def test_load_config_rejects_non_numeric_port(tmp_path):
    path = write_config(
        tmp_path, "token: abc\nservers:\n  - {id: 3, host: mc, port: lots}\n"
    )

    with pytest.raises(ValueError, match="port"):
        load_config(path)


@pytest.mark.parametrize(
    "overrides",
    [
        {"host": "  "},
        {"port": 0},
        {"port": True},
        {"poll_interval_ms": 0},
        {"status_timeout_ms": -1},
        {"initial_delay_ms": -5},
    ],
)
def test_tracker_config_validation(overrides):
    settings = {"host": "mc.example.org", "port": 25565, "server_id": 1}
    settings.update(overrides)

    with pytest.raises(ValueError):
        TrackerConfig(**settings)


def test_server_config_with_bad_port_fails_when_building_tracker():
    server = ServerConfig(id=4, host="mc.example.org", port=99999)

    with pytest.raises(ValueError, match="port"):
        server.tracker_config()
