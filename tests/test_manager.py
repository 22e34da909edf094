import asyncio

import pytest

from playtime.config import ServerConfig
from playtime.manager import PlaytimeManager, ServiceNotFoundError
from tests.fakes import FakeStatusClient, snapshot


def make_server(server_id, port=25565, **kwargs):
    return ServerConfig(
        id=server_id,
        host=f"mc{server_id}.example.org",
        port=port,
        initial_delay_ms=60000,
        **kwargs,
    )


def test_initialize_starts_one_service_per_server():
    manager = PlaytimeManager(client=FakeStatusClient(), record_sessions=False)

    async def scenario():
        started = manager.initialize([make_server(1), make_server(2, name="Creative")])
        running = [service.is_running for service in manager.all_services()]
        status = manager.status()
        await manager.shutdown()
        return started, running, status

    started, running, status = asyncio.run(scenario())

    assert started == 2
    assert running == [True, True]
    assert set(status) == {1, 2}
    assert status[2]["config"]["host"] == "mc2.example.org"
    assert status[1]["isRunning"] is True
    assert not manager.is_initialized


def test_initialize_skips_invalid_servers():
    manager = PlaytimeManager(client=FakeStatusClient(), record_sessions=False)

    async def scenario():
        started = manager.initialize([make_server(1, port=0), make_server(2)])
        ids = sorted(manager.services)
        await manager.shutdown()
        return started, ids

    started, ids = asyncio.run(scenario())

    assert started == 1
    assert ids == [2]


def test_initialize_twice_is_noop():
    manager = PlaytimeManager(client=FakeStatusClient(), record_sessions=False)

    async def scenario():
        manager.initialize([make_server(1)])
        first = manager.get(1)
        again = manager.initialize([make_server(1), make_server(2)])
        same = manager.get(1) is first
        await manager.shutdown()
        return again, same

    again, same = asyncio.run(scenario())

    assert again == 1
    assert same


def test_initialize_with_no_servers():
    manager = PlaytimeManager(client=FakeStatusClient(), record_sessions=False)

    assert manager.initialize([]) == 0
    assert not manager.is_initialized


def test_get_unknown_server_raises():
    manager = PlaytimeManager(client=FakeStatusClient(), record_sessions=False)

    with pytest.raises(ServiceNotFoundError, match="not initialized"):
        manager.get(1)

    async def scenario():
        manager.initialize([make_server(1)])
        try:
            with pytest.raises(ServiceNotFoundError, match="Available servers: 1"):
                manager.get(9)
        finally:
            await manager.shutdown()

    asyncio.run(scenario())


def test_shutdown_finalizes_sessions():
    client = FakeStatusClient([snapshot(("u1", "Alex"))])
    manager = PlaytimeManager(client=client, record_sessions=False)
    ended = []

    async def scenario():
        manager.initialize([make_server(1)])
        service = manager.get(1)
        service.on(
            "sessionStart", lambda e: service.attach_session_id(e.uuid, 1)
        )
        service.on("sessionEnd", lambda e: ended.append(e.uuid))
        await service.poll()
        await manager.shutdown()
        return service

    service = asyncio.run(scenario())

    assert ended == ["u1"]
    assert not service.is_running
    assert manager.services == {}


def test_failing_recorder_does_not_block_other_servers(monkeypatch, caplog):
    connected = []

    class FlakyRecorder:
        def __init__(self, service):
            self.service = service
            self.aborted = False

        def connect(self):
            if self.service.server_id == 1:
                raise RuntimeError("database is locked")
            connected.append(self.service.server_id)

        def abort(self):
            self.aborted = True

        async def close(self):
            return None

    monkeypatch.setattr("playtime.manager.SessionRecorder", FlakyRecorder)
    manager = PlaytimeManager(client=FakeStatusClient())

    async def scenario():
        started = manager.initialize([make_server(1), make_server(2)])
        ids = sorted(manager.services)
        await manager.shutdown()
        return started, ids

    started, ids = asyncio.run(scenario())

    assert started == 1
    assert ids == [2]
    assert connected == [2]
    assert "Failed to initialize PlaytimeService for server" in caplog.text
