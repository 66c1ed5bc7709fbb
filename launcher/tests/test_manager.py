from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from chromium_launcher.cleanup import ServerReaper
from chromium_launcher.config import LauncherSettings
from chromium_launcher.errors import HandshakeTimeoutError
from chromium_launcher.manager import ServerManager
from chromium_launcher.metrics import LauncherMetrics
from chromium_launcher.models import LaunchOptions, ServerCreateRequest, ServerStatus
from chromium_launcher.server import ChromiumLauncher


class _StubServer:
    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.ws_endpoint = f"ws://127.0.0.1:{9000 + pid}/devtools/browser/{pid}"
        self.closed = False
        self.close_calls = 0

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True


class _StubLauncher(ChromiumLauncher):
    def __init__(self, settings: LauncherSettings) -> None:
        super().__init__(settings)
        self.options: list[LaunchOptions] = []
        self.servers: list[_StubServer] = []
        self.error: Exception | None = None

    async def launch_server(self, options=None) -> _StubServer:
        self.options.append(options)
        if self.error is not None:
            raise self.error
        server = _StubServer(len(self.servers) + 1)
        self.servers.append(server)
        return server


@pytest.fixture
def launcher(settings: LauncherSettings) -> _StubLauncher:
    return _StubLauncher(settings)


@pytest.fixture
def metrics() -> LauncherMetrics:
    return LauncherMetrics()


@pytest.fixture
def manager(settings: LauncherSettings, launcher: _StubLauncher, metrics: LauncherMetrics) -> ServerManager:
    return ServerManager(settings, launcher, metrics=metrics)


@pytest.mark.anyio
async def test_create_registers_server(manager: ServerManager, launcher: _StubLauncher, metrics, settings) -> None:
    handle = await manager.create(ServerCreateRequest(labels={"team": "qa"}))

    assert handle.status is ServerStatus.READY
    assert handle.idle_ttl_seconds == settings.idle_ttl_seconds
    assert handle.labels == {"team": "qa"}
    assert (await manager.get(handle.id)) is handle
    detail = handle.detail()
    assert detail.ws_endpoint == launcher.servers[0].ws_endpoint
    assert detail.pid == 1
    assert metrics.registry.get_sample_value("chromium_launcher_launches_total") == 1
    assert metrics.registry.get_sample_value("chromium_launcher_live_servers") == 1


@pytest.mark.anyio
async def test_create_applies_configured_headless(manager: ServerManager, launcher: _StubLauncher) -> None:
    await manager.create(ServerCreateRequest())
    await manager.create(ServerCreateRequest(devtools=True))
    await manager.create(ServerCreateRequest(headless=False))

    first, second, third = launcher.options
    assert first.headless is True
    assert second.headless is None and second.resolved_headless is False
    assert third.headless is False
    assert all(not option.pipe for option in launcher.options)


@pytest.mark.anyio
async def test_failed_launch_is_counted(manager: ServerManager, launcher: _StubLauncher, metrics) -> None:
    launcher.error = HandshakeTimeoutError(1.0, "724623")
    with pytest.raises(HandshakeTimeoutError):
        await manager.create(ServerCreateRequest())
    assert await manager.list_details() == []
    assert (
        metrics.registry.get_sample_value(
            "chromium_launcher_launch_failures_total", {"reason": "HandshakeTimeoutError"}
        )
        == 1
    )


@pytest.mark.anyio
async def test_delete_closes_server(manager: ServerManager, launcher: _StubLauncher, metrics) -> None:
    handle = await manager.create(ServerCreateRequest())
    deleted = await manager.delete(handle.id)

    assert deleted is handle
    assert handle.status is ServerStatus.DEAD
    assert launcher.servers[0].close_calls == 1
    assert await manager.get(handle.id) is None
    assert await manager.delete(handle.id) is None
    assert metrics.registry.get_sample_value("chromium_launcher_closes_total", {"trigger": "request"}) == 1
    assert metrics.registry.get_sample_value("chromium_launcher_live_servers") == 0


@pytest.mark.anyio
async def test_touch_updates_last_seen(manager: ServerManager) -> None:
    handle = await manager.create(ServerCreateRequest())
    handle.last_seen_at = datetime.now(tz=timezone.utc) - timedelta(minutes=5)
    before = handle.last_seen_at
    touched = await manager.touch(handle.id)
    assert touched is handle
    assert handle.last_seen_at > before
    assert await manager.touch("missing") is None


@pytest.mark.anyio
async def test_reaper_collects_idle_and_exited_servers(manager: ServerManager, launcher: _StubLauncher, metrics) -> None:
    idle = await manager.create(ServerCreateRequest(idle_ttl_seconds=30))
    crashed = await manager.create(ServerCreateRequest())
    fresh = await manager.create(ServerCreateRequest())
    idle.last_seen_at = datetime.now(tz=timezone.utc) - timedelta(seconds=31)
    launcher.servers[1].closed = True

    reaper = ServerReaper(interval=60, collect=manager._collect_reapable, reap=manager._reap)
    assert await reaper.run_once() == 2

    remaining = await manager.list_details()
    assert [detail.id for detail in remaining] == [fresh.id]
    assert idle.status is ServerStatus.DEAD
    assert crashed.status is ServerStatus.DEAD
    assert metrics.registry.get_sample_value("chromium_launcher_closes_total", {"trigger": "idle"}) == 1
    assert metrics.registry.get_sample_value("chromium_launcher_closes_total", {"trigger": "exited"}) == 1


@pytest.mark.anyio
async def test_close_shuts_down_everything(manager: ServerManager, launcher: _StubLauncher) -> None:
    await manager.start()
    await manager.create(ServerCreateRequest())
    await manager.create(ServerCreateRequest())
    await manager.close()

    assert all(server.close_calls == 1 for server in launcher.servers)
    assert await manager.list_details() == []


@pytest.mark.anyio
async def test_reaper_start_and_stop() -> None:
    collected: list[int] = []

    async def _collect():
        collected.append(1)
        return []

    async def _reap(handle, reason) -> None:  # pragma: no cover - nothing to reap
        raise AssertionError("unexpected reap")

    reaper = ServerReaper(interval=0.01, collect=_collect, reap=_reap)
    reaper.start()
    reaper.start()
    assert reaper.running
    while not collected:
        await asyncio.sleep(0.01)
    await reaper.stop()
    await reaper.stop()
    assert not reaper.running
