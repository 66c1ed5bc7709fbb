"""Registry of browser servers launched on behalf of HTTP clients."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .cleanup import ReapCandidate, ServerReaper
from .config import LauncherSettings
from .errors import LauncherError
from .metrics import LauncherMetrics
from .models import ServerCreateRequest, ServerDetail, ServerStatus, ServerSummary
from .server import BrowserServer, ChromiumLauncher

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ServerHandle:
    """In-memory representation of a managed browser server."""

    id: str
    server: BrowserServer
    created_at: datetime
    last_seen_at: datetime
    idle_ttl_seconds: int
    labels: dict[str, str] = field(default_factory=dict)
    status: ServerStatus = ServerStatus.READY

    def summary(self) -> ServerSummary:
        return ServerSummary(
            id=self.id,
            status=self.status,
            created_at=self.created_at,
            last_seen_at=self.last_seen_at,
            pid=self.server.pid,
            idle_ttl_seconds=self.idle_ttl_seconds,
            labels=self.labels,
        )

    def detail(self) -> ServerDetail:
        return ServerDetail(**self.summary().model_dump(), ws_endpoint=self.server.ws_endpoint)


class ServerManager:
    def __init__(
        self,
        settings: LauncherSettings,
        launcher: ChromiumLauncher | None = None,
        *,
        metrics: LauncherMetrics | None = None,
    ) -> None:
        self._settings = settings
        self._launcher = launcher or ChromiumLauncher(settings)
        self._metrics = metrics or LauncherMetrics()
        self._servers: dict[str, ServerHandle] = {}
        self._lock = asyncio.Lock()
        self._reaper = ServerReaper(
            interval=settings.cleanup_interval,
            collect=self._collect_reapable,
            reap=self._reap,
        )

    @property
    def launcher(self) -> ChromiumLauncher:
        return self._launcher

    async def start(self) -> None:
        self._reaper.start()

    async def close(self) -> None:
        await self._reaper.stop()
        async with self._lock:
            handles = list(self._servers.values())
            self._servers.clear()
        for handle in handles:
            await self._shutdown_handle(handle, trigger="shutdown")

    async def list_details(self) -> list[ServerDetail]:
        async with self._lock:
            handles = list(self._servers.values())
        return [handle.detail() for handle in handles]

    async def get(self, server_id: str) -> ServerHandle | None:
        async with self._lock:
            return self._servers.get(server_id)

    async def create(self, request: ServerCreateRequest) -> ServerHandle:
        options = request.launch_options()
        if options.headless is None and not options.devtools:
            options = options.model_copy(update={"headless": self._settings.headless})
        try:
            server = await self._launcher.launch_server(options)
        except LauncherError as exc:
            self._metrics.launch_failures.labels(reason=type(exc).__name__).inc()
            raise
        now = datetime.now(tz=timezone.utc)
        handle = ServerHandle(
            id=str(uuid.uuid4()),
            server=server,
            created_at=now,
            last_seen_at=now,
            idle_ttl_seconds=request.idle_ttl_seconds or self._settings.idle_ttl_seconds,
            labels=dict(request.labels or {}),
        )
        async with self._lock:
            self._servers[handle.id] = handle
            self._metrics.live_servers.set(len(self._servers))
        self._metrics.launches.inc()
        LOGGER.info("Browser server %s launched (pid %s)", handle.id, server.pid)
        return handle

    async def delete(self, server_id: str) -> ServerHandle | None:
        async with self._lock:
            handle = self._servers.pop(server_id, None)
            self._metrics.live_servers.set(len(self._servers))
        if handle:
            await self._shutdown_handle(handle, trigger="request")
        return handle

    async def touch(self, server_id: str) -> ServerHandle | None:
        async with self._lock:
            handle = self._servers.get(server_id)
            if not handle:
                return None
            handle.last_seen_at = datetime.now(tz=timezone.utc)
            return handle

    async def _collect_reapable(self) -> list[ReapCandidate]:
        now = time.time()
        reapable: list[ReapCandidate] = []
        async with self._lock:
            for handle in list(self._servers.values()):
                if handle.server.closed:
                    reason = "exited"
                elif now >= handle.last_seen_at.timestamp() + handle.idle_ttl_seconds:
                    reason = "idle"
                else:
                    continue
                handle.status = ServerStatus.TERMINATING
                self._servers.pop(handle.id, None)
                reapable.append((handle, reason))
            self._metrics.live_servers.set(len(self._servers))
        return reapable

    async def _reap(self, handle: ServerHandle, reason: str) -> None:
        await self._shutdown_handle(handle, trigger=reason)

    async def _shutdown_handle(self, handle: ServerHandle, *, trigger: str) -> None:
        handle.status = ServerStatus.TERMINATING
        try:
            await handle.server.close()
        finally:
            handle.status = ServerStatus.DEAD
            self._metrics.closes.labels(trigger=trigger).inc()


__all__ = ["ServerHandle", "ServerManager"]
