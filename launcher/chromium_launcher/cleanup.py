"""Background reaping of idle and crashed browser servers."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

LOGGER = logging.getLogger(__name__)

ReapCandidate = tuple[Any, str]


class ServerReaper:
    """Periodically close servers that went idle or whose browser died.

    ``collect`` returns ``(handle, reason)`` pairs already removed from the
    registry; ``reap`` releases one of them.
    """

    def __init__(
        self,
        *,
        interval: float,
        collect: Callable[[], Awaitable[list[ReapCandidate]]],
        reap: Callable[[Any, str], Awaitable[None]],
        logger: logging.Logger | None = None,
    ) -> None:
        self._interval = interval
        self._collect = collect
        self._reap = reap
        self._logger = logger or LOGGER
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._loop(), name="chromium-reaper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def run_once(self) -> int:
        """Reap everything currently eligible; return how many were handled."""

        try:
            candidates = await self._collect()
        except Exception as exc:  # pragma: no cover
            self._logger.warning("Failed to collect servers to reap: %s", exc)
            return 0
        for handle, reason in candidates:
            server_id = getattr(handle, "id", "<unknown>")
            self._logger.info("Reaping browser server %s (%s)", server_id, reason)
            try:
                await self._reap(handle, reason)
            except Exception as exc:  # pragma: no cover
                self._logger.warning("Failed to reap browser server %s: %s", server_id, exc)
        return len(candidates)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.run_once()


__all__ = ["ServerReaper"]
