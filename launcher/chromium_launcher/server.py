"""Launching Chromium browser servers and closing them again."""

from __future__ import annotations

import contextlib
import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from .arguments import compose_launch_args, default_args, uses_pipe
from .config import LauncherSettings, load_settings
from .errors import ConfigurationError, GracefulCloseFailure, HandshakeTimeoutError
from .fetcher import BrowserFetcher, current_platform, revision_info
from .models import ConnectOptions, LaunchOptions, RevisionInfo
from .processes import LaunchedProcess, check_executable, launch_process, wait_for_line
from .transport import Connection, Transport, create_transport, send_close_request

LOGGER = logging.getLogger(__name__)

DEVTOOLS_LISTENING = re.compile(r"^DevTools listening on (ws://.*)$")


class ShutdownProtocol:
    """Two-phase shutdown of a launched browser.

    :meth:`attempt_graceful` sends ``Browser.close`` over the control protocol
    and fails when the handshake never produced connect options.
    :meth:`force_kill` terminates the process unconditionally.
    """

    def __init__(self) -> None:
        self._process: LaunchedProcess | None = None
        self._connect_options: ConnectOptions | None = None
        self._opened: Transport | None = None

    def attach(self, process: LaunchedProcess) -> None:
        self._process = process

    def bind(self, connect_options: ConnectOptions) -> None:
        self._connect_options = connect_options

    async def attempt_graceful(self) -> None:
        options = self._connect_options
        if options is None:
            raise GracefulCloseFailure("Browser never completed the handshake")
        # Reusing the pipe is fine: nothing waits for replies to this request.
        transport = await create_transport(options)
        if transport is not options.transport:
            self._opened = transport
        await send_close_request(transport)

    def force_kill(self) -> None:
        if self._process is not None:
            self._process.kill()

    async def release(self) -> None:
        """Close the connection opened for the shutdown request, if any."""

        if self._opened is not None:
            opened, self._opened = self._opened, None
            await opened.close()


class BrowserServer:
    """A launched browser together with the parameters needed to control it."""

    def __init__(
        self,
        process: LaunchedProcess,
        shutdown: ShutdownProtocol,
        connect_options: ConnectOptions,
    ) -> None:
        self._process = process
        self._shutdown = shutdown
        self._connect_options = connect_options

    @property
    def process(self) -> LaunchedProcess:
        return self._process

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def ws_endpoint(self) -> str | None:
        return self._connect_options.browser_ws_endpoint

    @property
    def connect_options(self) -> ConnectOptions:
        return self._connect_options

    @property
    def closed(self) -> bool:
        return self._process.exited

    async def close(self) -> None:
        """Shut the browser down; returns once the process is gone.

        Never raises. Repeated calls wait for the same shutdown.
        """

        await self._process.gracefully_close()
        await self._shutdown.release()

    async def __aenter__(self) -> BrowserServer:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()


class Browser:
    """A protocol connection whose :meth:`close` also stops an owned server."""

    def __init__(self, connection: Connection, server: BrowserServer | None = None) -> None:
        self._connection = connection
        self._server = server

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def server(self) -> BrowserServer | None:
        return self._server

    async def close(self) -> None:
        if self._server is not None:
            await self._server.close()
        await self._connection.close()


class ChromiumLauncher:
    """Entry point for launching, connecting to and locating Chromium."""

    def __init__(
        self,
        settings: LauncherSettings | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._settings = settings or load_settings()
        self._logger = logger or LOGGER

    @property
    def settings(self) -> LauncherSettings:
        return self._settings

    @property
    def revision(self) -> str:
        return self._settings.revision

    @property
    def platform(self) -> str:
        return self._settings.platform or current_platform()

    def default_args(self, options: LaunchOptions | Mapping[str, Any] | None = None) -> list[str]:
        return default_args(_coerce_options(options))

    def create_fetcher(
        self,
        *,
        platform: str | None = None,
        cache_path: str | os.PathLike[str] | None = None,
        host: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> BrowserFetcher:
        return BrowserFetcher(
            cache_path or self._settings.cache_path,
            platform=platform or self.platform,
            host=host or self._settings.download_host,
            http_client=http_client,
        )

    def revision_info(self, revision: str | None = None) -> RevisionInfo:
        return revision_info(
            self.platform,
            revision or self.revision,
            Path(self._settings.cache_path),
            host=self._settings.download_host,
        )

    def executable_path(self) -> str:
        return self.revision_info().executable_path

    async def launch_server(
        self, options: LaunchOptions | Mapping[str, Any] | None = None
    ) -> BrowserServer:
        """Launch Chromium and wait until its control endpoint is usable."""

        opts = _coerce_options(options)
        timeout = opts.timeout if opts.timeout is not None else self._settings.launch_timeout_seconds
        executable = opts.executable_path or self._resolve_executable_path()
        check_executable(executable)

        args, temp_dir = compose_launch_args(opts)
        pipe = uses_pipe(args)
        env = dict(opts.env) if opts.env is not None else dict(os.environ)

        shutdown = ShutdownProtocol()
        launched = await launch_process(
            executable_path=executable,
            args=args,
            env=env,
            attempt_graceful_close=shutdown.attempt_graceful,
            handle_sigint=opts.handle_sigint,
            handle_sigterm=opts.handle_sigterm,
            handle_sighup=opts.handle_sighup,
            dumpio=opts.dumpio,
            pipe=pipe,
            temp_dir=temp_dir,
            grace_period=self._settings.grace_period_seconds,
            logger=self._logger,
        )
        shutdown.attach(launched)

        try:
            if pipe:
                connect_options = ConnectOptions.for_transport(launched.pipe_transport(), slow_mo=opts.slow_mo)
            else:
                match = await wait_for_line(
                    launched,
                    DEVTOOLS_LISTENING,
                    timeout=timeout,
                    timeout_error=HandshakeTimeoutError(timeout, self.revision),
                )
                connect_options = ConnectOptions.for_endpoint(match.group(1), slow_mo=opts.slow_mo)
            launched.start_stderr_drain()
        except BaseException:
            shutdown.force_kill()
            with contextlib.suppress(Exception):
                await launched.wait_closed()
            raise

        shutdown.bind(connect_options)
        self._logger.info(
            "Chromium process %s ready (%s)",
            launched.pid,
            connect_options.browser_ws_endpoint or "pipe",
        )
        return BrowserServer(launched, shutdown, connect_options)

    async def launch(self, options: LaunchOptions | Mapping[str, Any] | None = None) -> Browser:
        """Launch a server and connect to it; closing the browser stops the server."""

        server = await self.launch_server(options)
        try:
            transport = await create_transport(server.connect_options)
        except BaseException:
            await server.close()
            raise
        return Browser(Connection(transport), server)

    async def connect(self, options: ConnectOptions) -> Browser:
        transport = await create_transport(options)
        return Browser(Connection(transport))

    def _resolve_executable_path(self) -> str:
        info = self.revision_info()
        if not info.local:
            raise ConfigurationError(
                f"Chromium revision r{info.revision} is not downloaded. "
                "Run `python -m chromium_launcher fetch` first."
            )
        return info.executable_path


def _coerce_options(options: LaunchOptions | Mapping[str, Any] | None) -> LaunchOptions:
    if options is None:
        return LaunchOptions()
    if isinstance(options, LaunchOptions):
        return options
    try:
        return LaunchOptions.model_validate(dict(options))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid launch options: {exc}") from exc


__all__ = ["Browser", "BrowserServer", "ChromiumLauncher", "DEVTOOLS_LISTENING", "ShutdownProtocol"]
