"""Spawning, supervising and tearing down the browser subprocess."""

from __future__ import annotations

import asyncio
import atexit
import contextlib
import logging
import os
import re
import shutil
import signal
import sys
import subprocess
from asyncio import subprocess as aio_subprocess
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import IO

from .errors import ConfigurationError, PrematureExitError, SpawnError
from .signals import FORWARDER, forwarded_signals
from .transport import PipeTransport

LOGGER = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 5.0

# Descriptor numbers Chromium uses for --remote-debugging-pipe.
PIPE_READ_FD = 3
PIPE_WRITE_FD = 4

GracefulCloseAttempt = Callable[[], Awaitable[None]]


class LaunchedProcess:
    """A running browser process and everything that must be released with it.

    The exit watcher removes the temporary profile, stops the output readers,
    closes the debugging pipe and drops signal forwarding before
    :attr:`exited` is set, so anyone awaiting exit observes a cleaned up
    process.
    """

    def __init__(
        self,
        process: aio_subprocess.Process,
        *,
        attempt_graceful_close: GracefulCloseAttempt,
        temp_dir: str | None,
        pipe_fds: tuple[int, int] | None,
        dumpio: bool,
        grace_period: float,
        logger: logging.Logger | None = None,
    ) -> None:
        self.process = process
        self._attempt_graceful_close = attempt_graceful_close
        self._temp_dir = temp_dir
        self._pipe_fds = pipe_fds
        self._pipe_transport: PipeTransport | None = None
        self._dumpio = dumpio
        self._grace_period = grace_period
        self._logger = logger or LOGGER
        self._exited = asyncio.Event()
        self._drain_tasks: list[asyncio.Task[None]] = []
        self._stderr_drained = False
        self._close_task: asyncio.Task[None] | None = None
        self._signal_tasks: set[asyncio.Task[None]] = set()
        self._drain_tasks.append(
            asyncio.create_task(
                drain_stream(process.stdout, "chromium-stdout", self._logger, mirror=sys.stdout if dumpio else None),
                name=f"chromium-{process.pid}-stdout",
            )
        )
        self._exit_task = asyncio.create_task(self._watch_exit(), name=f"chromium-{process.pid}-exit")
        atexit.register(self._kill_at_interpreter_exit)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.process.stderr

    @property
    def temp_dir(self) -> str | None:
        return self._temp_dir

    @property
    def dumpio(self) -> bool:
        return self._dumpio

    @property
    def exited(self) -> bool:
        return self._exited.is_set()

    async def wait_closed(self) -> int | None:
        """Wait until the process exited and its resources were released."""

        await self._exited.wait()
        return self.process.returncode

    def pipe_transport(self) -> PipeTransport:
        """Return the transport bound to the reserved debugging descriptors."""

        if self._pipe_fds is None:
            raise RuntimeError("Process was not launched in pipe mode")
        if self._pipe_transport is None:
            write_fd, read_fd = self._pipe_fds
            self._pipe_transport = PipeTransport(write_fd, read_fd)
        return self._pipe_transport

    def start_stderr_drain(self) -> None:
        """Keep reading stderr once the handshake no longer needs it."""

        if self._stderr_drained or self._exited.is_set():
            return
        self._stderr_drained = True
        self._drain_tasks.append(
            asyncio.create_task(
                drain_stream(
                    self.process.stderr,
                    "chromium-stderr",
                    self._logger,
                    mirror=sys.stderr if self._dumpio else None,
                ),
                name=f"chromium-{self.pid}-stderr",
            )
        )

    def mirror_stderr(self, line: bytes) -> None:
        if self._dumpio:
            _mirror(sys.stderr, line)

    def kill(self) -> None:
        """Force-terminate the browser and its process group."""

        if self.process.returncode is not None:
            return
        self._logger.debug("Killing Chromium process %s", self.pid)
        if sys.platform != "win32":
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(self.pid, signal.SIGKILL)
                return
        with contextlib.suppress(ProcessLookupError):
            self.process.kill()

    async def gracefully_close(self) -> None:
        """Request an orderly shutdown, force-killing if it does not happen in time.

        Safe to call any number of times and concurrently; all callers share
        one close attempt and return once the process is gone.
        """

        if self._exited.is_set():
            return
        if self._close_task is None:
            self._close_task = asyncio.create_task(self._close(), name=f"chromium-{self.pid}-close")
        await asyncio.shield(self._close_task)

    async def _close(self) -> None:
        try:
            await asyncio.wait_for(self._attempt_graceful_close(), timeout=self._grace_period)
        except Exception as exc:
            self._logger.debug("Graceful close of %s failed (%r); killing", self.pid, exc)
            self.kill()
        else:
            try:
                await asyncio.wait_for(self._exited.wait(), timeout=self._grace_period)
            except TimeoutError:
                self._logger.warning(
                    "Chromium process %s did not exit within %.1fs; killing", self.pid, self._grace_period
                )
                self.kill()
        await self._exited.wait()

    def register_signals(self, signals: Iterable[int]) -> bool:
        return FORWARDER.register(self.pid, signals, self._on_signal)

    def _on_signal(self, signum: int) -> None:
        if self._exited.is_set():
            return
        self._logger.info("Forwarding signal %s to Chromium process %s", signum, self.pid)
        with contextlib.suppress(ProcessLookupError):
            self.process.send_signal(signum)
        task = asyncio.create_task(self.gracefully_close(), name=f"chromium-{self.pid}-signal-close")
        self._signal_tasks.add(task)
        task.add_done_callback(self._signal_tasks.discard)

    async def _watch_exit(self) -> None:
        try:
            returncode = await self.process.wait()
            self._logger.debug("Chromium process %s exited with code %s", self.pid, returncode)
        finally:
            try:
                await self._cleanup()
            finally:
                self._exited.set()

    async def _cleanup(self) -> None:
        FORWARDER.unregister(self.pid)
        atexit.unregister(self._kill_at_interpreter_exit)
        await cancel_tasks(self._drain_tasks)
        self._drain_tasks.clear()
        if self._pipe_transport is not None:
            await self._pipe_transport.close()
        elif self._pipe_fds is not None:
            close_fds(self._pipe_fds)
        self._pipe_fds = None
        if self._temp_dir:
            await asyncio.to_thread(remove_temp_dir, self._temp_dir)

    def _kill_at_interpreter_exit(self) -> None:
        if self.process.returncode is None:
            kill_signal = getattr(signal, "SIGKILL", signal.SIGTERM)
            with contextlib.suppress(OSError):
                os.kill(self.pid, kill_signal)
        if self._temp_dir:
            remove_temp_dir(self._temp_dir)


async def launch_process(
    *,
    executable_path: str,
    args: list[str],
    env: Mapping[str, str],
    attempt_graceful_close: GracefulCloseAttempt,
    handle_sigint: bool = True,
    handle_sigterm: bool = True,
    handle_sighup: bool = True,
    dumpio: bool = False,
    pipe: bool = False,
    temp_dir: str | None = None,
    grace_period: float = DEFAULT_GRACE_PERIOD,
    logger: logging.Logger | None = None,
) -> LaunchedProcess:
    """Spawn the browser and install its cleanup and signal hooks.

    ``temp_dir`` is owned by the launch from here on: it is removed when the
    process exits and also when spawning fails.
    """

    log = logger or LOGGER
    try:
        check_executable(executable_path)
        if pipe and sys.platform == "win32":
            raise ConfigurationError("Pipe transport is not supported on Windows")
    except ConfigurationError:
        if temp_dir:
            await asyncio.to_thread(remove_temp_dir, temp_dir)
        raise

    child_fds: tuple[int, int] | None = None
    parent_fds: tuple[int, int] | None = None
    spawn_kwargs: dict[str, object] = {}
    if sys.platform != "win32":
        # Keep terminal-generated signals away from the browser; they are forwarded explicitly.
        spawn_kwargs["start_new_session"] = True
    if pipe:
        command_read, command_write = os.pipe()
        reply_read, reply_write = os.pipe()
        child_fds = (command_read, reply_write)
        parent_fds = (command_write, reply_read)
        spawn_kwargs["pass_fds"] = (PIPE_READ_FD, PIPE_WRITE_FD)
        spawn_kwargs["preexec_fn"] = _remap_pipe_fds(command_read, reply_write)

    log.debug("Starting Chromium %s with args: %s", executable_path, args)
    try:
        process = await aio_subprocess.create_subprocess_exec(
            executable_path,
            *args,
            stdin=aio_subprocess.DEVNULL,
            stdout=aio_subprocess.PIPE,
            stderr=aio_subprocess.PIPE,
            env=dict(env),
            **spawn_kwargs,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        if parent_fds:
            close_fds(parent_fds)
        if temp_dir:
            await asyncio.to_thread(remove_temp_dir, temp_dir)
        raise SpawnError(f"Failed to launch browser {executable_path}: {exc}") from exc
    finally:
        if child_fds:
            close_fds(child_fds)

    launched = LaunchedProcess(
        process,
        attempt_graceful_close=attempt_graceful_close,
        temp_dir=temp_dir,
        pipe_fds=parent_fds,
        dumpio=dumpio,
        grace_period=grace_period,
        logger=log,
    )
    launched.register_signals(
        forwarded_signals(sigint=handle_sigint, sigterm=handle_sigterm, sighup=handle_sighup)
    )
    log.info("Launched Chromium process %s", process.pid)
    return launched


async def wait_for_line(
    launched: LaunchedProcess,
    pattern: re.Pattern[str],
    *,
    timeout: float,
    timeout_error: Exception,
) -> re.Match[str]:
    """Race a matching stderr line against *timeout* and process exit.

    The first of the three to finish decides the outcome; the other two are
    cancelled before this function returns. A ``timeout`` of ``0`` waits
    indefinitely.
    """

    stream = launched.stderr
    collected: list[str] = []

    async def _scan() -> re.Match[str] | None:
        if stream is None:
            return None
        while True:
            raw = await read_line(stream)
            if not raw:
                return None
            launched.mirror_stderr(raw)
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            collected.append(line)
            match = pattern.match(line)
            if match:
                return match

    scan_task = asyncio.create_task(_scan(), name=f"chromium-{launched.pid}-handshake")
    exit_task = asyncio.create_task(launched.wait_closed(), name=f"chromium-{launched.pid}-handshake-exit")
    tasks: list[asyncio.Task] = [scan_task, exit_task]
    timer_task: asyncio.Task[None] | None = None
    if timeout > 0:
        timer_task = asyncio.create_task(asyncio.sleep(timeout), name=f"chromium-{launched.pid}-handshake-timer")
        tasks.append(timer_task)

    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        await cancel_tasks([task for task in tasks if not task.done()])

    if timer_task is not None and timer_task in done:
        raise timeout_error
    if scan_task in done:
        match = scan_task.result()
        if match is not None:
            return match
        # stderr closed: give the exit watcher a moment to report a return code.
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(launched.wait_closed(), timeout=1.0)
    raise PrematureExitError(launched.returncode, collected)


async def read_line(stream: asyncio.StreamReader) -> bytes:
    """Return the next newline-terminated line, or ``b""`` at end of stream.

    Lines longer than the reader's buffer limit are discarded whole instead
    of failing the reader.
    """

    discarding = False
    while True:
        try:
            line = await stream.readuntil(b"\n")
        except asyncio.IncompleteReadError as exc:
            return b"" if discarding else exc.partial
        except asyncio.LimitOverrunError as exc:
            # Drop the buffered part of the oversized line and wait for its end.
            await stream.read(max(exc.consumed, 1))
            discarding = True
            continue
        if discarding:
            discarding = False
            continue
        return line


async def drain_stream(
    stream: asyncio.StreamReader | None,
    prefix: str,
    logger: logging.Logger | None = None,
    *,
    mirror: IO[str] | None = None,
) -> None:
    """Continuously read from *stream* to avoid blocking pipes and log output."""

    if stream is None:
        return
    log = logger or LOGGER
    while True:
        line = await read_line(stream)
        if not line:
            break
        if mirror is not None:
            _mirror(mirror, line)
        log.debug("%s: %s", prefix, line.decode("utf-8", errors="replace").rstrip())


async def cancel_tasks(tasks: Iterable[asyncio.Task]) -> None:
    """Cancel and await completion of background tasks.

    Failures of the tasks themselves are logged, never re-raised.
    """

    tasks = list(tasks)
    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            LOGGER.warning("Background task %s failed", task.get_name(), exc_info=True)


def check_executable(path: str) -> None:
    """Fail fast unless *path* is a runnable file."""

    if not path:
        raise ConfigurationError("Browser executable path is empty")
    if not os.path.exists(path):
        raise ConfigurationError(f"Browser executable not found at {path}")
    if not os.path.isfile(path):
        raise ConfigurationError(f"Browser executable path {path} is not a file")
    if sys.platform != "win32" and not os.access(path, os.X_OK):
        raise ConfigurationError(f"Browser executable {path} is not executable")


def remove_temp_dir(path: str) -> None:
    shutil.rmtree(path, ignore_errors=True)


def close_fds(fds: Iterable[int]) -> None:
    for fd in fds:
        with contextlib.suppress(OSError):
            os.close(fd)


def _remap_pipe_fds(command_read: int, reply_write: int) -> Callable[[], None]:
    def _preexec() -> None:
        # Duplicate first so neither source descriptor is clobbered by the other's target.
        read_copy = os.dup(command_read)
        write_copy = os.dup(reply_write)
        os.dup2(read_copy, PIPE_READ_FD)
        os.dup2(write_copy, PIPE_WRITE_FD)
        os.set_inheritable(PIPE_READ_FD, True)
        os.set_inheritable(PIPE_WRITE_FD, True)

    return _preexec


def _mirror(target: IO[str], line: bytes) -> None:
    target.write(line.decode("utf-8", errors="replace"))
    target.flush()


__all__ = [
    "DEFAULT_GRACE_PERIOD",
    "LaunchedProcess",
    "cancel_tasks",
    "check_executable",
    "drain_stream",
    "read_line",
    "launch_process",
    "wait_for_line",
]
