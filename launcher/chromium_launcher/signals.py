"""Process-wide registry forwarding termination signals to launched browsers."""

from __future__ import annotations

import asyncio
import logging
import signal
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

LOGGER = logging.getLogger(__name__)

SignalCallback = Callable[[int], None]


@dataclass(slots=True)
class _Registration:
    signals: frozenset[int]
    callback: SignalCallback
    loop: asyncio.AbstractEventLoop


def forwarded_signals(*, sigint: bool, sigterm: bool, sighup: bool) -> list[int]:
    """Return the signal numbers enabled by the ``handle_*`` launch flags."""

    selected: list[int] = []
    if sigint:
        selected.append(signal.SIGINT)
    if sigterm:
        selected.append(signal.SIGTERM)
    sighup_number = getattr(signal, "SIGHUP", None)
    if sighup and sighup_number is not None:
        selected.append(sighup_number)
    return selected


class SignalForwarder:
    """Dispatch each received signal to every browser registered for it.

    One Python-level handler is installed per signal while at least one
    browser process is registered for it; the previous handler is restored
    when the last registration goes away. Callbacks run on the event loop
    that registered them. A previous handler that is a Python callable is
    chained after dispatch, so ``KeyboardInterrupt`` still reaches the host
    program on SIGINT.

    The handler never takes :attr:`_lock`; it reads an immutable dispatch
    table that writers replace while holding the lock.
    """

    def __init__(self) -> None:
        self._registrations: dict[int, _Registration] = {}
        self._previous: dict[int, Any] = {}
        self._dispatch: dict[int, tuple[tuple[_Registration, ...], Any]] = {}
        self._lock = threading.Lock()

    def register(self, pid: int, signals: Iterable[int], callback: SignalCallback) -> bool:
        """Register *callback* for *pid*; return ``False`` if handlers cannot be installed."""

        wanted = frozenset(signals)
        if not wanted:
            return False
        if threading.current_thread() is not threading.main_thread():
            LOGGER.debug("Signal forwarding for pid %s skipped: not on the main thread", pid)
            return False
        loop = asyncio.get_running_loop()
        with self._lock:
            self._registrations[pid] = _Registration(wanted, callback, loop)
            install = [signum for signum in wanted if signum not in self._previous]
            for signum in install:
                self._previous[signum] = signal.getsignal(signum)
            self._rebuild_dispatch()
        for signum in install:
            signal.signal(signum, self._handle)
        return True

    def unregister(self, pid: int) -> None:
        with self._lock:
            registration = self._registrations.pop(pid, None)
            if registration is None:
                return
            still_used = set()
            for other in self._registrations.values():
                still_used |= other.signals
            restore = {
                signum: self._previous.pop(signum)
                for signum in registration.signals
                if signum not in still_used and signum in self._previous
            }
            self._rebuild_dispatch()
        for signum, previous in restore.items():
            try:
                signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
            except ValueError:  # pragma: no cover - only reachable off the main thread
                LOGGER.debug("Could not restore handler for signal %s", signum)

    def registered(self, pid: int) -> bool:
        return pid in self._registrations

    def _rebuild_dispatch(self) -> None:
        self._dispatch = {
            signum: (
                tuple(item for item in self._registrations.values() if signum in item.signals),
                previous,
            )
            for signum, previous in self._previous.items()
        }

    def _handle(self, signum: int, frame: Any) -> None:
        targets, previous = self._dispatch.get(signum, ((), None))
        for registration in targets:
            if registration.loop.is_closed():
                continue
            registration.loop.call_soon_threadsafe(registration.callback, signum)
        if callable(previous):
            previous(signum, frame)


FORWARDER = SignalForwarder()


__all__ = ["FORWARDER", "SignalForwarder", "forwarded_signals"]
