"""Exceptions raised while launching and controlling Chromium processes."""

from __future__ import annotations


class LauncherError(RuntimeError):
    """Base class for every launcher failure."""


class ConfigurationError(LauncherError):
    """Raised before anything is spawned: bad platform, executable or options."""


class SpawnError(LauncherError):
    """Raised when the operating system refuses to create the browser process."""


class HandshakeError(LauncherError):
    """Raised when the browser was spawned but never became connectable."""


class HandshakeTimeoutError(HandshakeError, TimeoutError):
    """Raised when the DevTools endpoint was not announced in time."""

    def __init__(self, timeout: float, revision: str) -> None:
        self.timeout = timeout
        self.revision = revision
        super().__init__(
            f"Timed out after {int(timeout * 1000)} ms while trying to connect to Chromium! "
            f"The only Chromium revision guaranteed to work is r{revision}"
        )


class PrematureExitError(HandshakeError):
    """Raised when the browser exits before announcing its endpoint."""

    def __init__(self, returncode: int | None, output: list[str] | None = None) -> None:
        self.returncode = returncode
        self.output = list(output or [])
        message = "Failed to launch browser!"
        if returncode is not None:
            message += f" Process exited with code {returncode}."
        if self.output:
            message += "\n" + "\n".join(self.output)
        super().__init__(message)


class DownloadError(LauncherError):
    """Raised when a Chromium archive cannot be fetched or unpacked."""


class GracefulCloseFailure(LauncherError):
    """The shutdown request could not be delivered; never surfaced to callers."""


__all__ = [
    "ConfigurationError",
    "DownloadError",
    "GracefulCloseFailure",
    "HandshakeError",
    "HandshakeTimeoutError",
    "LauncherError",
    "PrematureExitError",
    "SpawnError",
]
