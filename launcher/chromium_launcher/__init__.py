"""Launch and control Chromium processes and manage their binaries."""

from __future__ import annotations

from typing import Any

from .arguments import default_args
from .config import LauncherSettings, load_settings
from .errors import (
    ConfigurationError,
    DownloadError,
    HandshakeError,
    HandshakeTimeoutError,
    LauncherError,
    PrematureExitError,
    SpawnError,
)
from .fetcher import BrowserFetcher, revision_info
from .models import ConnectOptions, LaunchOptions, RevisionInfo
from .server import Browser, BrowserServer, ChromiumLauncher


def create_app(*args: Any, **kwargs: Any):  # pragma: no cover - thin wrapper
    """Import and invoke :func:`chromium_launcher.main.create_app` lazily."""

    from .main import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "Browser",
    "BrowserFetcher",
    "BrowserServer",
    "ChromiumLauncher",
    "ConfigurationError",
    "ConnectOptions",
    "DownloadError",
    "HandshakeError",
    "HandshakeTimeoutError",
    "LaunchOptions",
    "LauncherError",
    "LauncherSettings",
    "PrematureExitError",
    "RevisionInfo",
    "SpawnError",
    "create_app",
    "default_args",
    "load_settings",
    "revision_info",
]
