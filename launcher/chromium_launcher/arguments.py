"""Composition of the Chromium command line."""

from __future__ import annotations

import tempfile
from collections.abc import Callable

from .models import LaunchOptions

PROFILE_PREFIX = "chromium_launcher_profile-"

PIPE_FLAG = "--remote-debugging-pipe"
PORT_FLAG = "--remote-debugging-port=0"

DEFAULT_ARGS: tuple[str, ...] = (
    "--disable-background-networking",
    "--enable-features=NetworkService,NetworkServiceInProcess",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-breakpad",
    "--disable-client-side-phishing-detection",
    "--disable-component-extensions-with-background-pages",
    "--disable-default-apps",
    "--disable-dev-shm-usage",
    "--disable-extensions",
    # BlinkGenPropertyTrees disabled due to crbug.com/937609
    "--disable-features=TranslateUI,BlinkGenPropertyTrees",
    "--disable-hang-monitor",
    "--disable-ipc-flooding-protection",
    "--disable-popup-blocking",
    "--disable-prompt-on-repost",
    "--disable-renderer-backgrounding",
    "--disable-sync",
    "--force-color-profile=srgb",
    "--metrics-recording-only",
    "--no-first-run",
    "--enable-automation",
    "--password-store=basic",
    "--use-mock-keychain",
)

HEADLESS_ARGS: tuple[str, ...] = ("--headless", "--hide-scrollbars", "--mute-audio")


def default_args(options: LaunchOptions | None = None) -> list[str]:
    """Return the default Chromium flags for *options*, caller args last."""

    options = options or LaunchOptions()
    args = list(DEFAULT_ARGS)
    if options.user_data_dir:
        args.append(f"--user-data-dir={options.user_data_dir}")
    if options.devtools:
        args.append("--auto-open-devtools-for-tabs")
    if options.resolved_headless:
        args.extend(HEADLESS_ARGS)
    # Without a positional target Chromium waits for one and never finishes starting.
    if all(arg.startswith("-") for arg in options.args):
        args.append("about:blank")
    args.extend(options.args)
    return args


def select_args(options: LaunchOptions) -> list[str]:
    """Apply ``ignore_default_args`` on top of :func:`default_args`."""

    ignore = options.ignore_default_args
    if ignore is True:
        return list(options.args)
    if not ignore:
        return default_args(options)
    dropped = set(ignore)
    return [arg for arg in default_args(options) if arg not in dropped]


def compose_launch_args(
    options: LaunchOptions,
    make_temp_dir: Callable[[], str] | None = None,
) -> tuple[list[str], str | None]:
    """Build the final argument list and create a temporary profile if needed.

    Returns ``(args, temp_dir)``; ``temp_dir`` is ``None`` when the caller
    supplied its own ``--user-data-dir``.
    """

    args = select_args(options)
    if not any(arg.startswith("--remote-debugging-") for arg in args):
        args.append(PIPE_FLAG if options.pipe else PORT_FLAG)
    temp_dir: str | None = None
    if not any(arg.startswith("--user-data-dir") for arg in args):
        factory = make_temp_dir or _make_profile_dir
        temp_dir = factory()
        args.append(f"--user-data-dir={temp_dir}")
    return args, temp_dir


def uses_pipe(args: list[str]) -> bool:
    return PIPE_FLAG in args


def _make_profile_dir() -> str:
    return tempfile.mkdtemp(prefix=PROFILE_PREFIX)


__all__ = [
    "DEFAULT_ARGS",
    "HEADLESS_ARGS",
    "PIPE_FLAG",
    "PORT_FLAG",
    "compose_launch_args",
    "default_args",
    "select_args",
    "uses_pipe",
]
