"""Entrypoint for ``python -m chromium_launcher``."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

import uvicorn

from .config import LauncherSettings, load_settings
from .errors import LauncherError
from .main import create_app
from .server import ChromiumLauncher

LOGGER = logging.getLogger("chromium_launcher")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chromium_launcher", description=__doc__)
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    commands = parser.add_subparsers(dest="command")
    commands.add_parser("serve", help="run the HTTP launcher service (default)")
    fetch = commands.add_parser("fetch", help="download a Chromium revision into the cache")
    fetch.add_argument("--revision", help="revision to download (defaults to the configured one)")
    fetch.add_argument("--platform", help="target platform: linux, mac, win32 or win64")
    info = commands.add_parser("revision-info", help="print where a revision lives and whether it is cached")
    info.add_argument("--revision")
    commands.add_parser("executable-path", help="print the configured Chromium executable path")
    return parser


def serve(settings: LauncherSettings, log_level: str) -> None:
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=log_level,
        loop="asyncio",
    )


async def fetch(settings: LauncherSettings, revision: str | None, platform: str | None) -> str:
    launcher = ChromiumLauncher(settings)
    last_reported = -1

    def _progress(received: int, total: int) -> None:
        nonlocal last_reported
        if not total:
            return
        percent = received * 100 // total
        if percent >= last_reported + 10:
            last_reported = percent
            LOGGER.info("Downloaded %d%% (%d of %d bytes)", percent, received, total)

    async with launcher.create_fetcher(platform=platform) as fetcher:
        info = await fetcher.download(revision or settings.revision, progress=_progress)
    return info.executable_path


def main(argv: list[str] | None = None) -> int:
    """Parse the command line and dispatch to the selected command."""

    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Loading settings lazily ensures environment variables set by the runtime
    # (Docker, systemd, etc.) are honoured.
    settings = load_settings()
    try:
        if args.command in (None, "serve"):
            serve(settings, args.log_level)
        elif args.command == "fetch":
            print(asyncio.run(fetch(settings, args.revision, args.platform)))
        elif args.command == "revision-info":
            info = ChromiumLauncher(settings).revision_info(args.revision)
            print(json.dumps(info.asdict(), indent=2))
        elif args.command == "executable-path":
            print(ChromiumLauncher(settings).executable_path())
    except LauncherError as exc:
        LOGGER.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
