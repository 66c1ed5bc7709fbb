from __future__ import annotations

import os
import stat
import sys
import textwrap
from pathlib import Path

import pytest

from chromium_launcher.config import LauncherSettings

FAKE_CHROME_SOURCE = textwrap.dedent(
    """
    import json
    import os
    import sys
    import time

    mode = os.environ.get("FAKE_CHROME_MODE", "announce")
    args_file = os.environ.get("FAKE_CHROME_ARGS_FILE")
    if args_file:
        with open(args_file, "w", encoding="utf-8") as fh:
            json.dump(sys.argv[1:], fh)

    def announce():
        delay = float(os.environ.get("FAKE_CHROME_DELAY", "0"))
        if delay:
            time.sleep(delay)
        long_line = int(os.environ.get("FAKE_CHROME_LONG_LINE", "0"))
        if long_line:
            sys.stdout.write("o" * long_line + "\\n")
            sys.stdout.flush()
            sys.stderr.write("e" * long_line + "\\n")
            sys.stderr.flush()
        endpoint = os.environ.get(
            "FAKE_CHROME_ENDPOINT", "ws://127.0.0.1:9/devtools/browser/fake"
        )
        sys.stderr.write("[0101/000000.000000:INFO] starting up\\n")
        sys.stderr.write("DevTools listening on " + endpoint + "\\n")
        sys.stderr.flush()

    if mode == "exit":
        sys.stderr.write("crashed during startup\\n")
        sys.stderr.flush()
        sys.exit(3)

    if mode == "pipe":
        buffer = b""
        while True:
            chunk = os.read(3, 65536)
            if not chunk:
                sys.exit(1)
            buffer += chunk
            while b"\\0" in buffer:
                raw, buffer = buffer.split(b"\\0", 1)
                message = json.loads(raw.decode("utf-8"))
                if message.get("method") == "Browser.close":
                    os.write(4, json.dumps({"id": message["id"], "result": {}}).encode() + b"\\0")
                    sys.exit(0)

    if mode == "announce":
        announce()

    while True:
        time.sleep(0.05)
    """
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fake_chrome(tmp_path: Path) -> Path:
    """Write an executable script that behaves like a tiny Chromium."""

    if sys.platform == "win32":  # pragma: no cover - shebang scripts need POSIX
        pytest.skip("fake browser script requires a POSIX platform")
    script = tmp_path / "fake-chrome"
    script.write_text(f"#!{sys.executable}\n{FAKE_CHROME_SOURCE}", encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def fake_env(tmp_path: Path):
    """Return a factory building the child environment for a fake browser mode."""

    def _build(mode: str, **extra: str) -> dict[str, str]:
        env = dict(os.environ)
        env["FAKE_CHROME_MODE"] = mode
        env["FAKE_CHROME_ARGS_FILE"] = str(tmp_path / "argv.json")
        env.update(extra)
        return env

    return _build


@pytest.fixture
def settings(tmp_path: Path) -> LauncherSettings:
    return LauncherSettings(
        _env_file=None,
        cache_path=tmp_path / "cache",
        platform="linux",
        grace_period_seconds=1.0,
        launch_timeout_seconds=10.0,
        cleanup_interval=1,
    )
