"""Test configuration helpers for the Chromium launcher repository."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent

for candidate in (ROOT, ROOT / "launcher"):
    value = str(candidate)
    if value not in sys.path:
        sys.path.insert(0, value)
