"""
Pytest Configuration

Puts ``src`` on ``sys.path`` so the suite runs from a plain checkout and keeps
``ARCHIVESYNC_*`` variables from the invoking shell out of settings built by
tests.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# --- Globals ---

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@pytest.fixture(autouse=True)
def _isolated_settings_env(monkeypatch):
    for name in list(os.environ):
        if name.upper().startswith("ARCHIVESYNC_"):
            monkeypatch.delenv(name, raising=False)
    yield
