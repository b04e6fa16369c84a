"""
Pytest config.

Pins the repo root on sys.path so `import geoproxy` works without an
editable install.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()


class RecordingLog:
    """Stands in for a ModuleLogger and keeps every call."""

    def __init__(self) -> None:
        self.calls = []

    def _record(self, level, context, message):
        self.calls.append((level, dict(context or {}), message))

    def debug(self, context, message):
        self._record("debug", context, message)

    def info(self, context, message):
        self._record("info", context, message)

    def warn(self, context, message):
        self._record("warn", context, message)

    warning = warn

    def error(self, context, message):
        self._record("error", context, message)

    def levels(self):
        return [c[0] for c in self.calls]


@pytest.fixture
def recording_log() -> RecordingLog:
    return RecordingLog()


@pytest.fixture(autouse=True)
def _clean_proxy_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "GEOBLOCK_ENABLED",
        "GEOBLOCK_ALLOWED_COUNTRIES",
        "PROXY_LISTEN_HOST",
        "PROXY_LISTEN_PORT",
        "PROXY_UPSTREAM_HOST",
        "PROXY_UPSTREAM_PORT",
        "PROXY_TRUST_PROXY",
        "PROXY_TRUSTED_EDGE_IPS",
        "PROXY_LOG_PATH",
        "PROXY_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
