"""Shared pytest fixtures."""

from __future__ import annotations

import logging
import os

import pytest


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Keep developer credentials and settings out of the test run."""

    for name in list(os.environ):
        if name.startswith("SONARAGENT_") or name == "PERPLEXITY_API_KEY":
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SONARAGENT_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
