"""Pytest configuration helpers."""

import sys
import time
from pathlib import Path

import pytest


def _ensure_repo_on_path() -> None:
    """Allow tests to import relay_voice without installing the package."""
    repo_root = Path(__file__).resolve().parents[1]
    path_str = str(repo_root)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)


_ensure_repo_on_path()


def _wait_for(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_for():
    """Poll a predicate until it holds or a timeout elapses."""
    return _wait_for
