"""
Pytest configuration for blelight tests.

- Ensures the repository root is on sys.path so `import blelight_core`
  resolves without an install.
- Lets caplog see the package loggers (they do not propagate by default).
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest


def _ensure_repo_root_on_syspath() -> None:
    """Prepend the repository root (parent of tests/) to sys.path."""
    repo_root = str(Path(__file__).resolve().parent.parent)
    if repo_root not in sys.path:
        sys.path.insert(0, repo_root)


_ensure_repo_root_on_syspath()


def pytest_configure(config):  # noqa: D401
    """Keep unit tests off real config files."""
    os.environ.setdefault("CONFIG_PATH", str(Path(__file__).parent / "does-not-exist.yaml"))


@pytest.fixture(autouse=True)
def _propagate_package_logs(monkeypatch):
    from blelight_core import logging_setup

    monkeypatch.setattr(logging_setup.logger, "propagate", True)
    yield
