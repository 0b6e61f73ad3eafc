"""Shared fixtures for Trillian tests."""

import os
import tempfile

import pytest

# Keep agent settings away from the real ~/.trillian before trillian.config is imported
os.environ.setdefault("TRILLIAN_HOME", tempfile.mkdtemp(prefix="trillian-tests-"))

from trillian.agent.ledger import Ledger  # noqa: E402
from trillian.schemas.agent import WatchRule  # noqa: E402


@pytest.fixture(autouse=True)
def _no_env_overrides(monkeypatch):
    """Ensure upload settings from the developer's shell never leak into tests."""
    for var in list(os.environ):
        if var.startswith("TRILLIAN_API_"):
            monkeypatch.delenv(var)


@pytest.fixture()
def watch_dirs(tmp_path):
    """An input folder and an output folder."""
    src = tmp_path / "in"
    dest = tmp_path / "out"
    src.mkdir()
    dest.mkdir()
    return src, dest


@pytest.fixture()
def rule(watch_dirs):
    src, _ = watch_dirs
    return WatchRule(path=src, extensions=["pdf"], tag="x")


@pytest.fixture()
def ledger(tmp_path):
    return Ledger(tmp_path / "state" / "processed_files")
