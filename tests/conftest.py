"""
Shared fixtures for mem-ctl tests.
"""

from datetime import datetime

import pytest

import mem_ctl


@pytest.fixture
def config() -> mem_ctl.Config:
    """Built-in service table and constants."""
    return mem_ctl.Config()


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 10, 18, 9, 30, 5)


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """Run in an empty directory with no memscale.toml."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def env_file(workdir):
    path = workdir / ".env"
    path.write_text(
        "# Compose settings\n"
        "POSTGRES_PASSWORD=secret\n"
        "\n"
        "JWT_SECRET=abc123\n",
        encoding="utf-8",
    )
    return path
