"""Shared fixtures for botforge tests."""

import asyncio
import sys

import pytest

from botforge.catalog import Catalog
from botforge.config import Settings
from botforge.models import CatalogEntry, DeploymentStatus, EnvVarSpec

PY = sys.executable

FETCH_OK = [PY, "-c", "import os, sys; os.makedirs(sys.argv[1], exist_ok=True); print('cloned')", "{workdir}"]
INSTALL_OK = [PY, "-c", "print('added 42 packages')"]
BOT_FOREVER = [PY, "-c", "import time; print('bot online', flush=True); time.sleep(60)"]


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Local-backend settings whose commands are small python snippets."""
    return Settings(
        _env_file=None,
        backend="local",
        panel_url=None,
        panel_api_key=None,
        database_url=None,
        bot_database_url=None,
        workspace_dir=tmp_path / "workspace",
        fetch_command=FETCH_OK,
        install_command=INSTALL_OK,
        start_command=BOT_FOREVER,
        stop_timeout_sec=2.0,
        metrics_interval_sec=60.0,
        panel_poll_interval_sec=0.01,
    )


@pytest.fixture
def remote_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        backend="remote",
        panel_url="https://panel.test",
        panel_api_key="ptla_test",
        database_url=None,
        workspace_dir=tmp_path / "workspace",
        panel_poll_interval_sec=0.01,
        panel_max_poll_failures=3,
        panel_max_offline_polls=2,
        metrics_interval_sec=60.0,
    )


@pytest.fixture
def wolf_entry() -> CatalogEntry:
    return CatalogEntry(
        id="wolf-bot",
        name="Wolf Bot",
        description="WhatsApp bot",
        repository="https://github.com/example/wolf-bot",
        stars=120,
        env={
            "SESSION_ID": EnvVarSpec(description="Session string", required=True),
            "PHONE_NUMBER": EnvVarSpec(description="Owner number", required=True),
            "PREFIX": EnvVarSpec(description="Command prefix", value="."),
        },
    )


@pytest.fixture
def catalog(wolf_entry) -> Catalog:
    return Catalog([wolf_entry])


@pytest.fixture
def wolf_config() -> dict[str, str]:
    return {"SESSION_ID": "WOLF-BOT_abc", "PHONE_NUMBER": "+254700000000"}


async def _wait_for_status(record, *statuses: DeploymentStatus, timeout: float = 15.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while record.status not in statuses:
        if loop.time() > deadline:
            raise AssertionError(
                f"status stayed {record.status.value}, expected one of "
                f"{[s.value for s in statuses]}; logs: {[e.message for e in record.logs]}"
            )
        await asyncio.sleep(0.02)


@pytest.fixture
def wait_for_status():
    """Poll a record until it reaches one of the given statuses."""
    return _wait_for_status


@pytest.fixture
def log_messages():
    return lambda record: [entry.message for entry in record.logs]
