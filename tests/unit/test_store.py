"""Tests for the SQL row mapping of deployment records."""

from unittest.mock import MagicMock

from botforge.models import (
    DeploymentBackend,
    DeploymentMetrics,
    DeploymentRecord,
    DeploymentStatus,
    LogEntry,
    LogLevel,
    RemoteServerHandle,
    utcnow,
)
from botforge.store import DeploymentRow, record_to_row_values, row_to_record


def _record(**overrides) -> DeploymentRecord:
    fields = {
        "id": "d1",
        "catalog_id": "wolf-bot",
        "display_name": "My Wolf",
        "config": {"SESSION_ID": "abc"},
        "log_cap": 500,
        "user_id": "u1",
        "status": DeploymentStatus.RUNNING,
        "metrics": DeploymentMetrics(cpu=2.5, memory=80.0, uptime=60.0, requests=3),
    }
    fields.update(overrides)
    return DeploymentRecord(**fields)


def test_remote_record_survives_row_mapping():
    record = _record(
        handle=RemoteServerHandle(
            server_id=42, uuid="uuid-42", identifier="abcd1234", panel_url="https://panel.test/server/abcd1234"
        ),
        url="https://panel.test/server/abcd1234",
    )
    record.logs.append(LogEntry(timestamp=utcnow(), level=LogLevel.SUCCESS, message="Server created"))

    restored = row_to_record(DeploymentRow(**record_to_row_values(record)), log_cap=500)

    assert restored.id == "d1"
    assert restored.status is DeploymentStatus.RUNNING
    assert restored.config == {"SESSION_ID": "abc"}
    assert restored.metrics == record.metrics
    assert restored.remote.server_id == 42
    assert restored.remote.identifier == "abcd1234"
    assert [(e.level, e.message) for e in restored.logs] == [(LogLevel.SUCCESS, "Server created")]


def test_local_handle_is_not_stored():
    record = _record()
    record.handle = MagicMock()

    values = record_to_row_values(record)

    assert values["server_id"] is None
    assert row_to_record(DeploymentRow(**values), log_cap=500).handle is None


def test_restored_logs_trimmed_to_cap():
    record = _record(log_cap=10)
    for i in range(10):
        record.logs.append(LogEntry(timestamp=utcnow(), level=LogLevel.INFO, message=str(i)))

    restored = row_to_record(DeploymentRow(**record_to_row_values(record)), log_cap=4)

    assert [e.message for e in restored.logs] == ["6", "7", "8", "9"]


def test_backend_survives_cleared_handle():
    record = _record(status=DeploymentStatus.STOPPED, backend=DeploymentBackend.REMOTE)

    values = record_to_row_values(record)

    assert values["backend"] == "remote"
    assert values["server_id"] is None
    assert row_to_record(DeploymentRow(**values), log_cap=500).backend is DeploymentBackend.REMOTE
