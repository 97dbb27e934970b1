"""Pydantic schemas for the HTTP API."""

from datetime import datetime

from pydantic import BaseModel, Field

from botforge.models import (
    DeploymentBackend,
    DeploymentMetrics,
    DeploymentRecord,
    DeploymentStatus,
    EnvVarSpec,
    LogEntry,
    LogLevel,
)


class DeployRequest(BaseModel):
    """Body of POST /api/deployments."""

    bot_id: str
    env_vars: dict[str, str] = Field(default_factory=dict)
    alias: str | None = Field(default=None, max_length=100)


class MetricsRead(BaseModel):
    cpu: float
    memory: float
    uptime: float
    requests: int

    @classmethod
    def from_metrics(cls, metrics: DeploymentMetrics) -> "MetricsRead":
        return cls(
            cpu=metrics.cpu,
            memory=metrics.memory,
            uptime=metrics.uptime,
            requests=metrics.requests,
        )


class LogEntryRead(BaseModel):
    timestamp: datetime
    level: LogLevel
    message: str

    @classmethod
    def from_entry(cls, entry: LogEntry) -> "LogEntryRead":
        return cls(timestamp=entry.timestamp, level=entry.level, message=entry.message)


class DeploymentRead(BaseModel):
    """Deployment as seen by API clients.

    Config values are never echoed back, only the variable names. The log is
    embedded, oldest first, so one poll shows a status with the lines that
    explain it.
    """

    id: str
    bot_id: str
    name: str
    user_id: str | None
    status: DeploymentStatus
    url: str | None
    port: int | None
    backend: DeploymentBackend
    config_keys: list[str]
    metrics: MetricsRead | None
    log_count: int
    logs: list[LogEntryRead]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: DeploymentRecord) -> "DeploymentRead":
        return cls(
            id=record.id,
            bot_id=record.catalog_id,
            name=record.display_name,
            user_id=record.user_id,
            status=record.status,
            url=record.url,
            port=record.port,
            backend=record.backend,
            config_keys=sorted(record.config),
            metrics=MetricsRead.from_metrics(record.metrics) if record.metrics else None,
            log_count=len(record.logs),
            logs=[LogEntryRead.from_entry(e) for e in record.logs],
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class LiveConfigRead(BaseModel):
    """Config schema fetched from the bot repository's app.json."""

    found: bool
    env: dict[str, EnvVarSpec] = Field(default_factory=dict)
