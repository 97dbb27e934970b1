"""Durable storage for deployment records (optional).

One row per record keyed by id; config, logs and metrics are JSON blobs.
Live process handles are never stored: after a restart only panel-hosted
servers can be picked up again.
"""

from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import JSON, DateTime, Integer, String, select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from botforge.models import (
    DeploymentBackend,
    DeploymentMetrics,
    DeploymentRecord,
    DeploymentStatus,
    LogEntry,
    LogLevel,
    RemoteServerHandle,
)


class DeploymentStore(Protocol):
    """What the registry needs from a persistence backend."""

    async def save(self, record: DeploymentRecord) -> None: ...

    async def delete(self, deployment_id: str) -> None: ...

    async def load_all(self, log_cap: int) -> Sequence[DeploymentRecord]: ...


class Base(DeclarativeBase):
    """Base class for all models."""


class DeploymentRow(Base):
    """Persisted form of a DeploymentRecord."""

    __tablename__ = "deployments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    catalog_id: Mapped[str] = mapped_column(String(255), index=True)
    display_name: Mapped[str] = mapped_column(String(255))
    user_id: Mapped[str | None] = mapped_column(String(255), index=True)
    # local | remote
    backend: Mapped[str] = mapped_column(String(16), default="local")

    # queued | deploying | running | stopped | failed
    status: Mapped[str] = mapped_column(String(32), index=True)

    config: Mapped[dict] = mapped_column(JSON, default=dict)
    logs: Mapped[list] = mapped_column(JSON, default=list)
    metrics: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    url: Mapped[str | None] = mapped_column(String(512))
    port: Mapped[int | None] = mapped_column(Integer)
    workdir: Mapped[str | None] = mapped_column(String(1024))

    # Panel-hosted server, if any
    server_id: Mapped[int | None] = mapped_column(Integer)
    server_uuid: Mapped[str | None] = mapped_column(String(64))
    server_identifier: Mapped[str | None] = mapped_column(String(64))
    panel_url: Mapped[str | None] = mapped_column(String(512))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<DeploymentRow(id={self.id}, catalog={self.catalog_id}, status={self.status})>"


def record_to_row_values(record: DeploymentRecord) -> dict[str, Any]:
    """Flatten a record into DeploymentRow column values."""
    remote = record.remote
    metrics = record.metrics
    return {
        "id": record.id,
        "catalog_id": record.catalog_id,
        "display_name": record.display_name,
        "user_id": record.user_id,
        "backend": record.backend.value,
        "status": record.status.value,
        "config": dict(record.config),
        "logs": [
            {
                "timestamp": entry.timestamp.isoformat(),
                "level": entry.level.value,
                "message": entry.message,
            }
            for entry in record.logs
        ],
        "metrics": (
            {
                "cpu": metrics.cpu,
                "memory": metrics.memory,
                "uptime": metrics.uptime,
                "requests": metrics.requests,
            }
            if metrics is not None
            else None
        ),
        "url": record.url,
        "port": record.port,
        "workdir": str(record.workdir) if record.workdir else None,
        "server_id": remote.server_id if remote else None,
        "server_uuid": remote.uuid if remote else None,
        "server_identifier": remote.identifier if remote else None,
        "panel_url": remote.panel_url if remote else None,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def row_to_record(row: DeploymentRow, log_cap: int) -> DeploymentRecord:
    """Rebuild a record from its row; the log is trimmed to log_cap."""
    handle = None
    if row.server_id is not None:
        handle = RemoteServerHandle(
            server_id=row.server_id,
            uuid=row.server_uuid or "",
            identifier=row.server_identifier or "",
            panel_url=row.panel_url or "",
        )
    logs = [
        LogEntry(
            timestamp=datetime.fromisoformat(item["timestamp"]),
            level=LogLevel(item["level"]),
            message=item["message"],
        )
        for item in (row.logs or [])
    ]
    return DeploymentRecord(
        id=row.id,
        catalog_id=row.catalog_id,
        display_name=row.display_name,
        config=dict(row.config or {}),
        log_cap=log_cap,
        user_id=row.user_id,
        backend=DeploymentBackend(row.backend or DeploymentBackend.LOCAL.value),
        status=DeploymentStatus(row.status),
        logs=logs,
        metrics=DeploymentMetrics(**row.metrics) if row.metrics is not None else None,
        url=row.url,
        port=row.port,
        handle=handle,
        workdir=Path(row.workdir) if row.workdir else None,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlDeploymentStore:
    """DeploymentStore backed by SQLAlchemy async engine."""

    def __init__(self, database_url: str | None = None, engine: AsyncEngine | None = None):
        if engine is None:
            if not database_url:
                raise ValueError("SqlDeploymentStore needs a database_url or an engine")
            engine = create_async_engine(database_url, echo=False)
        self.engine = engine
        self._session_maker = async_sessionmaker(engine, expire_on_commit=False)

    async def init(self) -> None:
        """Create the deployments table if it does not exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def save(self, record: DeploymentRecord) -> None:
        values = record_to_row_values(record)
        async with self._session_maker() as session:
            await session.merge(DeploymentRow(**values))
            await session.commit()

    async def delete(self, deployment_id: str) -> None:
        async with self._session_maker() as session:
            row = await session.get(DeploymentRow, deployment_id)
            if row is not None:
                await session.delete(row)
                await session.commit()

    async def load_all(self, log_cap: int) -> list[DeploymentRecord]:
        async with self._session_maker() as session:
            result = await session.execute(select(DeploymentRow))
            return [row_to_record(row, log_cap) for row in result.scalars().all()]

    async def dispose(self) -> None:
        await self.engine.dispose()
