"""Deployment registry: the single source of truth for deployment records.

The registry is an explicitly owned object (one per orchestrator, one per
test) holding records in a dict keyed by id. Every mutation is a plain
synchronous method, so on the event loop each call is atomic with respect to
other tasks: readers never see a half-applied update and writers to different
ids never wait on each other.

When a store is attached, mutated ids are queued and written behind in a
single background task. Store failures are logged and never affect the
in-memory view.
"""

from __future__ import annotations

import asyncio
import uuid

from botforge.logging_config import get_logger
from botforge.models import (
    DeploymentBackend,
    DeploymentMetrics,
    DeploymentRecord,
    DeploymentStatus,
    LogEntry,
    LogLevel,
    utcnow,
)
from botforge.store import DeploymentStore

logger = get_logger(__name__)

DEFAULT_LOG_CAP = 500


class DeploymentRegistry:
    """In-memory table of DeploymentRecord with append-only logs."""

    def __init__(self, log_cap: int = DEFAULT_LOG_CAP, store: DeploymentStore | None = None):
        self.log_cap = log_cap
        self._records: dict[str, DeploymentRecord] = {}
        self._store = store
        # dict used as an ordered set
        self._dirty: dict[str, None] = {}
        self._flusher: asyncio.Task | None = None

    def create(
        self,
        catalog_id: str,
        display_name: str,
        config: dict[str, str],
        user_id: str | None = None,
        backend: DeploymentBackend = DeploymentBackend.LOCAL,
    ) -> DeploymentRecord:
        """Insert a new queued record with a fresh id."""
        deployment_id = str(uuid.uuid4())
        now = utcnow()
        record = DeploymentRecord(
            id=deployment_id,
            catalog_id=catalog_id,
            display_name=display_name,
            config=dict(config),
            log_cap=self.log_cap,
            user_id=user_id,
            backend=backend,
            created_at=now,
            updated_at=now,
        )
        self._records[deployment_id] = record
        self._mark_dirty(deployment_id)
        logger.info(
            "deployment_record_created",
            deployment_id=deployment_id,
            catalog_id=catalog_id,
            user_id=user_id,
            backend=backend.value,
        )
        return record

    def get(self, deployment_id: str) -> DeploymentRecord | None:
        return self._records.get(deployment_id)

    def list(self, user_id: str | None = None) -> list[DeploymentRecord]:
        """Records newest first; ties broken by id."""
        records = self._records.values()
        if user_id is not None:
            records = [r for r in records if r.user_id == user_id]
        return sorted(records, key=lambda r: (r.created_at, r.id), reverse=True)

    def set_status(
        self, deployment_id: str, status: DeploymentStatus
    ) -> DeploymentRecord | None:
        """Overwrite the status.

        Transition legality is the caller's business. Setting the current
        status again is a no-op.
        """
        record = self._records.get(deployment_id)
        if record is None:
            return None
        if record.status is status:
            return record
        previous = record.status
        record.status = status
        record.touch()
        self._mark_dirty(deployment_id)
        logger.info(
            "deployment_status_changed",
            deployment_id=deployment_id,
            previous=previous.value,
            status=status.value,
        )
        return record

    def append_log(self, deployment_id: str, level: LogLevel, message: str) -> None:
        """Append one entry, evicting the oldest beyond the cap.

        Unknown ids are ignored: writing a log line must never fail a deployment.
        """
        record = self._records.get(deployment_id)
        if record is None:
            return
        record.logs.append(LogEntry(timestamp=utcnow(), level=level, message=message))
        record.touch()
        self._mark_dirty(deployment_id)

    def set_metrics(self, deployment_id: str, metrics: DeploymentMetrics | None) -> None:
        record = self._records.get(deployment_id)
        if record is None:
            return
        record.metrics = metrics
        record.touch()
        self._mark_dirty(deployment_id)

    def set_endpoint(self, deployment_id: str, url: str | None, port: int | None = None) -> None:
        """Record where the running bot can be reached."""
        record = self._records.get(deployment_id)
        if record is None:
            return
        record.url = url
        record.port = port
        record.touch()
        self._mark_dirty(deployment_id)

    def touch(self, deployment_id: str) -> None:
        """Mark a record as changed after the orchestrator swapped its handle."""
        record = self._records.get(deployment_id)
        if record is None:
            return
        record.touch()
        self._mark_dirty(deployment_id)

    def delete(self, deployment_id: str) -> bool:
        """Drop a record. Backend resources must already be released."""
        existed = self._records.pop(deployment_id, None) is not None
        if existed:
            self._mark_dirty(deployment_id)
            logger.info("deployment_record_deleted", deployment_id=deployment_id)
        return existed

    # === Persistence ===

    async def restore(self) -> list[DeploymentRecord]:
        """Load records from the store, replacing nothing already in memory."""
        if self._store is None:
            return []
        try:
            loaded = await self._store.load_all(self.log_cap)
        except Exception as e:
            logger.warning("deployment_restore_failed", error=str(e))
            return []
        restored = []
        for record in loaded:
            if record.id in self._records:
                continue
            self._records[record.id] = record
            restored.append(record)
        logger.info("deployments_restored", count=len(restored))
        return restored

    async def flush(self) -> None:
        """Wait until every pending write has been attempted."""
        if self._flusher is not None and not self._flusher.done():
            await self._flusher
        if self._dirty:
            await self._flush_loop()

    def _mark_dirty(self, deployment_id: str) -> None:
        if self._store is None:
            return
        self._dirty[deployment_id] = None
        if self._flusher is not None and not self._flusher.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet: the next flush() picks it up
            return
        self._flusher = loop.create_task(self._flush_loop(), name="registry_flush")

    async def _flush_loop(self) -> None:
        store = self._store
        if store is None:
            self._dirty.clear()
            return
        while self._dirty:
            deployment_id = next(iter(self._dirty))
            del self._dirty[deployment_id]
            record = self._records.get(deployment_id)
            try:
                if record is None:
                    await store.delete(deployment_id)
                else:
                    await store.save(record)
            except Exception as e:
                logger.warning(
                    "deployment_persist_failed",
                    deployment_id=deployment_id,
                    error=str(e),
                )
