"""Per-deployment log channel.

Output producers (stdout/stderr readers, the pipeline itself) put lines on a
bounded queue; one drain task per deployment appends them to the registry.
That drain task is the only writer of a deployment's log, so entries land in
the order they were produced.
"""

import asyncio
import contextlib

from botforge.logging_config import get_logger
from botforge.models import LogLevel
from botforge.registry import DeploymentRegistry

logger = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 1000


class LogChannel:
    """Bounded queue of (level, message) drained into one deployment's log."""

    def __init__(
        self,
        registry: DeploymentRegistry,
        deployment_id: str,
        maxsize: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.registry = registry
        self.deployment_id = deployment_id
        self._queue: asyncio.Queue[tuple[LogLevel, str]] = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task | None = None

    def _ensure_drain(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(
                self._drain(), name=f"log_channel_{self.deployment_id}"
            )

    async def put(self, level: LogLevel, message: str) -> None:
        """Queue a line; waits only while the queue is full."""
        self._ensure_drain()
        await self._queue.put((level, message))

    async def info(self, message: str) -> None:
        await self.put(LogLevel.INFO, message)

    async def warn(self, message: str) -> None:
        await self.put(LogLevel.WARN, message)

    async def error(self, message: str) -> None:
        await self.put(LogLevel.ERROR, message)

    async def success(self, message: str) -> None:
        await self.put(LogLevel.SUCCESS, message)

    async def join(self) -> None:
        """Wait until every queued line is visible in the registry."""
        if self._queue.empty():
            return
        self._ensure_drain()
        await self._queue.join()

    async def close(self) -> None:
        """Flush pending lines and stop the drain task."""
        await self.join()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _drain(self) -> None:
        while True:
            level, message = await self._queue.get()
            try:
                self.registry.append_log(self.deployment_id, level, message)
            except Exception as e:
                logger.error(
                    "log_append_failed",
                    deployment_id=self.deployment_id,
                    error=str(e),
                )
            finally:
                self._queue.task_done()
