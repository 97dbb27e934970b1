"""Process runner for deployment pipelines.

Runs setup commands to completion and supervises the long-lived bot process.
Both output channels are streamed line by line into the deployment's
LogChannel. Only the command's own failure is raised to the caller.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
import os
import shlex

from botforge.errors import PipelineStepError, SpawnError
from botforge.log_channel import LogChannel
from botforge.logging_config import get_logger
from botforge.models import LogLevel, utcnow

logger = get_logger(__name__)

# Max bytes per output line before the reader gives up on it
STREAM_LIMIT = 1024 * 1024


def classify_stderr(line: str) -> LogLevel:
    """Severity of a bot stderr line: error-ish lines are errors, the rest warnings."""
    lower = line.lower()
    if "error" in lower or "fatal" in lower:
        return LogLevel.ERROR
    return LogLevel.WARN


@dataclass
class LocalProcessHandle:
    """Handle to a running bot process."""

    process: asyncio.subprocess.Process
    deployment_id: str
    command: list[str]
    started_at: datetime = field(default_factory=utcnow)
    readers: list[asyncio.Task] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_alive(self) -> bool:
        """Check if process is still running."""
        return self.process.returncode is None


class ProcessRunner:
    """Spawns commands and streams their output into a LogChannel."""

    def __init__(self, stop_timeout: float = 5.0) -> None:
        self.stop_timeout = stop_timeout

    async def run_step(
        self,
        channel: LogChannel,
        step: str,
        argv: list[str],
        cwd: str | os.PathLike | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        """Run one setup command to completion.

        stdout lines are logged as info, stderr lines as warn.

        Raises:
            SpawnError: The command could not be started.
            PipelineStepError: The command exited non-zero.
        """
        process = await self._spawn(argv, cwd, env)
        logger.debug(
            "pipeline_step_started",
            deployment_id=channel.deployment_id,
            step=step,
            pid=process.pid,
        )
        try:
            await asyncio.gather(
                self._pump(process.stdout, channel, lambda _line: LogLevel.INFO),
                self._pump(process.stderr, channel, lambda _line: LogLevel.WARN),
            )
            exit_code = await process.wait()
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        logger.info(
            "pipeline_step_finished",
            deployment_id=channel.deployment_id,
            step=step,
            exit_code=exit_code,
        )
        if exit_code != 0:
            raise PipelineStepError(step, shlex.join(argv), exit_code)

    async def launch(
        self,
        channel: LogChannel,
        argv: list[str],
        cwd: str | os.PathLike | None = None,
        env: dict[str, str] | None = None,
    ) -> LocalProcessHandle:
        """Start the long-lived bot process.

        Output keeps streaming for the whole life of the process, long after
        this call returns. Use wait() to observe the exit.

        Raises:
            SpawnError: The command could not be started.
        """
        process = await self._spawn(argv, cwd, env)
        handle = LocalProcessHandle(
            process=process,
            deployment_id=channel.deployment_id,
            command=list(argv),
        )
        handle.readers = [
            asyncio.create_task(
                self._pump(process.stdout, channel, lambda _line: LogLevel.INFO),
                name=f"stdout_{channel.deployment_id}",
            ),
            asyncio.create_task(
                self._pump(process.stderr, channel, classify_stderr),
                name=f"stderr_{channel.deployment_id}",
            ),
        ]
        logger.info(
            "bot_process_started",
            deployment_id=channel.deployment_id,
            pid=process.pid,
            command=shlex.join(argv),
        )
        return handle

    async def wait(self, handle: LocalProcessHandle) -> int:
        """Wait for the process to exit and its output to be fully read."""
        exit_code = await handle.process.wait()
        await asyncio.gather(*handle.readers, return_exceptions=True)
        return exit_code

    async def terminate(self, handle: LocalProcessHandle, timeout: float | None = None) -> None:
        """Gracefully stop the process.

        Sends SIGTERM, waits up to ``timeout`` seconds, then SIGKILL.
        """
        timeout = self.stop_timeout if timeout is None else timeout
        process = handle.process
        if not handle.is_alive:
            logger.debug("process_already_dead", deployment_id=handle.deployment_id)
            return

        logger.info("stopping_process", deployment_id=handle.deployment_id, pid=process.pid)
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
            logger.info("process_terminated_gracefully", deployment_id=handle.deployment_id)
        except TimeoutError:
            logger.warning("process_force_kill", deployment_id=handle.deployment_id)
            await self._kill(process)

    async def kill(self, handle: LocalProcessHandle) -> None:
        """Kill the process immediately."""
        await self._kill(handle.process)

    async def _spawn(
        self,
        argv: list[str],
        cwd: str | os.PathLike | None,
        env: dict[str, str] | None,
    ) -> asyncio.subprocess.Process:
        if not argv:
            raise SpawnError("<empty>", "no command given")
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise SpawnError(shlex.join(argv), e.strerror or str(e)) from e

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    async def _pump(self, stream, channel: LogChannel, level_for) -> None:
        """Forward non-blank lines of a stream to the channel."""
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than STREAM_LIMIT: log what was buffered and move on
                raw = await stream.read(STREAM_LIMIT)
            if not raw:
                break
            line = raw.decode(errors="replace").strip()
            if line:
                await channel.put(level_for(line), line)
