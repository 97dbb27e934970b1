"""Deployment orchestrator.

Turns a catalog entry plus user config into a running bot, either as a
local process (fetch, install, launch) or as a server on the hosting panel,
and keeps the deployment record in step with what the backend reports.

Every deployment owns one background task (pipeline, then supervision) and
one LogChannel. Status changes go through _transition(), which flushes the
channel first and refuses illegal moves, so a late event from a task that
lost a race with stop() or remove() is simply dropped.
"""

import asyncio
import contextlib
from datetime import datetime
import os
from pathlib import Path
import random
import shutil
import signal

import psutil
import structlog

from botforge.catalog import Catalog
from botforge.config import Settings, get_settings
from botforge.entitlements import AllowAllEntitlements, EntitlementChecker
from botforge.errors import (
    BackendUnavailableError,
    BotforgeError,
    EntitlementError,
    NotFoundError,
    PanelError,
    RuntimeCrash,
    ValidationError,
)
from botforge.log_channel import LogChannel
from botforge.logging_config import get_logger
from botforge.models import (
    CatalogEntry,
    DeploymentBackend,
    DeploymentMetrics,
    DeploymentRecord,
    DeploymentStatus,
    RemoteServerHandle,
    RemoteServerState,
    utcnow,
)
from botforge.panel_client import PanelClient
from botforge.process_runner import LocalProcessHandle, ProcessRunner
from botforge.registry import DeploymentRegistry

logger = get_logger(__name__)

ENV_FILE_NAME = ".env"


def _substitute(template: list[str], repository: str, workdir: Path) -> list[str]:
    return [
        part.replace("{repository}", repository).replace("{workdir}", str(workdir))
        for part in template
    ]


def _quote_env_value(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'


def _crash_for_exit_code(exit_code: int) -> RuntimeCrash:
    """Negative codes mean the process was killed by a signal."""
    if exit_code < 0:
        try:
            return RuntimeCrash(signal_name=signal.Signals(-exit_code).name)
        except ValueError:
            pass
    return RuntimeCrash(exit_code=exit_code)


class Orchestrator:
    """Drives deployments through their lifecycle."""

    def __init__(
        self,
        catalog: Catalog,
        registry: DeploymentRegistry | None = None,
        runner: ProcessRunner | None = None,
        panel: PanelClient | None = None,
        entitlements: EntitlementChecker | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.catalog = catalog
        self.registry = registry or DeploymentRegistry(log_cap=self.settings.log_cap)
        self.runner = runner or ProcessRunner(stop_timeout=self.settings.stop_timeout_sec)
        self.panel = panel or PanelClient(self.settings)
        self.entitlements = entitlements or AllowAllEntitlements()

        self._tasks: dict[str, asyncio.Task] = {}
        self._channels: dict[str, LogChannel] = {}
        self._background: set[asyncio.Task] = set()
        self._running_since: dict[str, datetime] = {}
        self._usage: dict[str, psutil.Process] = {}
        self._metrics_task: asyncio.Task | None = None

    # === Service lifecycle ===

    async def start(self) -> None:
        """Restore persisted records and start the metrics sampler."""
        for record in await self.registry.restore():
            if record.status.is_terminal:
                continue
            handle = record.remote
            if handle is not None:
                self._resume_remote(record, handle)
            elif record.backend is DeploymentBackend.REMOTE:
                await self._channel(record.id).error(
                    "Service restarted before the server was created on the hosting panel."
                )
                await self._transition(record.id, DeploymentStatus.FAILED)
            else:
                channel = self._channel(record.id)
                await channel.warn(
                    "Service restarted while the bot was running locally; "
                    "the process is no longer supervised."
                )
                await self._transition(record.id, DeploymentStatus.STOPPED)

        self._metrics_task = asyncio.create_task(self._metrics_loop(), name="metrics_sampler")
        logger.info("orchestrator_started", deployments=len(self.registry.list()))

    async def shutdown(self) -> None:
        """Stop local bots, cancel background work and flush the registry.

        Panel-hosted servers keep running; their polling resumes on the next start().
        """
        if self._metrics_task is not None:
            self._metrics_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._metrics_task
            self._metrics_task = None

        for record in self.registry.list():
            handle = record.handle
            if isinstance(handle, LocalProcessHandle):
                record.handle = None
                await self._channel(record.id).warn("Service shutting down. Stopping bot process...")
                await self.runner.terminate(handle)
                await self._transition(record.id, DeploymentStatus.STOPPED)

        tasks = list(self._tasks.values()) + list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for channel in list(self._channels.values()):
            await channel.close()
        self._channels.clear()

        await self.registry.flush()
        logger.info("orchestrator_stopped")

    # === Queries ===

    def get(self, deployment_id: str) -> DeploymentRecord:
        record = self.registry.get(deployment_id)
        if record is None:
            raise NotFoundError("Deployment", deployment_id)
        return record

    def list(self, user_id: str | None = None) -> list[DeploymentRecord]:
        return self.registry.list(user_id=user_id)

    # === Commands ===

    async def deploy(
        self,
        catalog_id: str,
        config: dict[str, str],
        user_id: str | None = None,
        alias: str | None = None,
    ) -> DeploymentRecord:
        """Create a queued deployment and start its pipeline in the background.

        Raises:
            NotFoundError: Unknown or inactive catalog entry.
            ValidationError: Required config keys are missing or blank.
            BackendUnavailableError: Remote backend selected but not configured.
            EntitlementError: The user may not deploy.
        """
        entry = self.catalog.get_entry(catalog_id)
        if entry is None:
            raise NotFoundError("Bot", catalog_id)

        missing = entry.missing_required(config)
        if missing:
            raise ValidationError(missing)

        backend = (
            DeploymentBackend.REMOTE if self.settings.use_remote_backend else DeploymentBackend.LOCAL
        )
        remote = backend is DeploymentBackend.REMOTE
        if remote and not self.panel.configured:
            raise BackendUnavailableError(
                "Remote backend selected but the hosting panel is not configured"
            )

        if user_id is not None and not await self.entitlements.can_user_deploy(user_id):
            raise EntitlementError(user_id)

        display_name = (alias or "").strip() or entry.name
        record = self.registry.create(
            entry.id, display_name, config, user_id=user_id, backend=backend
        )
        self._channel(record.id)

        if user_id is not None:
            await self.entitlements.record_deploy(user_id, record)

        pipeline = self._run_remote(record.id, entry) if remote else self._run_local(record.id, entry)
        self._tasks[record.id] = asyncio.create_task(
            self._guarded(record.id, pipeline), name=f"deployment_{record.id}"
        )
        logger.info(
            "deployment_requested",
            deployment_id=record.id,
            catalog_id=entry.id,
            backend=backend.value,
        )
        return record

    async def stop(self, deployment_id: str) -> DeploymentRecord:
        """Stop a deployment. Stopping a stopped or failed deployment is a no-op.

        The record is stopped as soon as this returns; process termination or
        server deletion finishes in the background.

        Raises:
            NotFoundError: Unknown deployment.
        """
        record = self.get(deployment_id)
        if record.status.is_terminal:
            logger.debug("stop_ignored_terminal", deployment_id=deployment_id, status=record.status.value)
            return record

        # Claim the handle and cancel the pipeline before any await, so the
        # pipeline cannot publish a new handle behind our back.
        handle = record.handle
        record.handle = None
        pending = record.status in (DeploymentStatus.QUEUED, DeploymentStatus.DEPLOYING)
        task = self._tasks.get(deployment_id)
        if pending and task is not None and not task.done():
            task.cancel()

        channel = self._channel(deployment_id)
        if isinstance(handle, LocalProcessHandle) and handle.is_alive:
            await channel.warn("Received stop signal. Sending SIGTERM to bot process...")
            self._spawn_background(self.runner.terminate(handle), f"terminate_{deployment_id}")
        elif isinstance(handle, RemoteServerHandle):
            await channel.warn("Received stop signal. Deleting server on hosting panel...")
            self._spawn_background(
                self._delete_server(deployment_id, handle), f"delete_server_{deployment_id}"
            )
        elif pending:
            await channel.warn("Received stop signal. Cancelling deployment pipeline...")
        else:
            await channel.warn("No running process found for this deployment.")

        await channel.info("Bot stopped.")
        await self._transition(deployment_id, DeploymentStatus.STOPPED)
        return record

    async def remove(self, deployment_id: str) -> bool:
        """Release every backend resource and delete the record.

        Returns False for an unknown id.
        """
        record = self.registry.get(deployment_id)
        if record is None:
            return False

        handle = record.handle
        record.handle = None
        task = self._tasks.pop(deployment_id, None)
        if task is not None and not task.done():
            task.cancel()

        if isinstance(handle, LocalProcessHandle):
            await self.runner.kill(handle)
        elif isinstance(handle, RemoteServerHandle):
            try:
                await self.panel.delete_server(handle.server_id)
            except BotforgeError as e:
                logger.warning(
                    "remove_server_delete_failed",
                    deployment_id=deployment_id,
                    server_id=handle.server_id,
                    error=str(e),
                )

        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

        channel = self._channels.pop(deployment_id, None)
        if channel is not None:
            await channel.close()

        workdir = record.workdir or self._workdir(deployment_id)
        if workdir.exists():
            await asyncio.to_thread(shutil.rmtree, workdir, True)

        self._running_since.pop(deployment_id, None)
        self._usage.pop(deployment_id, None)
        self.registry.delete(deployment_id)
        logger.info("deployment_removed", deployment_id=deployment_id)
        return True

    async def reinstall(self, deployment_id: str) -> DeploymentRecord:
        """Ask the hosting panel to reinstall a panel-hosted server.

        Raises:
            NotFoundError: Unknown deployment.
            BotforgeError: The deployment is not a live panel-hosted server.
        """
        record = self.get(deployment_id)
        handle = record.remote
        if handle is None or record.status.is_terminal:
            raise BotforgeError("Reinstall is only available for active panel-hosted deployments")

        await self.panel.reinstall_server(handle.server_id)
        await self._channel(deployment_id).info("Reinstall requested on hosting panel.")
        return record

    # === Internals: bookkeeping ===

    def _channel(self, deployment_id: str) -> LogChannel:
        channel = self._channels.get(deployment_id)
        if channel is None:
            channel = LogChannel(self.registry, deployment_id)
            self._channels[deployment_id] = channel
        return channel

    def _workdir(self, deployment_id: str) -> Path:
        return Path(self.settings.workspace_dir) / deployment_id

    def _spawn_background(self, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _transition(
        self,
        deployment_id: str,
        target: DeploymentStatus,
        handle: RemoteServerHandle | None = None,
    ) -> bool:
        """Move a record to ``target`` once its pending log lines are visible.

        Illegal moves (anything out of a terminal state, or backwards) are
        dropped and reported as False. A ``handle`` is attached in the same
        step as the status change.
        """
        channel = self._channels.get(deployment_id)
        if channel is not None:
            await channel.join()

        record = self.registry.get(deployment_id)
        if record is None:
            return False
        if not record.status.can_transition_to(target):
            logger.debug(
                "transition_ignored",
                deployment_id=deployment_id,
                current=record.status.value,
                target=target.value,
            )
            return False

        if handle is not None:
            record.handle = handle
        if target.is_terminal:
            record.handle = None
            self._running_since.pop(deployment_id, None)
            self._usage.pop(deployment_id, None)
        elif target is DeploymentStatus.RUNNING:
            self._running_since[deployment_id] = utcnow()
        self.registry.set_status(deployment_id, target)
        return True

    async def _guarded(self, deployment_id: str, coro) -> None:
        """Run a deployment task, turning any failure into a failed record."""
        structlog.contextvars.bind_contextvars(deployment_id=deployment_id)
        channel = self._channel(deployment_id)
        try:
            await coro
        except asyncio.CancelledError:
            logger.info("deployment_task_cancelled")
            raise
        except BotforgeError as e:
            logger.warning("deployment_failed", error=str(e), error_type=type(e).__name__)
            await channel.error(str(e))
            await self._fail(deployment_id)
        except Exception as e:
            logger.exception("deployment_task_crashed", error=str(e))
            await channel.error(f"Unexpected error: {e}")
            await self._fail(deployment_id)
        finally:
            if self._tasks.get(deployment_id) is asyncio.current_task():
                del self._tasks[deployment_id]

    async def _fail(self, deployment_id: str) -> None:
        record = self.registry.get(deployment_id)
        if record is None:
            return
        handle = record.handle
        if not await self._transition(deployment_id, DeploymentStatus.FAILED):
            return
        if isinstance(handle, LocalProcessHandle):
            await self.runner.kill(handle)
        elif isinstance(handle, RemoteServerHandle):
            await self._delete_server(deployment_id, handle)

    async def _delete_server(self, deployment_id: str, handle: RemoteServerHandle) -> None:
        try:
            await self.panel.delete_server(handle.server_id)
        except BotforgeError as e:
            logger.warning(
                "server_delete_failed",
                deployment_id=deployment_id,
                server_id=handle.server_id,
                error=str(e),
            )
            channel = self._channels.get(deployment_id)
            if channel is not None:
                await channel.warn(f"Could not delete server {handle.identifier}: {e}")

    # === Internals: local backend ===

    async def _run_local(self, deployment_id: str, entry: CatalogEntry) -> None:
        s = self.settings
        record = self.get(deployment_id)
        channel = self._channel(deployment_id)
        workdir = self._workdir(deployment_id)
        record.workdir = workdir

        if not await self._transition(deployment_id, DeploymentStatus.DEPLOYING):
            return

        workdir.parent.mkdir(parents=True, exist_ok=True)
        await channel.info(f"Cloning repository: {entry.repository}")
        await self.runner.run_step(
            channel, "fetch", _substitute(s.fetch_command, entry.repository, workdir)
        )
        await channel.info("Repository cloned successfully.")

        await channel.info("Installing dependencies...")
        await self.runner.run_step(
            channel,
            "install",
            _substitute(s.install_command, entry.repository, workdir),
            cwd=workdir,
        )
        await channel.info("Dependencies installed.")

        port = random.randint(s.bot_port_min, s.bot_port_max)
        bot_env = await self._prepare_env(channel, record, workdir, port)

        await channel.info("Starting bot process...")
        handle = await self.runner.launch(
            channel,
            _substitute(s.start_command, entry.repository, workdir),
            cwd=workdir,
            env={**os.environ, **bot_env},
        )
        try:
            record.handle = handle
            self.registry.set_endpoint(deployment_id, f"http://{s.bot_public_host}:{port}", port)
            await channel.success(f"Bot process started (PID: {handle.pid})")
            await self._transition(deployment_id, DeploymentStatus.RUNNING)
            exit_code = await self.runner.wait(handle)
        except asyncio.CancelledError:
            await self.runner.kill(handle)
            raise

        await self._on_exit(deployment_id, handle, exit_code)

    async def _prepare_env(
        self, channel: LogChannel, record: DeploymentRecord, workdir: Path, port: int
    ) -> dict[str, str]:
        """Build the bot environment and write it to the .env file."""
        env = dict(record.config)
        env["NODE_ENV"] = "production"
        env["PORT"] = str(port)
        if self.settings.bot_database_url:
            env["DATABASE_URL"] = self.settings.bot_database_url
            await channel.info("Database: provisioned automatically.")
        else:
            await channel.warn("DATABASE_URL not configured on platform; bot may fail if it needs a database.")

        workdir.mkdir(parents=True, exist_ok=True)
        lines = [f"{key}={_quote_env_value(value)}" for key, value in env.items()]
        (workdir / ENV_FILE_NAME).write_text("\n".join(lines) + "\n")
        await channel.info(f"Environment ready ({len(env)} variables).")
        return env

    async def _on_exit(self, deployment_id: str, handle: LocalProcessHandle, exit_code: int) -> None:
        record = self.registry.get(deployment_id)
        if record is None or record.handle is not handle:
            # stop() or remove() already took over
            logger.debug("exit_after_stop", deployment_id=deployment_id, exit_code=exit_code)
            return

        channel = self._channel(deployment_id)
        if exit_code == 0:
            await channel.info("Process exited cleanly (code 0).")
            await self._transition(deployment_id, DeploymentStatus.STOPPED)
            return

        crash = _crash_for_exit_code(exit_code)
        logger.warning("bot_process_crashed", deployment_id=deployment_id, exit_code=exit_code)
        await channel.error(str(crash))
        await self._transition(deployment_id, DeploymentStatus.FAILED)

    # === Internals: remote backend ===

    async def _run_remote(self, deployment_id: str, entry: CatalogEntry) -> None:
        record = self.get(deployment_id)
        channel = self._channel(deployment_id)

        await channel.info("Creating server on hosting panel...")
        creating = asyncio.ensure_future(
            self.panel.create_server(
                name=record.display_name,
                repository=entry.repository,
                env_vars=record.config,
            )
        )
        try:
            handle = await asyncio.shield(creating)
        except asyncio.CancelledError:
            # The panel may still accept the create after we stop waiting
            self._spawn_background(
                self._discard_server(deployment_id, creating), f"discard_server_{deployment_id}"
            )
            raise

        try:
            await channel.info(f"Server created: {handle.identifier}")
            moved = await self._transition(deployment_id, DeploymentStatus.DEPLOYING, handle=handle)
        except asyncio.CancelledError:
            self._spawn_background(
                self._delete_server(deployment_id, handle), f"delete_server_{deployment_id}"
            )
            raise
        if not moved:
            await self._delete_server(deployment_id, handle)
            return
        self.registry.set_endpoint(deployment_id, handle.panel_url)
        await self._poll_remote(deployment_id, handle)

    async def _discard_server(self, deployment_id: str, creating: asyncio.Future) -> None:
        """Delete a server whose create call outlived its deployment task."""
        try:
            handle = await creating
        except BotforgeError as e:
            logger.info("abandoned_server_create_failed", deployment_id=deployment_id, error=str(e))
            return
        logger.info(
            "abandoned_server_deleted", deployment_id=deployment_id, server_id=handle.server_id
        )
        await self._delete_server(deployment_id, handle)

    def _resume_remote(self, record: DeploymentRecord, handle: RemoteServerHandle) -> None:
        async def resume() -> None:
            await self._channel(record.id).info(
                f"Service restarted. Resuming status checks for server {handle.identifier}."
            )
            if record.status is DeploymentStatus.QUEUED:
                await self._transition(record.id, DeploymentStatus.DEPLOYING)
            elif record.status is DeploymentStatus.RUNNING:
                self._running_since[record.id] = utcnow()
            await self._poll_remote(record.id, handle)

        self._tasks[record.id] = asyncio.create_task(
            self._guarded(record.id, resume()), name=f"deployment_{record.id}"
        )

    def _owns(self, deployment_id: str, handle: RemoteServerHandle) -> bool:
        record = self.registry.get(deployment_id)
        return record is not None and record.handle is handle and not record.status.is_terminal

    async def _poll_remote(self, deployment_id: str, handle: RemoteServerHandle) -> None:
        """Poll the panel at a fixed interval until the deployment is terminal."""
        s = self.settings
        channel = self._channel(deployment_id)
        failures = 0
        offline = 0
        first = True

        while self._owns(deployment_id, handle):
            if not first:
                await asyncio.sleep(s.panel_poll_interval_sec)
                if not self._owns(deployment_id, handle):
                    return
            first = False

            try:
                state = await self.panel.get_server_state(handle.server_id)
            except PanelError as e:
                if e.status_code == 404:  # noqa: PLR2004
                    await channel.error("Server no longer exists on the hosting panel.")
                    await self._transition(deployment_id, DeploymentStatus.FAILED)
                    return
                failures += 1
                logger.warning("panel_poll_failed", deployment_id=deployment_id, failures=failures, error=str(e))
            except BackendUnavailableError as e:
                failures += 1
                logger.warning("panel_poll_failed", deployment_id=deployment_id, failures=failures, error=str(e))
            else:
                failures = 0
                if await self._apply_server_state(deployment_id, handle, state, offline):
                    return
                offline = offline + 1 if state is RemoteServerState.OFFLINE else 0
                continue

            if failures >= s.panel_max_poll_failures:
                await channel.error(
                    f"Lost contact with hosting panel after {failures} attempts."
                )
                await self._fail(deployment_id)
                return

    async def _apply_server_state(
        self,
        deployment_id: str,
        handle: RemoteServerHandle,
        state: RemoteServerState,
        offline_before: int,
    ) -> bool:
        """Fold one observed server state into the record. True once terminal."""
        channel = self._channel(deployment_id)
        record = self.get(deployment_id)
        if state is not handle.last_state:
            handle.last_state = state
            self.registry.touch(deployment_id)
            await channel.info(f"Server state: {state.value}")

        match state:
            case RemoteServerState.INSTALLING:
                return False
            case RemoteServerState.RUNNING:
                if record.status is DeploymentStatus.DEPLOYING:
                    await channel.success(f"Bot is running on server {handle.identifier}.")
                    await self._transition(deployment_id, DeploymentStatus.RUNNING)
                return False
            case RemoteServerState.OFFLINE:
                if offline_before + 1 >= self.settings.panel_max_offline_polls:
                    await channel.error("Server went offline. Bot crashed.")
                    await self._fail(deployment_id)
                    return True
                return False
            case RemoteServerState.SUSPENDED:
                await channel.warn("Server was suspended by the hosting panel.")
                if await self._transition(deployment_id, DeploymentStatus.STOPPED):
                    await self._delete_server(deployment_id, handle)
                return True

    # === Internals: metrics ===

    async def _metrics_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.metrics_interval_sec)
            try:
                self.sample_metrics()
            except Exception as e:
                logger.error("metrics_sample_failed", error=str(e))

    def sample_metrics(self) -> None:
        """Store a fresh metrics snapshot on every running deployment."""
        now = utcnow()
        for record in self.registry.list():
            if record.status is not DeploymentStatus.RUNNING:
                continue
            previous = record.metrics or DeploymentMetrics()
            handle = record.handle
            if isinstance(handle, LocalProcessHandle):
                cpu, memory = self._process_usage(record.id, handle.pid)
                uptime = (now - handle.started_at).total_seconds()
            else:
                since = self._running_since.get(record.id)
                cpu, memory = previous.cpu, previous.memory
                uptime = (now - since).total_seconds() if since else previous.uptime
            self.registry.set_metrics(
                record.id,
                DeploymentMetrics(cpu=cpu, memory=memory, uptime=uptime, requests=previous.requests),
            )

    def _process_usage(self, deployment_id: str, pid: int) -> tuple[float, float]:
        """CPU percent and resident memory in MB; zeros if the process is gone."""
        proc = self._usage.get(deployment_id)
        try:
            if proc is None or proc.pid != pid:
                proc = psutil.Process(pid)
                self._usage[deployment_id] = proc
            cpu = proc.cpu_percent(interval=None)
            memory = proc.memory_info().rss / (1024 * 1024)
        except psutil.Error:
            self._usage.pop(deployment_id, None)
            return 0.0, 0.0
        return cpu, round(memory, 1)
