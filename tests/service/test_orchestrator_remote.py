"""Orchestrator tests against the hosting panel backend (panel mocked with respx)."""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
import respx

from botforge.api.schemas import DeploymentRead
from botforge.errors import BackendUnavailableError, BotforgeError
from botforge.models import DeploymentBackend, DeploymentStatus, LogLevel, RemoteServerHandle
from botforge.orchestrator import Orchestrator
from botforge.registry import DeploymentRegistry

SERVER = {"id": 42, "uuid": "uuid-42", "identifier": "abcd1234", "suspended": False}


def server_states(*statuses):
    """Panel GET handler answering with each status in turn, repeating the last one."""
    remaining = list(statuses)

    def handler(request):
        status = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if status == "suspended":
            attributes = {**SERVER, "suspended": True, "status": None}
        else:
            attributes = {**SERVER, "status": status}
        return httpx.Response(200, json={"attributes": attributes})

    return handler


@pytest.fixture
def panel():
    with respx.mock(base_url="https://panel.test", assert_all_called=False) as respx_mock:
        respx_mock.post("/api/application/servers", name="create_server").mock(
            return_value=httpx.Response(201, json={"attributes": {**SERVER, "status": "installing"}})
        )
        respx_mock.delete("/api/application/servers/42/force", name="delete_server").mock(
            return_value=httpx.Response(204)
        )
        yield respx_mock


@pytest_asyncio.fixture
async def orchestrator(catalog, remote_settings):
    orch = Orchestrator(catalog=catalog, settings=remote_settings)
    yield orch
    await orch.shutdown()


async def _eventually(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not met in time"
        await asyncio.sleep(0.01)


class TestRemoteDeploy:
    @pytest.mark.asyncio
    async def test_installing_then_running(self, orchestrator, panel, wolf_config, wait_for_status):
        panel.get("/api/application/servers/42").mock(
            side_effect=server_states("installing", "installing", "running")
        )

        record = await orchestrator.deploy("wolf-bot", wolf_config, alias="My Wolf")
        assert record.status is DeploymentStatus.QUEUED

        await wait_for_status(record, DeploymentStatus.RUNNING)

        assert isinstance(record.handle, RemoteServerHandle)
        assert record.url == "https://panel.test/server/abcd1234"
        assert any(e.level is LogLevel.SUCCESS for e in record.logs)

    @pytest.mark.asyncio
    async def test_not_configured_fails_synchronously(self, catalog, remote_settings, wolf_config):
        settings = remote_settings.model_copy(update={"panel_url": None, "panel_api_key": None})
        orch = Orchestrator(catalog=catalog, settings=settings)

        with pytest.raises(BackendUnavailableError):
            await orch.deploy("wolf-bot", wolf_config)

        assert orch.list() == []

    @pytest.mark.asyncio
    async def test_create_error_fails_record(self, orchestrator, panel, wolf_config, wait_for_status):
        panel.routes["create_server"].mock(
            return_value=httpx.Response(422, text='{"errors":[{"detail":"egg not found"}]}')
        )

        record = await orchestrator.deploy("wolf-bot", wolf_config)
        await wait_for_status(record, DeploymentStatus.FAILED)

        errors = [e.message for e in record.logs if e.level is LogLevel.ERROR]
        assert any("422" in m and "egg not found" in m for m in errors)

    @pytest.mark.asyncio
    async def test_sustained_poll_failures_fail_record(
        self, orchestrator, panel, wolf_config, wait_for_status
    ):
        get_route = panel.get("/api/application/servers/42").mock(
            side_effect=httpx.ConnectError("panel down")
        )

        record = await orchestrator.deploy("wolf-bot", wolf_config)
        await wait_for_status(record, DeploymentStatus.FAILED)

        assert get_route.call_count == 3
        assert record.logs[-1].level is LogLevel.ERROR
        await _eventually(lambda: panel.routes["delete_server"].called)

    @pytest.mark.asyncio
    async def test_transient_poll_failure_does_not_flip_status(
        self, orchestrator, panel, wolf_config, wait_for_status
    ):
        responses = iter(
            [httpx.ConnectError("blip"), httpx.ConnectError("blip")]
        )

        def flaky(request):
            error = next(responses, None)
            if error is not None:
                raise error
            return httpx.Response(200, json={"attributes": {**SERVER, "status": "running"}})

        panel.get("/api/application/servers/42").mock(side_effect=flaky)

        record = await orchestrator.deploy("wolf-bot", wolf_config)
        await wait_for_status(record, DeploymentStatus.RUNNING)

    @pytest.mark.asyncio
    async def test_offline_while_running_fails(self, orchestrator, panel, wolf_config, wait_for_status):
        panel.get("/api/application/servers/42").mock(
            side_effect=server_states("running", "offline", "offline")
        )

        record = await orchestrator.deploy("wolf-bot", wolf_config)
        await wait_for_status(record, DeploymentStatus.FAILED)

        assert "Server went offline. Bot crashed." in [e.message for e in record.logs]

    @pytest.mark.asyncio
    async def test_suspended_is_stopped(self, orchestrator, panel, wolf_config, wait_for_status):
        panel.get("/api/application/servers/42").mock(side_effect=server_states("running", "suspended"))

        record = await orchestrator.deploy("wolf-bot", wolf_config)
        await wait_for_status(record, DeploymentStatus.STOPPED, DeploymentStatus.FAILED)

        assert record.status is DeploymentStatus.STOPPED
        warnings = [e.message for e in record.logs if e.level is LogLevel.WARN]
        assert "Server was suspended by the hosting panel." in warnings

    @pytest.mark.asyncio
    async def test_server_gone_fails(self, orchestrator, panel, wolf_config, wait_for_status):
        panel.get("/api/application/servers/42").mock(return_value=httpx.Response(404))

        record = await orchestrator.deploy("wolf-bot", wolf_config)
        await wait_for_status(record, DeploymentStatus.FAILED)


class TestRemoteStopRemove:
    @pytest.mark.asyncio
    async def test_stop_deletes_server(self, orchestrator, panel, wolf_config, wait_for_status):
        panel.get("/api/application/servers/42").mock(side_effect=server_states("running"))
        delete_route = panel.routes["delete_server"]

        record = await orchestrator.deploy("wolf-bot", wolf_config)
        await wait_for_status(record, DeploymentStatus.RUNNING)

        await orchestrator.stop(record.id)

        assert record.status is DeploymentStatus.STOPPED
        assert record.handle is None
        await _eventually(lambda: delete_route.called)

    @pytest.mark.asyncio
    async def test_remove_tolerates_missing_server(self, orchestrator, panel, wolf_config, wait_for_status):
        panel.get("/api/application/servers/42").mock(side_effect=server_states("running"))
        panel.routes["delete_server"].mock(return_value=httpx.Response(404))

        record = await orchestrator.deploy("wolf-bot", wolf_config)
        await wait_for_status(record, DeploymentStatus.RUNNING)

        assert await orchestrator.remove(record.id) is True
        assert orchestrator.list() == []


class TestReinstall:
    @pytest.mark.asyncio
    async def test_reinstall_remote(self, orchestrator, panel, wolf_config, wait_for_status):
        panel.get("/api/application/servers/42").mock(side_effect=server_states("running"))
        route = panel.post("/api/application/servers/42/reinstall").mock(
            return_value=httpx.Response(204)
        )

        record = await orchestrator.deploy("wolf-bot", wolf_config)
        await wait_for_status(record, DeploymentStatus.RUNNING)

        await orchestrator.reinstall(record.id)
        await asyncio.sleep(0.05)

        assert route.called
        assert "Reinstall requested on hosting panel." in [e.message for e in record.logs]
        assert record.status is DeploymentStatus.RUNNING

    @pytest.mark.asyncio
    async def test_reinstall_local_rejected(self, catalog, settings):
        registry = DeploymentRegistry()
        record = registry.create("wolf-bot", "Wolf Bot", {})
        orch = Orchestrator(catalog=catalog, settings=settings, registry=registry)

        with pytest.raises(BotforgeError):
            await orch.reinstall(record.id)


@pytest.mark.asyncio
async def test_restored_remote_record_resumes_polling(catalog, remote_settings, panel, wait_for_status):
    panel.get("/api/application/servers/42").mock(side_effect=server_states("running"))

    persisted = DeploymentRegistry().create("wolf-bot", "Wolf Bot", {"SESSION_ID": "x"})
    persisted.status = DeploymentStatus.DEPLOYING
    persisted.handle = RemoteServerHandle(
        server_id=42, uuid="uuid-42", identifier="abcd1234", panel_url="https://panel.test/server/abcd1234"
    )
    store = AsyncMock()
    store.load_all.return_value = [persisted]
    orch = Orchestrator(
        catalog=catalog, settings=remote_settings, registry=DeploymentRegistry(store=store)
    )
    try:
        await orch.start()
        await wait_for_status(orch.get(persisted.id), DeploymentStatus.RUNNING)
    finally:
        await orch.shutdown()


def slow_create(started: asyncio.Event, delay: float = 0.2):
    """Panel create handler that accepts the server only after ``delay``."""

    async def handler(request):
        started.set()
        await asyncio.sleep(delay)
        return httpx.Response(201, json={"attributes": {**SERVER, "status": "installing"}})

    return handler


class TestStopDuringCreate:
    @pytest.mark.asyncio
    async def test_stop_while_creating_deletes_server(self, orchestrator, panel, wolf_config):
        started = asyncio.Event()
        panel.routes["create_server"].mock(side_effect=slow_create(started))
        get_route = panel.get("/api/application/servers/42").mock(
            side_effect=server_states("running")
        )

        record = await orchestrator.deploy("wolf-bot", wolf_config)
        await started.wait()
        await orchestrator.stop(record.id)

        assert record.status is DeploymentStatus.STOPPED
        await _eventually(lambda: panel.routes["delete_server"].called)
        assert record.handle is None
        assert not get_route.called

    @pytest.mark.asyncio
    async def test_remove_while_creating_deletes_server(self, orchestrator, panel, wolf_config):
        started = asyncio.Event()
        panel.routes["create_server"].mock(side_effect=slow_create(started))

        record = await orchestrator.deploy("wolf-bot", wolf_config)
        await started.wait()

        assert await orchestrator.remove(record.id) is True
        await _eventually(lambda: panel.routes["delete_server"].called)
        assert orchestrator.list() == []

    @pytest.mark.asyncio
    async def test_queued_record_never_holds_handle(self, orchestrator, panel, wolf_config, wait_for_status):
        panel.get("/api/application/servers/42").mock(side_effect=server_states("running"))
        seen = []

        record = await orchestrator.deploy("wolf-bot", wolf_config)

        async def sample():
            while not record.status.is_terminal:
                seen.append((record.status, record.handle is not None))
                await asyncio.sleep(0)

        sampler = asyncio.create_task(sample())
        await wait_for_status(record, DeploymentStatus.RUNNING)
        await orchestrator.stop(record.id)
        await sampler

        assert (DeploymentStatus.QUEUED, True) not in seen
        assert (DeploymentStatus.DEPLOYING, True) in seen or (DeploymentStatus.RUNNING, True) in seen


class TestBackendIsRecorded:
    @pytest.mark.asyncio
    async def test_stopped_remote_deployment_keeps_backend(
        self, orchestrator, panel, wolf_config, wait_for_status
    ):
        panel.get("/api/application/servers/42").mock(side_effect=server_states("running"))

        record = await orchestrator.deploy("wolf-bot", wolf_config)
        await wait_for_status(record, DeploymentStatus.RUNNING)
        await orchestrator.stop(record.id)

        assert record.handle is None
        assert record.backend is DeploymentBackend.REMOTE
        assert DeploymentRead.from_record(record).backend == "remote"


@pytest.mark.asyncio
async def test_restored_remote_record_without_server_fails(catalog, remote_settings, panel):
    persisted = DeploymentRegistry().create(
        "wolf-bot", "Wolf Bot", {"SESSION_ID": "x"}, backend=DeploymentBackend.REMOTE
    )
    store = AsyncMock()
    store.load_all.return_value = [persisted]
    orch = Orchestrator(
        catalog=catalog, settings=remote_settings, registry=DeploymentRegistry(store=store)
    )
    try:
        await orch.start()
        record = orch.get(persisted.id)
        assert record.status is DeploymentStatus.FAILED
        assert record.logs[-1].level is LogLevel.ERROR
        assert not panel.routes["create_server"].called
    finally:
        await orch.shutdown()
