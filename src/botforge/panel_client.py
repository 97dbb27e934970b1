"""Client for the hosting panel's application API.

Creates, inspects, reinstalls and force-deletes container-backed servers.
Requests are JSON with a bearer token; non-2xx answers become PanelError
carrying a snippet of the response body, transport failures become
BackendUnavailableError.
"""

from typing import Any

import httpx

from botforge.config import Settings, get_settings
from botforge.errors import BackendUnavailableError, PanelError
from botforge.logging_config import get_logger
from botforge.models import RemoteServerHandle, RemoteServerState

logger = get_logger(__name__)

# Panel limit on server names
MAX_SERVER_NAME = 48


def map_server_state(attributes: dict[str, Any]) -> RemoteServerState:
    """Map panel server attributes onto our four-state vocabulary.

    A null status means the server is installed and not busy.
    """
    if attributes.get("suspended"):
        return RemoteServerState.SUSPENDED
    status = attributes.get("status")
    if not status or status == "running":
        return RemoteServerState.RUNNING
    if status in ("installing", "restoring_backup"):
        return RemoteServerState.INSTALLING
    return RemoteServerState.OFFLINE


class PanelClient:
    """Client for the hosting panel application API."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.base_url = (self.settings.panel_url or "").rstrip("/")
        self.api_key = self.settings.panel_api_key or ""

        if not self.configured:
            logger.debug(
                "panel_credentials_missing",
                url_set=bool(self.base_url),
                key_set=bool(self.api_key),
            )

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    def _headers(self) -> dict[str, str]:
        if not self.configured:
            raise BackendUnavailableError("Hosting panel is not configured (PANEL_URL / PANEL_API_KEY)")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        allow_statuses: tuple[int, ...] = (),
    ) -> httpx.Response:
        headers = self._headers()
        try:
            async with httpx.AsyncClient(timeout=self.settings.panel_timeout_sec) as client:
                resp = await client.request(
                    method, f"{self.base_url}{path}", headers=headers, json=json
                )
        except httpx.TransportError as e:
            logger.warning("panel_unreachable", operation=operation, error=str(e))
            raise BackendUnavailableError(f"Hosting panel unreachable during {operation}: {e}") from e

        if resp.is_success or resp.status_code in allow_statuses:
            return resp
        logger.warning(
            "panel_request_failed",
            operation=operation,
            status_code=resp.status_code,
        )
        raise PanelError(operation, resp.status_code, resp.text)

    async def create_server(
        self, name: str, repository: str, env_vars: dict[str, str]
    ) -> RemoteServerHandle:
        """Create a server that clones ``repository`` and runs the bot.

        User config goes in as egg environment variables and overrides the
        egg defaults.
        """
        s = self.settings
        environment = {
            "GIT_ADDRESS": repository,
            "BRANCH": s.panel_branch,
            "USER_UPLOAD": "0",
            "AUTO_UPDATE": "0",
            "MAIN_FILE": s.panel_main_file,
            "NODE_PACKAGES": "",
            "UNNODE_PACKAGES": "",
            "NODE_ARGS": "",
            "USERNAME": "",
            "ACCESS_TOKEN": "",
            **env_vars,
        }
        body = {
            "name": name[:MAX_SERVER_NAME],
            "user": s.panel_owner_id,
            "egg": s.panel_egg_id,
            "docker_image": s.panel_docker_image,
            "startup": s.panel_startup,
            "environment": environment,
            "limits": {
                "memory": s.panel_ram_mb,
                "swap": 0,
                "disk": s.panel_disk_mb,
                "io": 500,
                "cpu": s.panel_cpu_pct,
            },
            "feature_limits": {"databases": 0, "allocations": 1, "backups": 0},
            "deploy": {
                "locations": [s.panel_location_id],
                "dedicated_ip": False,
                "port_range": [],
            },
        }

        resp = await self._request("create server", "POST", "/api/application/servers", json=body)
        attr = resp.json()["attributes"]
        handle = RemoteServerHandle(
            server_id=attr["id"],
            uuid=attr["uuid"],
            identifier=attr["identifier"],
            panel_url=f"{self.base_url}/server/{attr['identifier']}",
        )
        logger.info(
            "panel_server_created",
            server_id=handle.server_id,
            identifier=handle.identifier,
        )
        return handle

    async def get_server_state(self, server_id: int) -> RemoteServerState:
        """Fetch the server and map its status."""
        resp = await self._request("get server", "GET", f"/api/application/servers/{server_id}")
        return map_server_state(resp.json()["attributes"])

    async def delete_server(self, server_id: int) -> None:
        """Force-delete a server. A server that is already gone counts as deleted."""
        resp = await self._request(
            "delete server",
            "DELETE",
            f"/api/application/servers/{server_id}/force",
            allow_statuses=(404,),
        )
        logger.info(
            "panel_server_deleted",
            server_id=server_id,
            already_gone=resp.status_code == 404,  # noqa: PLR2004
        )

    async def reinstall_server(self, server_id: int) -> None:
        await self._request(
            "reinstall server", "POST", f"/api/application/servers/{server_id}/reinstall"
        )
        logger.info("panel_server_reinstall_triggered", server_id=server_id)
