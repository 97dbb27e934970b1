"""Catalog of deployable bots.

Entries are read from a YAML file once at startup. The live config schema
of a bot can be refreshed from the ``app.json`` in its repository.

Example file:

    bots:
      - id: wolf-bot
        name: Wolf Bot
        repository: https://github.com/example/wolf-bot
        env:
          SESSION_ID: {description: "Session string", required: true}
"""

from pathlib import Path
import re
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError as PydanticValidationError
import yaml

from botforge.logging_config import get_logger
from botforge.models import CatalogEntry, EnvVarSpec

logger = get_logger(__name__)

GITHUB_REPO_RE = re.compile(r"github\.com/([^/]+/[^/]+?)(?:\.git)?(?:/.*)?$")
GITLAB_REPO_RE = re.compile(r"gitlab\.com/([^/]+(?:/[^/]+?)+?)(?:\.git)?/?$")
APP_JSON_BRANCHES = ("main", "master")


def app_json_urls(repository: str) -> list[str]:
    """Candidate raw URLs of app.json for a GitHub or GitLab repository."""
    github = GITHUB_REPO_RE.search(repository)
    if github:
        path = github.group(1)
        return [
            f"https://raw.githubusercontent.com/{path}/{branch}/app.json"
            for branch in APP_JSON_BRANCHES
        ]
    gitlab = GITLAB_REPO_RE.search(repository)
    if gitlab:
        encoded = quote(gitlab.group(1), safe="")
        return [
            f"https://gitlab.com/api/v4/projects/{encoded}/repository/files/app.json/raw?ref={branch}"
            for branch in APP_JSON_BRANCHES
        ]
    return []


class Catalog:
    """Read-only lookup table of catalog entries."""

    def __init__(self, entries: list[CatalogEntry] | None = None):
        self._entries: dict[str, CatalogEntry] = {}
        for entry in entries or []:
            self._entries[entry.id] = entry

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Catalog":
        """Load entries from a YAML file; a missing file yields an empty catalog."""
        path = Path(path)
        if not path.exists():
            logger.warning("catalog_file_missing", path=str(path))
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        raw_entries = data.get("bots", []) if isinstance(data, dict) else data
        entries = []
        for raw in raw_entries or []:
            try:
                entries.append(CatalogEntry.model_validate(raw))
            except PydanticValidationError as e:
                logger.warning(
                    "catalog_entry_invalid",
                    entry_id=raw.get("id") if isinstance(raw, dict) else None,
                    error=str(e),
                )
        logger.info("catalog_loaded", path=str(path), count=len(entries))
        return cls(entries)

    def list_entries(self) -> list[CatalogEntry]:
        """Active entries, most popular first."""
        active = [e for e in self._entries.values() if e.active]
        return sorted(active, key=lambda e: (-e.stars, e.name))

    def get_entry(self, entry_id: str) -> CatalogEntry | None:
        entry = self._entries.get(entry_id)
        if entry is None or not entry.active:
            return None
        return entry

    @staticmethod
    def public_view(entry: CatalogEntry) -> dict[str, Any]:
        """Entry without repository and config schema, for anonymous callers."""
        return entry.model_dump(exclude={"repository", "env"})

    async def fetch_live_config_schema(self, entry_id: str) -> dict[str, EnvVarSpec] | None:
        """Fetch the ``env`` section of the entry's app.json.

        Best-effort: returns None when the entry is unknown, the repository
        host is not supported, or no branch has a readable app.json.
        """
        entry = self.get_entry(entry_id)
        if entry is None:
            return None
        app_json = await self._fetch_app_json(entry.repository)
        if app_json is None:
            return None

        schema: dict[str, EnvVarSpec] = {}
        for name, raw in (app_json.get("env") or {}).items():
            try:
                schema[name] = EnvVarSpec.model_validate(raw if isinstance(raw, dict) else {})
            except PydanticValidationError:
                logger.debug("app_json_env_invalid", entry_id=entry_id, variable=name)
        return schema

    async def _fetch_app_json(self, repository: str) -> dict[str, Any] | None:
        urls = app_json_urls(repository)
        if not urls:
            logger.info("app_json_unsupported_host", repository=repository)
            return None

        async with httpx.AsyncClient(timeout=10.0) as client:
            for url in urls:
                try:
                    resp = await client.get(url)
                    if resp.is_success:
                        data = resp.json()
                        if isinstance(data, dict):
                            return data
                except (httpx.HTTPError, ValueError) as e:
                    logger.debug("app_json_fetch_failed", url=url, error=str(e))
        return None
