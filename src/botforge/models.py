"""Domain models for catalog entries and deployment records."""

from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Union

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from botforge.process_runner import LocalProcessHandle


def utcnow() -> datetime:
    return datetime.now(UTC)


class DeploymentStatus(str, Enum):
    """Deployment lifecycle.

    queued -> deploying -> running -> stopped | failed.
    stopped and failed are terminal; a new deploy creates a new record.
    """

    QUEUED = "queued"
    DEPLOYING = "deploying"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentStatus.STOPPED, DeploymentStatus.FAILED)

    def can_transition_to(self, target: "DeploymentStatus") -> bool:
        return target in ALLOWED_TRANSITIONS[self]


ALLOWED_TRANSITIONS: dict[DeploymentStatus, frozenset[DeploymentStatus]] = {
    # queued -> failed covers a remote create call that fails before deploying
    DeploymentStatus.QUEUED: frozenset(
        {DeploymentStatus.DEPLOYING, DeploymentStatus.STOPPED, DeploymentStatus.FAILED}
    ),
    DeploymentStatus.DEPLOYING: frozenset(
        {DeploymentStatus.RUNNING, DeploymentStatus.STOPPED, DeploymentStatus.FAILED}
    ),
    DeploymentStatus.RUNNING: frozenset({DeploymentStatus.STOPPED, DeploymentStatus.FAILED}),
    DeploymentStatus.STOPPED: frozenset(),
    DeploymentStatus.FAILED: frozenset(),
}


class DeploymentBackend(str, Enum):
    """Where a deployment runs; fixed when the record is created."""

    LOCAL = "local"
    REMOTE = "remote"


class LogLevel(str, Enum):
    """Severity of a deployment log entry."""

    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SUCCESS = "success"


@dataclass(frozen=True)
class LogEntry:
    """One line of the user-visible deployment log."""

    timestamp: datetime
    level: LogLevel
    message: str


@dataclass
class DeploymentMetrics:
    """Best-effort resource snapshot."""

    cpu: float = 0.0
    memory: float = 0.0  # MB
    uptime: float = 0.0  # seconds
    requests: int = 0


class EnvVarSpec(BaseModel):
    """Schema of one configuration variable a catalog bot needs."""

    description: str = ""
    required: bool = False
    placeholder: str | None = None
    value: str | None = Field(
        default=None,
        description="Default fetched from the bot's app.json, if any",
    )


class CatalogEntry(BaseModel):
    """A deployable bot template."""

    id: str
    name: str
    description: str = ""
    repository: str
    logo: str | None = None
    keywords: list[str] = Field(default_factory=list)
    category: str = "WhatsApp Bot"
    stars: int = 0
    env: dict[str, EnvVarSpec] = Field(default_factory=dict)
    active: bool = True

    def missing_required(self, config: dict[str, str]) -> list[str]:
        """Names of required variables without a non-empty value in config."""
        return [
            name
            for name, spec in self.env.items()
            if spec.required and not (config.get(name) or "").strip()
        ]


class RemoteServerState(str, Enum):
    """Server state as reported by the hosting panel."""

    INSTALLING = "installing"
    RUNNING = "running"
    OFFLINE = "offline"
    SUSPENDED = "suspended"


@dataclass
class RemoteServerHandle:
    """Identifies a panel-hosted server owned by a deployment."""

    server_id: int
    uuid: str
    identifier: str
    panel_url: str
    last_state: RemoteServerState | None = None


BackendHandle = Union["LocalProcessHandle", RemoteServerHandle]


@dataclass
class DeploymentRecord:
    """The mutable state of one deployment.

    Only the registry mutates status, logs and metrics; the orchestrator
    owns ``handle`` and ``workdir``.
    """

    id: str
    catalog_id: str
    display_name: str
    config: dict[str, str]
    log_cap: int
    user_id: str | None = None
    backend: DeploymentBackend = DeploymentBackend.LOCAL
    status: DeploymentStatus = DeploymentStatus.QUEUED
    logs: deque[LogEntry] = field(default_factory=deque)
    metrics: DeploymentMetrics | None = field(default_factory=DeploymentMetrics)
    url: str | None = None
    port: int | None = None
    handle: BackendHandle | None = None
    workdir: Path | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not isinstance(self.logs, deque) or self.logs.maxlen != self.log_cap:
            self.logs = deque(self.logs, maxlen=self.log_cap)

    def touch(self) -> None:
        """Refresh updated_at, never moving it backwards."""
        now = utcnow()
        if now > self.updated_at:
            self.updated_at = now

    @property
    def remote(self) -> RemoteServerHandle | None:
        return self.handle if isinstance(self.handle, RemoteServerHandle) else None
