"""Configuration with pydantic-settings.

All fields are optional with sensible defaults; the hosting panel is only
used when both PANEL_URL and PANEL_API_KEY are set.

Usage:
    from botforge.config import get_settings

    settings = get_settings()
"""

from functools import lru_cache
from pathlib import Path
import tempfile
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Orchestrator settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === Logging ===
    service_name: str = Field(
        default="botforge",
        description="Service name for structured logging",
    )
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="Log output format",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )

    # === Registry ===
    log_cap: int = Field(
        default=500,
        ge=1,
        description="Max log entries kept per deployment (oldest evicted first)",
    )
    database_url: str | None = Field(
        default=None,
        description="Persist deployment records here (optional)",
        examples=["postgresql+asyncpg://user:pass@db:5432/botforge"],
    )

    # === Backend selection ===
    backend: Literal["local", "remote", "auto"] = Field(
        default="auto",
        description="auto = remote when the hosting panel is configured, else local",
    )

    # === Local process pipeline ===
    workspace_dir: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "botforge-deployments",
        description="Parent directory of per-deployment working directories",
    )
    fetch_command: list[str] = Field(
        default=["git", "clone", "--depth=1", "{repository}", "{workdir}"],
        description="Fetch source; {repository} and {workdir} are substituted",
    )
    install_command: list[str] = Field(
        default=["npm", "install", "--legacy-peer-deps", "--no-audit", "--prefer-offline"],
        description="Install dependencies, run inside the working directory",
    )
    start_command: list[str] = Field(
        default=["node", "index.js"],
        description="Launch the long-lived bot process inside the working directory",
    )
    stop_timeout_sec: float = Field(
        default=5.0,
        gt=0,
        description="Grace period between SIGTERM and SIGKILL",
    )
    bot_port_min: int = Field(default=10000, ge=1024, le=65535)
    bot_port_max: int = Field(default=60000, ge=1024, le=65535)
    bot_database_url: str | None = Field(
        default=None,
        description="Injected into bots as DATABASE_URL (optional)",
    )
    bot_public_host: str = Field(
        default="localhost",
        description="Host used to build the url of locally running bots",
    )
    metrics_interval_sec: float = Field(
        default=15.0,
        gt=0,
        description="How often running deployments get a metrics snapshot",
    )

    # === Hosting panel (remote backend) ===
    panel_url: str | None = Field(default=None, description="Hosting panel base URL")
    panel_api_key: str | None = Field(default=None, description="Application API key")
    panel_owner_id: int = 1
    panel_egg_id: int = 15
    panel_location_id: int = 1
    panel_ram_mb: int = 512
    panel_disk_mb: int = 2048
    panel_cpu_pct: int = 100
    panel_docker_image: str = "ghcr.io/pterodactyl/yolks:nodejs_18"
    panel_startup: str = "npm install --legacy-peer-deps && node index.js"
    panel_branch: str = "main"
    panel_main_file: str = "index.js"
    panel_timeout_sec: float = Field(default=30.0, gt=0)
    panel_poll_interval_sec: float = Field(default=10.0, gt=0)
    panel_max_poll_failures: int = Field(
        default=5,
        ge=1,
        description="Consecutive failed status polls before a deployment is marked failed",
    )
    panel_max_offline_polls: int = Field(
        default=3,
        ge=1,
        description="Consecutive 'offline' polls of a running server before it is marked failed",
    )

    # === Catalog ===
    catalog_path: Path = Field(
        default=Path("catalog.yaml"),
        description="YAML file with the deployable bot catalog",
    )

    # === HTTP API ===
    api_host: str = "0.0.0.0"  # noqa: S104
    api_port: int = 8000

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v

    @property
    def panel_configured(self) -> bool:
        return bool(self.panel_url and self.panel_api_key)

    @property
    def use_remote_backend(self) -> bool:
        """Resolve the backend setting to a concrete choice."""
        if self.backend == "remote":
            return True
        if self.backend == "local":
            return False
        return self.panel_configured


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
