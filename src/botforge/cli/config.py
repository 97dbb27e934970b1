from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Config(BaseSettings):
    """Botforge CLI Configuration."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    api_url: str = Field(
        default="http://localhost:8000",
        alias="BOTFORGE_API_URL",
        description="URL of the Botforge API",
    )

    user_id: str | None = Field(
        default=None,
        alias="BOTFORGE_USER_ID",
        description="Sent as X-User-ID; unset means anonymous mode",
    )
