"""Settings via pydantic-settings with ATELIER_ env prefix.

Credentials, the workspace root and the WordPress connection use
validation_alias to read the same unprefixed env vars the editor
front-end deployment already sets, so a single .env drives both.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ATELIER_", env_file=".env", extra="ignore", populate_by_name=True
    )

    # Credentials and collaborators -- unprefixed aliases
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    workspace_root: str = Field(".", validation_alias="WORKSPACE_ROOT")
    wordpress_api_url: str = Field("", validation_alias="WORDPRESS_API_URL")
    wordpress_username: str = Field("", validation_alias="WORDPRESS_USERNAME")
    wordpress_app_password: str = Field("", validation_alias="WORDPRESS_APP_PASSWORD")

    # LLM
    model: str = "claude-sonnet-4-5"
    max_tokens: int = 4096
    max_rounds: int = 25  # Max tool rounds per agent turn

    # Direct API settings
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    wordpress_timeout: int = 30  # seconds

    # Conversation store
    database_path: str = "./data/conversations.db"
    conversation_retention_hours: int = 24
    cleanup_interval: int = 3600  # seconds between expiry sweeps

    # Streaming
    sse_keepalive_interval: float = 15.0
    stream_idle_timeout: float = 300.0
    ws_heartbeat_interval: float = 30.0

    # Runtime
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "info"
    cors_origins: str = "*"

    @field_validator("max_rounds")
    @classmethod
    def _validate_max_rounds(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_rounds must be >= 1")
        return v

    @property
    def db_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.database_path}"

    @property
    def wordpress_configured(self) -> bool:
        return bool(self.wordpress_api_url)

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
