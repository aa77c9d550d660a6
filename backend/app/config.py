from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AliasChoices, AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Portal Chat API", description="Human readable service name")
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=False, description="Enable debug mode")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://127.0.0.1",
        ],
        description="List of allowed CORS origins",
    )

    database_user: str = Field(default="portal", validation_alias=AliasChoices("DB_USER", "database_user"))
    database_password: str = Field(
        default="portal", validation_alias=AliasChoices("DB_PASSWORD", "database_password")
    )
    database_host: str = Field(default="db", validation_alias=AliasChoices("DB_HOST", "database_host"))
    database_port: int = Field(default=3306, validation_alias=AliasChoices("DB_PORT", "database_port"))
    database_name: str = Field(default="portal_chat", validation_alias=AliasChoices("DB_NAME", "database_name"))
    database_dsn: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL", "database_dsn"),
        description="Full SQLAlchemy URL overriding the DB_* parts",
    )

    jwt_secret_key: str = Field(default="changeme")
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=30)

    chat_history_default_limit: int = Field(default=50)
    chat_history_max_limit: int = Field(default=100)
    chat_message_max_length: int = Field(default=4000)
    chat_forward_max_depth: int = Field(
        default=5, ge=1, description="Maximum length of a forward chain before forwarding is refused"
    )
    chat_group_window_seconds: int = Field(
        default=300, ge=0, description="Gap that splits consecutive messages into separate visual groups"
    )
    chat_typing_ttl_seconds: float = Field(
        default=3.0, gt=0, description="Inactivity window after which a typing indicator expires"
    )
    chat_delivery_ack_timeout_seconds: float = Field(
        default=1.0, gt=0, description="Grace period before a sent message is flagged as delivery pending"
    )
    announcement_creator_roles: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["admin", "manager"],
        description="Organisation roles allowed to publish global announcements",
    )

    database_auto_create: bool = Field(default=False, description="Create missing tables on startup")

    websocket_keepalive_timeout_seconds: float = Field(default=30)
    websocket_keepalive_ping_interval_seconds: float = Field(default=20)

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def database_url(self) -> str:
        if self.database_dsn:
            return self.database_dsn
        return (
            f"mysql+pymysql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @field_validator("cors_origins", "announcement_creator_roles", mode="before")
    @classmethod
    def split_comma_separated(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
