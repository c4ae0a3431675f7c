from functools import lru_cache
from urllib.parse import quote_plus

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    app_name: str = "Dispatch Desk"
    database_url: str = Field(
        default="sqlite+aiosqlite:///./dispatchdesk.db",
        description="SQLAlchemy database URL",
    )
    postgres_host: str | None = Field(
        default=None,
        description="PostgreSQL host",
        validation_alias=AliasChoices("DISPATCH_DESK_POSTGRES_HOST"),
    )
    postgres_port: int = Field(
        default=5432,
        description="PostgreSQL port",
        validation_alias=AliasChoices("DISPATCH_DESK_POSTGRES_PORT"),
    )
    postgres_username: str | None = Field(
        default=None,
        description="PostgreSQL username",
        validation_alias=AliasChoices("DISPATCH_DESK_POSTGRES_USER"),
    )
    postgres_password: str | None = Field(
        default=None,
        description="PostgreSQL password",
        validation_alias=AliasChoices("DISPATCH_DESK_POSTGRES_PASSWORD"),
    )
    postgres_database: str | None = Field(
        default=None,
        description="PostgreSQL database name",
        validation_alias=AliasChoices("DISPATCH_DESK_POSTGRES_DATABASE"),
    )
    notification_dedup_window_minutes: int = Field(
        default=5,
        ge=0,
        description="Window used to suppress repeated notifications without an audit reference",
        validation_alias=AliasChoices("DISPATCH_DESK_NOTIFICATION_DEDUP_WINDOW_MINUTES"),
    )
    superadmin_role_level: int = Field(
        default=3,
        description="Role level whose active employees watch every new ticket",
        validation_alias=AliasChoices("DISPATCH_DESK_SUPERADMIN_ROLE_LEVEL"),
    )
    approver_role_level: int = Field(
        default=1,
        description="Minimum role level allowed to approve appointments without losing approval on edit",
        validation_alias=AliasChoices("DISPATCH_DESK_APPROVER_ROLE_LEVEL"),
    )
    event_history_limit: int = Field(
        default=1000,
        ge=0,
        description="Number of recent domain events kept in memory for inspection",
        validation_alias=AliasChoices("DISPATCH_DESK_EVENT_HISTORY_LIMIT"),
    )
    default_work_giver_name: str = Field(
        default="PDE",
        description="Operator name shown when a ticket has no work giver",
        validation_alias=AliasChoices("DISPATCH_DESK_DEFAULT_WORK_GIVER"),
    )
    summary_enabled: bool = Field(
        default=True,
        description="Request AI summaries from Ollama when a ticket asks for one",
        validation_alias=AliasChoices("DISPATCH_DESK_SUMMARY_ENABLED"),
    )
    summary_max_length: int = Field(
        default=150,
        ge=20,
        description="Texts at or below this length are stored without summarising",
        validation_alias=AliasChoices("DISPATCH_DESK_SUMMARY_MAX_LENGTH"),
    )
    ollama_base_url: str | None = Field(
        default=None,
        description="Ollama base URL override",
        validation_alias=AliasChoices("DISPATCH_DESK_OLLAMA_BASE_URL"),
    )
    ollama_model: str | None = Field(
        default=None,
        description="Ollama model override",
        validation_alias=AliasChoices("DISPATCH_DESK_OLLAMA_MODEL"),
    )
    location_eager_load: bool = Field(
        default=False,
        description="Populate the district caches at startup instead of on first use",
        validation_alias=AliasChoices("DISPATCH_DESK_LOCATION_EAGER_LOAD"),
    )

    @property
    def resolved_database_url(self) -> str:
        if all(
            [
                self.postgres_host,
                self.postgres_username,
                self.postgres_password,
                self.postgres_database,
            ]
        ):
            user = quote_plus(self.postgres_username)
            password = quote_plus(self.postgres_password)
            return (
                f"postgresql+asyncpg://{user}:{password}@{self.postgres_host}:"
                f"{self.postgres_port}/{self.postgres_database}"
            )
        return self.database_url


@lru_cache()
def get_settings() -> Settings:
    return Settings()
