"""Controller settings using Pydantic BaseSettings."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Controller configuration loaded from OMNI_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="OMNI_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: str = Field(default="dev")

    # Store
    database_url: str = Field(default="sqlite+aiosqlite:///./omni_controller.db")

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)
    log_file: str | None = Field(default=None)

    # Dispatcher
    workers: int = Field(default=4)
    retry_base_seconds: float = Field(default=0.5)
    retry_max_seconds: float = Field(default=300.0)

    # Convergence rules
    ephemeral_thread_ttl_hours: float = Field(default=12.0)
    finished_run_ttl_hours: float = Field(default=12.0)
    max_chain_depth: int = Field(default=32)

    # Collaborators
    workspace_root: str = Field(default="./.omni_workspaces")
    # "package.module:factory" returning an Invoker; empty disables run resumption
    invoker_factory: str = Field(default="")

    @field_validator("workers", "max_chain_depth")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @property
    def is_dev(self) -> bool:
        return self.env == "dev"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
