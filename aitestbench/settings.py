"""Harness configuration loaded from the environment."""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_RETENTION_DAYS = 30


class HarnessSettings(BaseSettings):
    """Settings read from ``AITESTBENCH_*`` environment variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="AITESTBENCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    dry_run: bool = Field(
        default=False,
        description="Resolve runs without contacting any inference server",
    )
    retention_days: int = Field(
        default=DEFAULT_RETENTION_DAYS,
        description="Days a run and its result documents are kept",
    )
    request_timeout_sec: float = Field(
        default=30.0,
        gt=0,
        description="Exchange timeout when effective settings carry none",
    )
    proxy_perplexity_dataset: Path | None = Field(
        default=None,
        description="JSON dataset used by tests with the proxy_perplexity protocol",
    )
    result_schema_path: Path | None = Field(
        default=None,
        description="Result document schema (the bundled schema when unset)",
    )

    @field_validator("retention_days", mode="before")
    @classmethod
    def _fallback_retention(cls, value: object) -> object:
        try:
            days = int(str(value))
        except ValueError:
            return DEFAULT_RETENTION_DAYS
        return days if days > 0 else DEFAULT_RETENTION_DAYS
