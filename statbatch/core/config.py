from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, NonNegativeInt, PositiveFloat, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
SUPPORTED_LOG_FORMATS = {"json", "text"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="STATBATCH_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "StatBatch"
    environment: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"
    log_format: str = "json"

    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None

    poll_interval_seconds: PositiveFloat = 3.0
    poll_stop_timeout_seconds: PositiveFloat = 5.0
    poll_finished_views: NonNegativeInt = 100

    default_page_size: PositiveInt = 20
    max_page_size: PositiveInt = 200
    eligibility_limit: PositiveInt = 5000

    worker_base_url: str | None = None
    worker_access_token: str | None = None
    worker_timeout_seconds: PositiveFloat = 10.0

    stale_batch_seconds: PositiveInt = 1800
    health_auto_fix: bool = True

    failed_batch_blocks_recreate: bool = False
    auto_sync_completed: bool = False
    activity_log_size: PositiveInt = 100

    @field_validator("state_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path) -> Path:
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @field_validator("worker_base_url")
    @classmethod
    def _validate_worker_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        if not stripped:
            return None
        if not stripped.startswith(("http://", "https://")):
            raise ValueError("worker_base_url must be an http or https URL")
        return stripped.rstrip("/")

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        if self.database_url is None:
            self.state_root.mkdir(parents=True, exist_ok=True)

        normalized_level = self.log_level.upper().strip()
        if normalized_level not in SUPPORTED_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(SUPPORTED_LOG_LEVELS)}")
        self.log_level = normalized_level

        normalized_format = self.log_format.lower().strip()
        if normalized_format not in SUPPORTED_LOG_FORMATS:
            raise ValueError(f"log_format must be one of {sorted(SUPPORTED_LOG_FORMATS)}")
        self.log_format = normalized_format

        if self.max_page_size < self.default_page_size:
            raise ValueError("max_page_size must be greater than or equal to default_page_size")

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "statbatch.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
