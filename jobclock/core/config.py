from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveInt, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_JOB_STATUSES = {"active", "paused", "done"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="JOBCLOCK_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "JobClock"
    environment: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    drafts_root: Path = Field(default=Path("/state/drafts"))
    database_url: str | None = None

    identity_header: str = "X-User-Id"
    identity_email_header: str = "X-User-Email"
    identity_name_header: str = "X-User-Name"
    identity_webhook_secret: SecretStr | None = None
    identity_webhook_tolerance_seconds: PositiveInt = 300
    auto_provision_users: bool = True

    default_job_status: str = "active"
    record_time_entries: bool = True
    transition_max_attempts: PositiveInt = 3

    live_tick_seconds: PositiveInt = 1
    resync_interval_seconds: PositiveInt = 6

    default_page_size: PositiveInt = 50
    max_page_size: PositiveInt = 200
    week_starts_on: int = Field(default=0, ge=0, le=6)

    @field_validator("state_root", "drafts_root", mode="before")
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

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        self.drafts_root = self.drafts_root.resolve(strict=False)

        self.state_root.mkdir(parents=True, exist_ok=True)
        if self.drafts_root.as_posix() == "/state/drafts" and self.state_root.as_posix() != "/state":
            self.drafts_root = (self.state_root / "drafts").resolve(strict=False)
        if self.state_root != self.drafts_root and self.state_root not in self.drafts_root.parents:
            raise ValueError("drafts_root must be under state_root")
        self.drafts_root.mkdir(parents=True, exist_ok=True)

        normalized_status = self.default_job_status.lower().strip()
        if normalized_status not in SUPPORTED_JOB_STATUSES:
            raise ValueError(f"default_job_status must be one of {sorted(SUPPORTED_JOB_STATUSES)}")
        self.default_job_status = normalized_status

        for header_field in ("identity_header", "identity_email_header", "identity_name_header"):
            if not getattr(self, header_field).strip():
                raise ValueError(f"{header_field} cannot be blank")
        if self.identity_webhook_secret is not None and not self.identity_webhook_secret.get_secret_value():
            self.identity_webhook_secret = None

        if self.max_page_size < self.default_page_size:
            raise ValueError("max_page_size must be greater than or equal to default_page_size")

        if self.resync_interval_seconds < self.live_tick_seconds:
            raise ValueError("resync_interval_seconds must be >= live_tick_seconds")

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "jobclock.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
