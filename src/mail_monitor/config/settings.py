"""Configuration and environment settings for the mail monitor."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, computed_field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ImapSettings(BaseSettings):
    """IMAP connection settings for the remote mail store."""

    model_config = SettingsConfigDict(extra="forbid")

    host: Annotated[str, Field(min_length=1)]
    port: int = 993
    username: Annotated[str, Field(min_length=1)]
    app_password: Annotated[str, Field(min_length=1, repr=False)]
    ssl: bool = True

    treated_flags: list[str] = Field(default_factory=lambda: ["\\Deleted"])

    @field_validator("treated_flags", mode="before")
    @classmethod
    def _parse_treated_flags(cls, value: object) -> object:
        """Parse flags from JSON or comma-separated values.

        Args:
            value: Raw env value.

        Returns:
            Parsed value (list or original).
        """
        if value is None:
            return []
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                return []
            if stripped.startswith("["):
                import json

                return json.loads(stripped)
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return value


class SyncSettings(BaseSettings):
    """Timing and batching knobs of the reconciliation pipeline."""

    model_config = SettingsConfigDict(extra="forbid")

    poll_interval_s: Annotated[float, Field(gt=0, le=3600)] = 10.0
    poll_window: Annotated[int, Field(ge=1, le=1000)] = 50
    debounce_window_s: Annotated[float, Field(ge=0, le=60)] = 1.0
    query_timeout_s: Annotated[float, Field(gt=0, le=600)] = 15.0
    health_check_interval_s: Annotated[float, Field(gt=0, le=3600)] = 60.0
    auto_reconnect: bool = True

    max_retries: Annotated[int, Field(ge=1, le=50)] = 5
    retry_base_delay_s: Annotated[float, Field(ge=0, le=300)] = 2.0
    retry_max_delay_s: Annotated[float, Field(ge=0, le=3600)] = 60.0

    channel_maxsize: Annotated[int, Field(ge=1, le=100_000)] = 1000

    @model_validator(mode="after")
    def _delays_consistent(self) -> SyncSettings:
        """Ensure the retry cap is not below the base delay."""
        if self.retry_max_delay_s < self.retry_base_delay_s:
            raise ValueError("retry_max_delay_s must be >= retry_base_delay_s")
        return self


class StorageSettings(BaseSettings):
    """Settings for the sqlite store and report output."""

    model_config = SettingsConfigDict(extra="forbid")

    root_dir: Path = Path("./data")
    reports_dir_override: Path | None = None
    sqlite_path_override: Path | None = None

    retention_days: Annotated[int, Field(ge=1, le=36_500)] = 365

    @field_validator("root_dir")
    @classmethod
    def _root_dir_to_absolute(cls, value: Path) -> Path:
        """Resolve the storage root directory to an absolute path."""
        return value.expanduser().resolve()

    @field_validator("reports_dir_override", "sqlite_path_override")
    @classmethod
    def _paths_to_absolute(cls, value: Path | None) -> Path | None:
        """Resolve optional override paths to absolute paths."""
        return value.expanduser().resolve() if value is not None else None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def reports_dir(self) -> Path:
        """Return the resolved reports directory."""
        return (self.reports_dir_override or (self.root_dir / "reports")).resolve()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def sqlite_path(self) -> Path:
        """Return the resolved sqlite database path."""
        return (self.sqlite_path_override or (self.root_dir / "monitor.sqlite3")).resolve()


class MetricsSettings(BaseSettings):
    """Weekly metrics settings."""

    model_config = SettingsConfigDict(extra="forbid")

    timezone: Annotated[str, Field(min_length=1)] = "UTC"
    default_categories: list[str] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        """Validate the IANA timezone name.

        Args:
            value: Timezone name such as ``Europe/Paris``.

        Returns:
            The stripped timezone name.

        Raises:
            ValueError: If the timezone is unknown.
        """
        stripped = value.strip()
        try:
            ZoneInfo(stripped)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value!r}") from exc
        return stripped


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(extra="forbid")

    level: Annotated[str, Field(min_length=1)] = "INFO"
    json_logs: bool = True


class AppSettings(BaseSettings):
    """Top-level application settings."""

    model_config = SettingsConfigDict(
        env_prefix="MON_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="forbid",
    )

    imap: ImapSettings | None = None
    sync: SyncSettings = Field(default_factory=SyncSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(*, env_file: Path | None) -> AppSettings:
    """Load validated settings from environment and optional file.

    Args:
        env_file: Optional .env file path.

    Returns:
        Validated AppSettings instance.
    """
    if env_file is None:
        return AppSettings()
    return AppSettings(_env_file=env_file)  # type: ignore[call-arg]
