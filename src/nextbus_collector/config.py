"""Application configuration via environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# NextBus allows at most one vehicleLocations request per 10 seconds.
MIN_FETCH_INTERVAL_SEC = 10.0


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = "NextBus Location Collector"
    app_version: str = "0.1.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # NextBus API
    agency: str = Field(
        default="mbta",
        validation_alias=AliasChoices("AGENCY", "NEXTBUS_AGENCY"),
    )
    nextbus_base_url: str = Field(
        default="http://webservices.nextbus.com/service/publicXMLFeed",
        validation_alias=AliasChoices("NEXTBUS_BASE_URL", "BASE_URL"),
    )
    fetch_timeout_sec: float = 9.5

    # Polling
    fetch_interval_sec: float = Field(default=0.0, ge=0.0)
    extra_seconds: int = Field(default=60, ge=0)

    # Storage
    storage_root: Path = Field(
        default=Path("./data"),
        validation_alias=AliasChoices("STORAGE_ROOT", "NEXTBUS_STORAGE_ROOT"),
    )
    archive_timezone: str = "UTC"
    debug_archiving: bool = False

    # Pipeline
    queue_capacity: int = Field(default=10, ge=1, le=1000)
    stage_timeout_sec: float = Field(default=20.0, gt=0)
    drain_poll_interval_sec: float = Field(default=0.02, gt=0)
    partial_flush_interval_sec: float = Field(default=600.0, gt=0)
    max_consecutive_archive_errors: int = Field(default=10, ge=1)
    pipeline_auto_start: bool = False

    @field_validator("fetch_interval_sec")
    @classmethod
    def _check_fetch_interval(cls, value: float) -> float:
        if 0 < value < MIN_FETCH_INTERVAL_SEC:
            msg = f"fetch interval {value} is too short (minimum {MIN_FETCH_INTERVAL_SEC}s)"
            raise ValueError(msg)
        return value

    @property
    def effective_fetch_interval_sec(self) -> float:
        """Interval between fetches, derived from extra_seconds when unset.

        With a large overlap the same report is returned several times; the
        small offset spreads those requests across different server seconds.
        """
        if self.fetch_interval_sec >= MIN_FETCH_INTERVAL_SEC:
            return self.fetch_interval_sec
        interval = MIN_FETCH_INTERVAL_SEC
        if self.extra_seconds > 0:
            times = (MIN_FETCH_INTERVAL_SEC + self.extra_seconds) / MIN_FETCH_INTERVAL_SEC
            if times > 2:
                interval += 1.0 / times
        return interval

    @property
    def effective_partial_flush_interval_sec(self) -> float:
        if self.debug_archiving:
            return 25.0
        return self.partial_flush_interval_sec

    @property
    def agency_dir(self) -> Path:
        return self.storage_root / self.agency

    @property
    def raw_root_dir(self) -> Path:
        """Compressed tars of (almost) raw vehicleLocations responses."""
        return self.agency_dir / "locations" / "raw"

    @property
    def processed_root_dir(self) -> Path:
        """Daily compressed CSV files of aggregated locations."""
        return self.agency_dir / "locations" / "processed"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
