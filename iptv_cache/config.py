from pathlib import Path
import logging

from croniter import croniter
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


class CustomSettings(BaseSettings):
    """Application settings loaded from environment variables.

    Validates configuration at startup to catch misconfiguration early.
    """

    catalog_database_path: str = "./data/cache.db"
    guide_database_path: str = "./data/epg.db"

    # Initial user configuration; replaced at runtime through update_config()
    playlist_url: str | None = None
    guide_source: str | None = None
    epg_enabled: bool = True
    update_interval: str = "12:00"
    id_suffix: str | None = None
    playlist_transformer: str | None = None  # "package.module:attribute"

    guide_refresh_cron: str = "0 3 * * *"  # Daily at 3 AM
    guide_refresh_misfire_grace_sec: int = 3600
    guide_cleanup_interval_hours: int = 6
    catalog_poll_interval_sec: int = 60
    guide_chunk_size: int = 5000
    guide_past_retention_hours: int = 1
    guide_future_limit_days: int = 7
    guide_parse_timeout_sec: int = 600  # 0 disables timeout
    guide_stale_after_hours: int = 24

    fetch_timeout_sec: float = 100.0
    fetch_max_retries: int = 3

    timezone_offset: str = "+2:00"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("catalog_database_path", "guide_database_path")
    @classmethod
    def validate_database_path(cls, value: str) -> str:
        """Validate database path is accessible."""
        path = Path(value)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            return value
        except (OSError, PermissionError) as exc:
            raise ValueError(f"Cannot access database path '{value}': {exc}") from exc

    @field_validator("playlist_url")
    @classmethod
    def validate_playlist_url(cls, value: str | None) -> str | None:
        """Validate the playlist URL is HTTP/HTTPS."""
        if value and not value.lower().startswith(("http://", "https://")):
            raise ValueError(f"Playlist URL must be HTTP/HTTPS: {value}")
        return value or None

    @field_validator(
        "guide_chunk_size",
        "guide_cleanup_interval_hours",
        "catalog_poll_interval_sec",
        "fetch_max_retries",
        "guide_stale_after_hours",
    )
    @classmethod
    def validate_positive_ints(cls, value: int, info) -> int:
        """Ensure counts and intervals are positive."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator(
        "guide_past_retention_hours",
        "guide_future_limit_days",
        "guide_parse_timeout_sec",
        "guide_refresh_misfire_grace_sec",
    )
    @classmethod
    def validate_non_negative_ints(cls, value: int, info) -> int:
        """Ensure window and timeout values are non-negative."""
        if value < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return value

    @field_validator("fetch_timeout_sec")
    @classmethod
    def validate_fetch_timeout(cls, value: float) -> float:
        """Ensure the network timeout is positive."""
        if value <= 0:
            raise ValueError("fetch_timeout_sec must be > 0")
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate log level name."""
        normalized = value.upper()
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if normalized not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}")
        return normalized

    @field_validator("guide_refresh_cron")
    @classmethod
    def validate_cron_expression(cls, value: str) -> str:
        """Validate cron expression is valid."""
        try:
            croniter(value)
            return value
        except (ValueError, KeyError) as exc:
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc

    @model_validator(mode="after")
    def validate_source_configuration(self):
        """Warn about sources that leave a dataset empty."""
        if not self.playlist_url:
            logger.warning("No playlist URL configured - catalog stays empty until rebuilt")
        if self.epg_enabled and not self.guide_source:
            logger.warning("No guide source configured - guide refresh will not retrieve any data")
        return self

    def __init__(self, **data):
        """Initialize settings and log configuration."""
        super().__init__(**data)

        logger.info("Configuration loaded:")
        logger.info("  Catalog Database: %s", self.catalog_database_path)
        logger.info("  Guide Database: %s", self.guide_database_path)
        logger.info("  Guide Enabled: %s", self.epg_enabled)
        logger.info("  Guide Refresh Schedule: %s", self.guide_refresh_cron)
        logger.info("  Guide Cleanup Every: %sh", self.guide_cleanup_interval_hours)
        logger.info("  Catalog Poll Every: %ss", self.catalog_poll_interval_sec)
        logger.info("  Catalog Update Interval: %s", self.update_interval)
        logger.info("  Program Batch Size: %s", self.guide_chunk_size)
        logger.info(
            "  Guide Window: -%sh / +%s days",
            self.guide_past_retention_hours,
            self.guide_future_limit_days,
        )
        logger.info(
            "  Parse Timeout: %s seconds",
            self.guide_parse_timeout_sec or "disabled",
        )
        logger.info("  Fetch Timeout: %ss (%s attempts)", self.fetch_timeout_sec, self.fetch_max_retries)
        logger.info("  Display Offset: %s", self.timezone_offset)


settings = CustomSettings()


def setup_logging() -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
