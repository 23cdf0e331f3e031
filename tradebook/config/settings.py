"""
Configuration Management for Tradebook

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what external dependencies exist and
ensures all required configuration is validated at startup.

Only the remote backend needs credentials. The local store and the
sync processor run with defaults so the app works offline out of the box.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LocalStoreSettings(BaseSettings):
    """Local mirror store (SQLite) configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TRADEBOOK_LOCAL_",
        extra="ignore"
    )

    database_url: str = Field(
        default="sqlite:///tradebook.db",
        description="SQLAlchemy URL of the local mirror database"
    )
    echo_sql: bool = Field(
        default=False,
        description="Log every SQL statement (debugging only)"
    )

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """The mirror relies on SQLite's JSON column support."""
        if not v.startswith("sqlite"):
            raise ValueError("Local store must be a SQLite database URL")
        return v


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets remote store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the spreadsheet holding the authoritative tables"
    )
    worksheet_rows: int = Field(
        default=1000,
        ge=10,
        description="Initial row count for newly created worksheets"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before going online."
            )
        return v


class SyncSettings(BaseSettings):
    """Sync processor and remote retry configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TRADEBOOK_SYNC_",
        extra="ignore"
    )

    retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per remote call before it counts as a transient failure"
    )
    retry_min_wait_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Lower bound of the exponential backoff between attempts"
    )
    retry_max_wait_seconds: float = Field(
        default=10.0,
        ge=0.0,
        description="Upper bound of the exponential backoff between attempts"
    )
    sync_on_enqueue: bool = Field(
        default=True,
        description="Start a sync pass after every local mutation while online"
    )
    start_online: bool = Field(
        default=False,
        description="Assume connectivity at startup (otherwise wait for set_online)"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        description="Minimum level for structured logs"
    )

    # Bookkeeping defaults
    currency: str = Field(
        default="BDT",
        min_length=3,
        max_length=3,
        description="ISO currency code shown with every amount"
    )
    wastage_percentage: float = Field(
        default=0.0,
        ge=0.0,
        le=100.0,
        description="Default stock wastage percentage for new accounts"
    )

    @field_validator('log_level')
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are loaded lazily so the app can run
    # offline without Google credentials.

    @property
    def local_store(self) -> LocalStoreSettings:
        return LocalStoreSettings()

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool | str]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid} plus
    {setting_name}_error entries for the ones that failed.
    Useful for startup checks.
    """
    results: dict[str, bool | str] = {}
    settings = get_settings()

    for name in ("local_store", "google_sheets", "sync", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except ValueError as e:
            # pydantic's ValidationError is a ValueError
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
