"""Application configuration using Pydantic Settings."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import structlog
from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

logger = structlog.get_logger("shelfarr.config")

SOURCE_NAMES = ("comicvine", "metron", "gcd")


def _default_data_dir() -> Path:
    if Path("/config").exists():
        # Container environment
        return Path("/config")
    # __file__ is backend/shelfarr/core/config.py, so go up to backend/ and add data
    return (Path(__file__).parent.parent.parent / "data").resolve()


def json_config_settings_source(
    settings: BaseSettings | None = None,
) -> dict[str, Any]:  # noqa: ANN001
    """Load settings from settings.json file.

    This source has lowest priority - env vars will override JSON values.

    The file may use a nested ``{"host": {...}}`` block and a nested
    ``{"sources": {"comicvine": {...}}}`` block; both are flattened into the
    prefixed field names used by :class:`Settings`.

    Returns:
        Dictionary with setting keys (lowercase) and values from JSON file.
    """
    data_dir_env = os.environ.get("SHELFARR_DATA_DIR", "")
    if data_dir_env and Path(data_dir_env).exists():
        data_dir = Path(data_dir_env)
    else:
        data_dir = _default_data_dir()

    settings_file = data_dir / "config" / "settings.json"
    if not settings_file.exists():
        return {}

    try:
        with settings_file.open("r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to read settings.json", path=str(settings_file), error=str(exc))
        return {}

    flattened: dict[str, Any] = {}

    host = data.pop("host", None)
    if isinstance(host, dict):
        flattened["host_bind_address"] = host.get("bind_address", "127.0.0.1")
        flattened["host_port"] = host.get("port", 8000)
        flattened["host_base_url"] = host.get("base_url", "")

    # {"sources": {"comicvine": {"api_key": "..."}, "metron": {"username": ...}}}
    sources = data.pop("sources", None)
    if isinstance(sources, dict):
        for source_name, source_settings in sources.items():
            if source_name not in SOURCE_NAMES or not isinstance(source_settings, dict):
                continue
            for key, value in source_settings.items():
                flattened[f"{source_name}_{key}"] = value

    flattened.update(data)
    return {k.lower(): v for k, v in flattened.items()}


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from:
    1. JSON file (settings.json in config directory) - lowest priority
    2. .env file
    3. Environment variables (override JSON/.env)
    4. Values passed to the constructor - highest priority

    All settings are prefixed with SHELFARR_ (e.g., SHELFARR_ENV=production).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SHELFARR_",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority (lowest to highest): JSON file, .env, env vars, init values."""
        # pydantic-settings gives the first source the highest priority
        return (  # type: ignore[return-value]
            init_settings,
            env_settings,
            dotenv_settings,
            json_config_settings_source,
        )

    # Application
    env: Literal["development", "production", "testing"] = Field(
        default="development",
        description="Application environment (development, production, testing)",
    )

    host_bind_address: str = Field(default="127.0.0.1", description="Host address to bind the server to")
    host_port: int = Field(default=8000, ge=1, le=65535, description="Port number to bind the server to")
    host_base_url: str = Field(default="", description="Base URL path for reverse proxy setups")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    data_dir: Path = Field(
        default_factory=_default_data_dir,
        description="Base directory for all application data (config, database, cache, etc.)",
    )

    # Metadata sources
    comicvine_api_key: str | None = Field(default=None, description="ComicVine API key")
    comicvine_base_url: str = Field(default="https://comicvine.gamespot.com/api")
    metron_username: str | None = Field(default=None, description="Metron account username")
    metron_password: str | None = Field(default=None, description="Metron account password")
    metron_base_url: str = Field(default="https://metron.cloud/api")
    gcd_base_url: str = Field(default="https://www.comics.org/api")

    enabled_sources: list[str] = Field(
        default_factory=lambda: list(SOURCE_NAMES),
        description="Metadata sources that may be queried",
    )
    source_priority: list[str] = Field(
        default_factory=lambda: list(SOURCE_NAMES),
        description="Merge priority, highest first",
    )
    source_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-source timeout for a single cross-source query",
    )
    source_cache_ttl_seconds: int = Field(
        default=86400,
        ge=0,
        description="How long source responses stay in the disk cache",
    )
    cross_source_concurrency: int = Field(
        default=3,
        ge=1,
        description="Maximum number of sources queried at the same time",
    )

    # Matching
    auto_match_threshold: float = Field(
        default=0.95,
        ge=0.0,
        le=1.0,
        description="Cross-source confidence at which a match may be auto-applied",
    )
    auto_select_threshold: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Series search confidence at which the top result is preselected",
    )

    # Jobs
    job_ttl_hours: int = Field(default=24, ge=1, description="How long an idle metadata job is kept")
    job_cleanup_interval_minutes: int = Field(
        default=60,
        ge=1,
        description="How often expired metadata jobs are purged",
    )

    @field_validator("enabled_sources", "source_priority")
    @classmethod
    def _known_sources(cls, value: list[str]) -> list[str]:
        unknown = [name for name in value if name not in SOURCE_NAMES]
        if unknown:
            raise ValueError(f"Unknown metadata source(s): {', '.join(unknown)}")
        return value

    @property
    def config_dir(self) -> Path:
        """Directory for configuration files (settings.json, etc.)."""
        return self.data_dir / "config"

    @property
    def database_dir(self) -> Path:
        """Directory for database files."""
        return self.data_dir / "database"

    @property
    def cache_dir(self) -> Path:
        """Directory for cache files."""
        return self.data_dir / "cache"

    @property
    def jobs_dir(self) -> Path:
        """Scratch directory for per-job temporary files."""
        return self.cache_dir / "jobs"

    @property
    def logs_dir(self) -> Path:
        """Directory for log files."""
        return self.data_dir / "logs"

    @property
    def database_url(self) -> str:
        """Database connection URL (sqlite+aiosqlite:///absolute/path)."""
        db_path = (self.database_dir / "shelfarr.db").resolve().as_posix()
        return f"sqlite+aiosqlite:///{db_path}"

    @property
    def is_debug(self) -> bool:
        """Check if running in debug/development mode."""
        return self.env == "development"

    @property
    def is_testing(self) -> bool:
        return self.env == "testing"

    @property
    def primary_source(self) -> str:
        """Highest-priority enabled source, used for quick searches."""
        for name in self.source_priority:
            if name in self.enabled_sources:
                return name
        return self.enabled_sources[0] if self.enabled_sources else SOURCE_NAMES[0]

    def ordered_sources(self) -> list[str]:
        """Enabled sources in merge priority order."""
        ordered = [name for name in self.source_priority if name in self.enabled_sources]
        ordered.extend(name for name in self.enabled_sources if name not in ordered)
        return ordered

    def model_post_init(self, __context: object) -> None:
        """Create data directories if they don't exist."""
        self.data_dir = self.data_dir.resolve()

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.database_dir.mkdir(parents=True, exist_ok=True)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.jobs_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the cached settings instance.

    The cache is cleared when reload_settings() is called.
    """
    return Settings()


def reload_settings() -> Settings:
    """Reload settings from all sources (JSON, .env, env vars).

    Returns:
        New Settings instance
    """
    get_settings.cache_clear()
    return get_settings()
