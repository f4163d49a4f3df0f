"""Configuration management for TourCal sync."""

from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class _GroupSettings(BaseSettings):
    """Settings group that also accepts field names, not just env aliases."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")


class CloudKitSettings(_GroupSettings):
    """CloudKit Web Services endpoint settings."""

    base_url: str = Field(default="https://api.apple-cloudkit.com", alias="CLOUDKIT_BASE_URL")
    container: str = Field(default="iCloud.com.soundsolutionsllc.tourcal", alias="CLOUDKIT_CONTAINER")
    environment: str = Field(default="production", alias="CLOUDKIT_ENVIRONMENT")
    api_token: str = Field(default="", alias="CLOUDKIT_API_TOKEN")
    zone_name: str = Field(default="TourCalZone", alias="CLOUDKIT_ZONE_NAME")
    timeout: float = Field(default=30.0, alias="CLOUDKIT_TIMEOUT")

    @property
    def database_url(self) -> str:
        """Get the per-container database root; paths like /private/records/query hang off it."""
        return f"{self.base_url.rstrip('/')}/database/1/{self.container}/{self.environment}"


class RetrySettings(_GroupSettings):
    """Backoff for misdirected (421) responses."""

    max_attempts: int = Field(default=5, alias="RETRY_MAX_ATTEMPTS")
    initial_delay: float = Field(default=0.2, alias="RETRY_INITIAL_DELAY")
    max_delay: float = Field(default=3.2, alias="RETRY_MAX_DELAY")


class CacheSettings(_GroupSettings):
    """Local fallback cache settings."""

    directory: Path = Field(default=Path(".tourcal/cache"), alias="CACHE_DIR")
    ttl_seconds: float = Field(default=3600.0, alias="CACHE_TTL_SECONDS")


class ClaimSettings(_GroupSettings):
    """Invitation claim timing."""

    locate_attempts: int = Field(default=5, alias="CLAIM_LOCATE_ATTEMPTS")
    locate_delay: float = Field(default=2.0, alias="CLAIM_LOCATE_DELAY")
    identity_timeout: float = Field(default=5.0, alias="CLAIM_IDENTITY_TIMEOUT")
    identity_poll_interval: float = Field(default=0.5, alias="CLAIM_IDENTITY_POLL_INTERVAL")
    share_propagation_delay: float = Field(default=2.0, alias="CLAIM_SHARE_PROPAGATION_DELAY")


class StorageSettings(_GroupSettings):
    """Where the session credential survives restarts."""

    session_file: Path = Field(default=Path(".tourcal/session.json"), alias="SESSION_FILE")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
        populate_by_name=True,
    )

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    cloudkit: CloudKitSettings = Field(default_factory=CloudKitSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    claim: ClaimSettings = Field(default_factory=ClaimSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)

    project_root: Path = Field(default_factory=lambda: Path(__file__).parent.parent.parent)

    @property
    def config_dir(self) -> Path:
        """Get config directory."""
        return self.project_root / "config"


def load_yaml_overrides(path: Path) -> dict[str, Any]:
    """Load settings overrides from YAML. Missing file means no overrides."""
    if not path.exists():
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping, got {type(data).__name__}")
    return data


def build_settings(overrides_path: Optional[Path] = None) -> Settings:
    """
    Build settings from environment plus an optional YAML overlay.

    Nested groups in the YAML (e.g. ``retry: {max_attempts: 3}``) are applied
    on top of whatever the environment provides for that group.
    """
    base = Settings()
    path = overrides_path or (base.config_dir / "tourcal.yaml")
    overrides = load_yaml_overrides(path)
    if not overrides:
        return base

    kwargs: dict[str, Any] = {}
    for key, value in overrides.items():
        field = Settings.model_fields.get(key)
        if field is None:
            continue
        group = field.annotation
        if isinstance(value, dict) and isinstance(group, type) and issubclass(group, BaseSettings):
            kwargs[key] = group(**value)
        else:
            kwargs[key] = value
    return Settings(**kwargs)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return build_settings()
