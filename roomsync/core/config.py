import logging
import os
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_CACHEABLE_EVENT_TYPES = [
    "m.room.create",
    "m.room.message",
    "m.room.name",
    "m.room.member",
    "m.room.topic",
    "m.room.canonical_alias",
]


class Settings(BaseSettings):
    # Directory settings
    DATA_DIR: str = "data"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Session settings
    DEVICE_NAME: str = "roomsync"
    DISABLE_CACHE: bool = False  # Attach the no-op store instead of the file store

    # Sync loop settings
    SYNC_TIMEOUT_MS: int = 30000  # Long-poll timeout passed to /sync
    SYNC_IN_BACKGROUND: bool = True  # Start the sync loop after a successful start
    SYNC_INITIAL_BACKOFF_SECONDS: int = 5
    SYNC_MAX_BACKOFF_SECONDS: int = 60

    # Timeline settings
    PAGINATION_PAGE_SIZE: int = 30  # Events requested per backward pagination
    CACHEABLE_EVENT_TYPES: str | list[str] = DEFAULT_CACHEABLE_EVENT_TYPES
    EVENT_CACHE_MAX_EVENTS_PER_ROOM: int = 0  # 0 = unbounded
    EVENT_CACHE_DROP_ON_PART: bool = True
    STORE_MAX_EVENTS_PER_ROOM: int = 100  # Event sources kept per room by the file store

    # Notification settings
    SINGLE_SUBSCRIBER_DELEGATES: bool = False  # One receiver per topic, like delegate slots

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # Path properties that return complete paths
    @property
    def CREDENTIALS_FILE_PATH(self) -> str:
        """Complete path to the persisted credentials file"""
        return os.path.join(self.DATA_DIR, "credentials.json")

    @property
    def STORE_DIR_PATH(self) -> str:
        """Complete path to the local event store directory"""
        return os.path.join(self.DATA_DIR, "store")

    @property
    def MEDIA_CACHE_DIR_PATH(self) -> str:
        """Complete path to the downloaded media cache"""
        return os.path.join(self.DATA_DIR, "media")

    def get_data_path(self, *path_parts) -> str:
        """Build a path under DATA_DIR.

        Args:
            *path_parts: Path components to join

        Returns:
            Joined path below the data directory
        """
        return os.path.join(self.DATA_DIR, *path_parts)

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize LOG_LEVEL and reject unknown level names.

        Raises:
            ValueError: If the level is not a standard logging level
        """
        level = v.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown LOG_LEVEL: {v}")
        return level

    @field_validator("PAGINATION_PAGE_SIZE")
    @classmethod
    def validate_page_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("PAGINATION_PAGE_SIZE must be at least 1")
        if v > 1000:
            raise ValueError("PAGINATION_PAGE_SIZE must be ≤ 1000")
        return v

    @field_validator(
        "EVENT_CACHE_MAX_EVENTS_PER_ROOM",
        "STORE_MAX_EVENTS_PER_ROOM",
        "SYNC_TIMEOUT_MS",
    )
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Value must not be negative")
        return v

    @field_validator("CACHEABLE_EVENT_TYPES", mode="before")
    @classmethod
    def parse_cacheable_event_types(cls, v: str | list[str]) -> list[str]:
        """Normalize CACHEABLE_EVENT_TYPES to a list of event types.

        Accepts either a comma-separated string or a list of strings.
        Handles trimming whitespace and ignores empty entries.

        Args:
            v: Event types as string (comma-separated) or list of strings

        Returns:
            List of event types with whitespace trimmed and empty entries removed
        """
        if isinstance(v, list):
            return [
                event_type.strip()
                for event_type in v
                if isinstance(event_type, str) and event_type.strip()
            ]

        if isinstance(v, str):
            return [event_type.strip() for event_type in v.split(",") if event_type.strip()]

        return []

    def ensure_data_dirs(self) -> None:
        """Create required data directories if they don't exist.

        Called from the entry point to avoid import-time side effects.
        """
        Path(self.DATA_DIR).mkdir(parents=True, exist_ok=True)
        Path(self.STORE_DIR_PATH).mkdir(parents=True, exist_ok=True)
        Path(self.MEDIA_CACHE_DIR_PATH).mkdir(parents=True, exist_ok=True)
        logger.debug(f"Data directories ready under {self.DATA_DIR}")


# Thread-safe lazy initialization using lru_cache
@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached application settings instance with lazy initialization.

    Settings are only created once on first access, then cached for subsequent calls.
    This prevents module-level side effects and allows testing without environment variables.

    Returns:
        Settings: Application settings object
    """
    return Settings()


def reset_settings_cache() -> None:
    """Drop the cached settings so the next get_settings() re-reads the environment."""
    get_settings.cache_clear()
