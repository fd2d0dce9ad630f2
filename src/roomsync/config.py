"""Configuration management using Pydantic Settings."""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import RoomConfig, SyncConfiguration

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Google Calendar API Configuration
    google_service_account_file: Path = Field(
        default=Path("google-account-key.json"),
        description="Service account key used to access room calendars"
    )
    google_token_file: Optional[Path] = Field(
        default=None,
        description="Authorized-user token file (used instead of the service account if set)"
    )
    google_scopes: List[str] = Field(
        default=["https://www.googleapis.com/auth/calendar"],
        description="Google API scopes"
    )

    # Application Configuration
    app_name: str = Field(default="roomsync", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    # Storage Configuration
    data_dir: Path = Field(
        default=Path("data"),
        description="Data directory holding calendars/<room>/proposals.ics"
    )
    database_url: str = Field(
        default="",
        validate_default=True,
        description="Database URL (defaults to SQLite in data_dir)"
    )

    # Rooms
    rooms_file: Path = Field(
        default=Path("settings.json"),
        description="JSON file with a top-level 'rooms' list"
    )
    rooms: List[RoomConfig] = Field(
        default_factory=list,
        description="Rooms to sync (overrides rooms_file when set)"
    )

    # Sync Configuration
    sync_config: SyncConfiguration = Field(
        default_factory=SyncConfiguration,
        description="Synchronization settings"
    )

    # Performance Configuration
    max_concurrent_requests: int = Field(
        default=8,
        ge=1,
        le=100,
        description="Maximum concurrent API requests across all rooms"
    )
    request_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Per-request timeout"
    )
    rate_limit_requests_per_minute: int = Field(
        default=300,
        ge=1,
        description="Global rate limit for API requests"
    )

    @field_validator('data_dir', 'google_service_account_file', 'rooms_file', mode='before')
    @classmethod
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if v is None:
            return v
        return Path(v).expanduser()

    @field_validator('database_url')
    @classmethod
    def set_default_database_url(cls, v, info: ValidationInfo):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in info.data:
            data_dir = Path(info.data['data_dir']).absolute()
            return f"sqlite:///{data_dir}/roomsync.db"
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    def ensure_directories(self):
        """Create necessary directories."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.calendars_dir.mkdir(parents=True, exist_ok=True)

    @property
    def calendars_dir(self) -> Path:
        """Directory holding one sub-directory per room."""
        return self.data_dir / "calendars"

    def room_source_path(self, room: RoomConfig) -> Path:
        """Path to a room's proposals calendar."""
        return self.calendars_dir / room.room_id / "proposals.ics"

    def validate_required_settings(self) -> List[str]:
        """Validate required settings and return list of problems."""
        missing = []

        if self.google_token_file:
            if not self.google_token_file.exists():
                missing.append(f'GOOGLE_TOKEN_FILE ({self.google_token_file} not found)')
        elif not self.google_service_account_file.exists():
            missing.append(
                f'GOOGLE_SERVICE_ACCOUNT_FILE ({self.google_service_account_file} not found)'
            )
        if not load_rooms(self):
            missing.append(f'ROOMS (no rooms configured in env or {self.rooms_file})')

        return missing


@lru_cache(maxsize=None)
def _read_rooms_file(path: str) -> tuple:
    """Read the rooms list from a settings.json file (cached per path)."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.debug(f"Rooms file not found: {path}")
        return ()
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read rooms from {path}: {e}")
        return ()

    rooms = []
    for entry in data.get('rooms') or []:
        try:
            rooms.append(RoomConfig.model_validate(entry))
        except ValueError as e:
            logger.warning(f"Ignoring invalid room entry {entry!r}: {e}")
    return tuple(rooms)


def invalidate_room_cache() -> None:
    """Drop cached rooms files so the next lookup re-reads them."""
    _read_rooms_file.cache_clear()


def load_rooms(settings: Settings) -> List[RoomConfig]:
    """All configured rooms, from settings or the rooms file."""
    if settings.rooms:
        return list(settings.rooms)
    return list(_read_rooms_file(str(settings.rooms_file.absolute())))


def get_room(settings: Settings, name_or_slug: str) -> Optional[RoomConfig]:
    """Look up a room by display name or slug."""
    for room in load_rooms(settings):
        if name_or_slug in (room.name, room.room_id):
            return room
    return None


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to an env file

    Returns:
        Settings instance
    """
    if config_file:
        settings = Settings(_env_file=config_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Create an example configuration file.

    Args:
        path: Path to create the example config file
    """
    example_content = '''# roomsync configuration
# Copy this file to .env and adjust

# Google Calendar access (service account key with access to each room calendar)
GOOGLE_SERVICE_ACCOUNT_FILE=google-account-key.json
# GOOGLE_TOKEN_FILE=token.json

# Storage
DATA_DIR=data
# DATABASE_URL=sqlite:///data/roomsync.db

# Rooms are read from settings.json: {"rooms": [{"name": "Ostrom Room", "slug": "ostrom", "calendarId": "..."}]}
ROOMS_FILE=settings.json

# Application Configuration
DEBUG=false
LOG_LEVEL=INFO

# Sync Configuration
SYNC_CONFIG__SYNC_INTERVAL_MINUTES=5
SYNC_CONFIG__MAX_CONCURRENT_ROOMS=4
SYNC_CONFIG__RETRY_ATTEMPTS=5
SYNC_CONFIG__RETRY_BACKOFF_SECONDS=1
SYNC_CONFIG__RETRY_MAX_BACKOFF_SECONDS=30
# managed | delete | keep
SYNC_CONFIG__ORPHAN_POLICY=managed
SYNC_CONFIG__UID_DOMAIN=opensourcevillage.org

# Performance Configuration
MAX_CONCURRENT_REQUESTS=8
REQUEST_TIMEOUT_SECONDS=30
RATE_LIMIT_REQUESTS_PER_MINUTE=300
'''

    with open(path, 'w') as f:
        f.write(example_content)
