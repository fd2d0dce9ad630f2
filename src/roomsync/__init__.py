"""roomsync - one-way sync of room proposals to Google Calendar."""

__version__ = "1.0.0"

from .config import Settings, load_settings
from .models import (
    LocalEvent, RemoteEvent, RoomConfig, RoomStatus, RoomSyncResult, SyncReport, SyncStage,
)
from .sync_engine import SyncEngine

__all__ = [
    "LocalEvent",
    "RemoteEvent",
    "RoomConfig",
    "RoomStatus",
    "RoomSyncResult",
    "Settings",
    "SyncEngine",
    "SyncReport",
    "SyncStage",
    "load_settings",
]
