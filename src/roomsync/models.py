"""Data models for room calendar synchronization."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from dataclasses import dataclass, field
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator, ValidationInfo
import pytz


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Return ``dt`` as an aware UTC datetime (naive values are taken as UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


# Field limits of the remote calendar
TITLE_MAX_LENGTH = 1024
DESCRIPTION_MAX_LENGTH = 8192
LOCATION_MAX_LENGTH = 1024


def sanitize_text(text: Optional[str], max_length: Optional[int] = None) -> str:
    """Text exactly as it is written to the remote calendar."""
    if not text:
        return ''
    # Remove null bytes and other problematic characters
    sanitized = str(text).replace('\x00', '').replace('\r\n', '\n').strip()
    if max_length and len(sanitized) > max_length:
        sanitized = sanitized[:max_length - 3] + '...'
    return sanitized


class EventStatus(str, Enum):
    """Status of a local proposal event."""

    CONFIRMED = "CONFIRMED"
    TENTATIVE = "TENTATIVE"
    CANCELLED = "CANCELLED"


class OrphanPolicy(str, Enum):
    """What to do with unmatched remote events that nothing tracks."""

    MANAGED = "managed"  # Delete only inside the room's uid namespace
    DELETE = "delete"  # Calendar is fully owned, delete every orphan
    KEEP = "keep"  # Never delete orphans


class SyncOperation(str, Enum):
    """Sync operation types."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncStage(str, Enum):
    """Stages of a room sync cycle."""

    IDLE = "idle"
    CHECKING_CHANGE = "checking_change"
    FETCHING = "fetching"
    DIFFING = "diffing"
    APPLYING = "applying"
    PERSISTING = "persisting"
    FAILED = "failed"


class RoomStatus(str, Enum):
    """Outcome of one room in a sync run."""

    SKIPPED_UNCHANGED = "skipped-unchanged"
    SYNCED = "synced"
    FAILED = "failed"


class Attendee(BaseModel):
    """Accepted RSVP on a proposal."""

    username: str
    npub: str


class LocalEvent(BaseModel):
    """Normalized event read from a room's proposals source."""

    offer_id: str = Field(..., description="Originating offer/proposal ID")
    uid: str = Field(..., description="Derived iCal UID for the remote event")
    room_id: str = Field(..., description="Room slug")
    title: str = Field("", description="Event title")
    description: Optional[str] = Field(None, description="Event description")
    location: Optional[str] = Field(None, description="Room display name")
    start: datetime = Field(..., description="Event start time")
    end: datetime = Field(..., description="Event end time")
    status: EventStatus = Field(EventStatus.CONFIRMED)
    min_rsvps: int = Field(0, description="RSVPs needed for the proposal to go ahead")
    attendees: List[Attendee] = Field(default_factory=list, description="Accepted RSVPs")

    @field_validator('start', 'end', mode='before')
    @classmethod
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v

    @field_validator('end')
    @classmethod
    def end_after_start(cls, v, info: ValidationInfo):
        """Ensure end time is after start time."""
        start = info.data.get('start')
        if start is not None and v <= start:
            raise ValueError(f'End time ({v}) must be after start time ({start})')
        return v

    @property
    def is_active(self) -> bool:
        """Whether the event should exist on the remote calendar."""
        return self.status == EventStatus.CONFIRMED

    @property
    def rsvp_summary(self) -> str:
        if not self.attendees:
            return ''
        names = ', '.join(a.username for a in self.attendees)
        return f"RSVPs: {len(self.attendees)} ({names})"

    @property
    def remote_title(self) -> str:
        return sanitize_text(self.title, TITLE_MAX_LENGTH)

    @property
    def remote_description(self) -> str:
        """Description as written remotely, with the RSVP line appended."""
        description = self.description or ''
        if self.attendees:
            description = f"{description}\n\n{self.rsvp_summary}"
        return sanitize_text(description, DESCRIPTION_MAX_LENGTH)

    @property
    def remote_location(self) -> str:
        return sanitize_text(self.location, LOCATION_MAX_LENGTH)


class RemoteEvent(BaseModel):
    """Event as stored by the remote calendar service."""

    remote_id: str = Field(..., description="Service-assigned event ID")
    ical_uid: Optional[str] = Field(None, description="iCalUID stored by the service")
    title: str = Field("")
    description: Optional[str] = Field(None)
    location: Optional[str] = Field(None)
    start: datetime
    end: datetime
    status: Optional[str] = Field(None)

    @field_validator('start', 'end', mode='before')
    @classmethod
    def ensure_timezone_aware(cls, v):
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v


class SourceVersion(BaseModel):
    """Version of a room's local source, used to skip unchanged rooms."""

    modified_at: datetime
    digest: Optional[str] = None

    @field_validator('modified_at', mode='before')
    @classmethod
    def ensure_timezone_aware(cls, v):
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v


class SyncMetadata(BaseModel):
    """Persisted per-room sync state."""

    last_synced_at: Optional[datetime] = None
    local_to_remote_id: Dict[str, str] = Field(default_factory=dict)
    source_digest: Optional[str] = None

    @field_validator('last_synced_at', mode='before')
    @classmethod
    def ensure_timezone_aware(cls, v):
        if isinstance(v, datetime):
            return ensure_utc(v)
        return v

    def remote_to_local_uid(self) -> Dict[str, str]:
        """Reverse mapping from remote event ID to local uid."""
        return {remote_id: uid for uid, remote_id in self.local_to_remote_id.items()}


@dataclass
class EventUpdate:
    """Planned update of a matched remote event."""

    remote_id: str
    event: LocalEvent


@dataclass
class EventDeletion:
    """Planned deletion of a remote event."""

    remote_id: str
    uid: Optional[str]
    title: str
    reason: str


@dataclass
class SyncDiff:
    """Three-way diff between local and remote state for one room."""

    to_create: List[LocalEvent] = field(default_factory=list)
    to_update: List[EventUpdate] = field(default_factory=list)
    to_delete: List[EventDeletion] = field(default_factory=list)
    # uid -> remote_id for every matched pair, updated or not
    matched: Dict[str, str] = field(default_factory=dict)
    ignored: List[RemoteEvent] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_delete)


class SyncResult(BaseModel):
    """Result of a single remote write."""

    operation: SyncOperation
    uid: Optional[str] = None
    remote_id: Optional[str] = None
    success: bool
    error_message: Optional[str] = None
    event_summary: Optional[str] = None


class RoomConfig(BaseModel):
    """Room configuration, as found in settings.json."""

    name: str = Field(..., description="Room display name")
    slug: Optional[str] = Field(None, description="Directory slug (derived from name if omitted)")
    calendar_id: Optional[str] = Field(None, alias='calendarId', description="Remote calendar ID")
    enabled: bool = Field(True)

    model_config = {'populate_by_name': True, 'extra': 'ignore'}

    @property
    def room_id(self) -> str:
        """Stable room identifier (the slug)."""
        if self.slug:
            return self.slug
        return '-'.join(self.name.lower().split())


class RoomSyncResult(BaseModel):
    """Per-room outcome of a sync run."""

    room_id: str
    room_name: str
    status: RoomStatus
    stage: SyncStage = SyncStage.IDLE
    reason: Optional[str] = None
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    dry_run: bool = False
    results: List[SyncResult] = Field(default_factory=list)

    @property
    def failed_operations(self) -> List[SyncResult]:
        return [r for r in self.results if not r.success]

    def summary(self) -> str:
        """One-line human readable outcome."""
        if self.status == RoomStatus.SKIPPED_UNCHANGED:
            return "skipped (unchanged)"
        if self.status == RoomStatus.FAILED:
            return f"failed at {self.stage.value}: {self.reason}"
        text = f"{self.created} created, {self.updated} updated, {self.deleted} deleted"
        if self.failed_operations:
            text += f", {len(self.failed_operations)} errors"
        if self.dry_run:
            text += " (dry run)"
        return text


class SyncReport(BaseModel):
    """Summary of a sync run across rooms."""

    sync_id: UUID = Field(default_factory=uuid4)
    started_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    completed_at: Optional[datetime] = Field(None)
    dry_run: bool = Field(False)
    rooms: List[RoomSyncResult] = Field(default_factory=list)

    def room(self, room_id: str) -> Optional[RoomSyncResult]:
        return next((r for r in self.rooms if r.room_id == room_id), None)

    @property
    def failed_rooms(self) -> List[RoomSyncResult]:
        return [r for r in self.rooms if r.status == RoomStatus.FAILED]

    @property
    def total_operations(self) -> int:
        """Total number of remote writes attempted."""
        return sum(len(r.results) for r in self.rooms)

    @property
    def success_rate(self) -> float:
        """Success rate of remote writes."""
        results = [res for r in self.rooms for res in r.results]
        if not results:
            return 1.0
        return sum(1 for res in results if res.success) / len(results)


class SyncConfiguration(BaseModel):
    """Sync configuration model."""

    sync_interval_minutes: int = Field(5, ge=1)
    max_concurrent_rooms: int = Field(4, ge=1)
    retry_attempts: int = Field(5, ge=1)
    retry_backoff_seconds: float = Field(1.0, ge=0)
    retry_max_backoff_seconds: float = Field(30.0, ge=0)
    orphan_policy: OrphanPolicy = Field(OrphanPolicy.MANAGED)
    uid_domain: str = Field("opensourcevillage.org", min_length=1)
