"""Reader for the per-room local proposals calendar."""

import hashlib
import logging
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytz
from icalendar import Calendar

from .config import Settings
from .identity import derive_uid, parse_offer_id
from .models import Attendee, EventStatus, LocalEvent, RoomConfig, SourceVersion, ensure_utc

logger = logging.getLogger(__name__)


class SourceUnavailable(Exception):
    """A room's local source is missing or cannot be parsed."""

    def __init__(self, room_id: str, reason: str):
        super().__init__(f"{room_id}: {reason}")
        self.room_id = room_id
        self.reason = reason


def _to_datetime(value) -> Optional[datetime]:
    """Convert a decoded DTSTART/DTEND value to an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        # All-day entries start at midnight UTC
        return datetime(value.year, value.month, value.day, tzinfo=pytz.UTC)
    return None


def _text(component, name: str) -> Optional[str]:
    value = component.get(name)
    if value is None:
        return None
    return str(value)


def _attendees(component) -> List[Attendee]:
    """Accepted ATTENDEE entries (``CN`` is the username, the value the npub)."""
    values = component.get('ATTENDEE')
    if values is None:
        return []
    if not isinstance(values, list):
        values = [values]
    attendees = []
    for value in values:
        params = getattr(value, 'params', {})
        if str(params.get('PARTSTAT', 'ACCEPTED')).upper() != 'ACCEPTED':
            continue
        npub = str(value)
        if npub.lower().startswith('mailto:'):
            npub = npub[len('mailto:'):]
        attendees.append(Attendee(username=str(params.get('CN') or npub), npub=npub))
    return attendees


def _min_rsvps(component) -> int:
    try:
        return int(_text(component, 'X-OSV-MIN-RSVPS') or 0)
    except ValueError:
        return 0


class LocalSourceReader:
    """Reads ``proposals.ics`` for a room into normalized local events."""

    def __init__(self, settings: Settings):
        """Initialize the reader.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.uid_domain = settings.sync_config.uid_domain
        self.logger = logger.getChild('reader')

    def source_path(self, room: RoomConfig) -> Path:
        return self.settings.room_source_path(room)

    def read_local_events(self, room: RoomConfig) -> Tuple[List[LocalEvent], SourceVersion]:
        """Read and parse a room's proposals.

        Args:
            room: Room to read

        Returns:
            Tuple of (events, source version)

        Raises:
            SourceUnavailable: If the source is missing, unreadable or unparseable
        """
        path = self.source_path(room)
        try:
            stat = path.stat()
            content = path.read_bytes()
        except FileNotFoundError:
            raise SourceUnavailable(room.room_id, f"no proposals file at {path}")
        except OSError as e:
            raise SourceUnavailable(room.room_id, f"cannot read {path}: {e}")

        version = SourceVersion(
            modified_at=datetime.fromtimestamp(stat.st_mtime, tz=pytz.UTC),
            digest=hashlib.sha256(content).hexdigest(),
        )
        events = self.parse(content, room)
        self.logger.debug(f"[{room.room_id}] read {len(events)} local events from {path}")
        return events, version

    def parse(self, content: bytes, room: RoomConfig) -> List[LocalEvent]:
        """Parse ICS content into local events for a room.

        Raises:
            SourceUnavailable: If the content is not a valid calendar
        """
        try:
            cal = Calendar.from_ical(content)
        except ValueError as e:
            raise SourceUnavailable(room.room_id, f"invalid calendar data: {e}")

        events: Dict[str, LocalEvent] = {}
        for component in cal.walk('VEVENT'):
            event = self._parse_component(component, room)
            if event is None:
                continue
            if event.uid in events:
                self.logger.warning(
                    f"[{room.room_id}] duplicate entry for offer {event.offer_id}, keeping the last one"
                )
            events[event.uid] = event
        return list(events.values())

    def _parse_component(self, component, room: RoomConfig) -> Optional[LocalEvent]:
        offer_id = _text(component, 'X-OSV-OFFER-ID') or parse_offer_id(
            _text(component, 'UID'), self.uid_domain
        )
        title = (_text(component, 'SUMMARY') or '').strip()
        try:
            start = _to_datetime(component.decoded('DTSTART')) if 'DTSTART' in component else None
            end = _to_datetime(component.decoded('DTEND')) if 'DTEND' in component else None
        except (ValueError, TypeError) as e:
            self.logger.warning(f"[{room.room_id}] skipping entry with unreadable times: {e}")
            return None

        if not (offer_id and title and start and end):
            self.logger.warning(
                f"[{room.room_id}] skipping incomplete entry (offer={offer_id!r}, title={title!r})"
            )
            return None

        status_text = (_text(component, 'STATUS') or EventStatus.CONFIRMED.value).upper()
        try:
            status = EventStatus(status_text)
        except ValueError:
            self.logger.warning(
                f"[{room.room_id}] unknown status {status_text!r} for offer {offer_id}, treating as tentative"
            )
            status = EventStatus.TENTATIVE

        try:
            return LocalEvent(
                offer_id=offer_id,
                uid=derive_uid(offer_id, room.room_id, self.uid_domain),
                room_id=room.room_id,
                title=title,
                description=_text(component, 'DESCRIPTION'),
                location=_text(component, 'LOCATION') or room.name,
                start=start,
                end=end,
                status=status,
                min_rsvps=_min_rsvps(component),
                attendees=_attendees(component),
            )
        except ValueError as e:
            self.logger.warning(f"[{room.room_id}] skipping invalid entry for offer {offer_id}: {e}")
            return None
