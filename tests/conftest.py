"""Shared fixtures: isolated settings, an in-memory calendar and ICS writers."""

import itertools
import os
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import pytest
import pytz
from icalendar import Calendar, Event, vCalAddress
from pydantic_settings import SettingsConfigDict

from roomsync.config import Settings
from roomsync.models import LocalEvent, RemoteEvent, RoomConfig, SyncConfiguration
from roomsync.services import ApiErrorKind, ApiResult, BaseCalendarService
from roomsync.sync_engine import SyncEngine

DOMAIN = "opensourcevillage.org"
BASE_TIME = datetime(2025, 6, 1, 9, 0, tzinfo=pytz.UTC)

OSTROM = RoomConfig(name="Ostrom Room", slug="ostrom", calendar_id="cal-ostrom")
SATOSHI = RoomConfig(name="Satoshi Room", slug="satoshi", calendar_id="cal-satoshi")


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        data_dir=tmp_path / "data",
        database_url=f"sqlite:///{tmp_path}/test.db",
        rooms_file=tmp_path / "settings.json",
        rooms=[OSTROM, SATOSHI],
        sync_config=SyncConfiguration(
            retry_attempts=3,
            retry_backoff_seconds=0,
            retry_max_backoff_seconds=0,
        ),
        rate_limit_requests_per_minute=600000,
        request_timeout_seconds=5,
    )
    values.update(overrides)
    settings = TestSettings(**values)
    settings.ensure_directories()
    return settings


class FakeCalendarService(BaseCalendarService):
    """In-memory remote calendar with scripted failures."""

    def __init__(self, settings):
        super().__init__(settings, "fake")
        self.calendars: Dict[str, Dict[str, RemoteEvent]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.failures: Dict[Tuple[str, str], List[ApiResult]] = {}
        self.on_call = None
        self._ids = itertools.count(1)

    async def authenticate(self) -> None:
        self._authenticated = True

    def fail(self, operation, key, kind=ApiErrorKind.TERMINAL, times=1, status=None):
        """Make the next ``times`` attempts of ``operation`` on ``key`` fail."""
        queue = self.failures.setdefault((operation, key), [])
        for _ in range(times):
            queue.append(ApiResult.failure(kind, f"scripted {kind.value} failure", status))

    def add_remote(self, calendar_id, **fields) -> RemoteEvent:
        fields.setdefault("remote_id", f"seed{next(self._ids)}")
        event = RemoteEvent(**fields)
        self.calendars.setdefault(calendar_id, {})[event.remote_id] = event
        return event

    def events(self, calendar_id) -> List[RemoteEvent]:
        return list(self.calendars.get(calendar_id, {}).values())

    def count(self, operation) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    def _record(self, operation, key) -> Optional[ApiResult]:
        self.calls.append((operation, key))
        if self.on_call:
            self.on_call(operation, key)
        queue = self.failures.get((operation, key))
        if queue:
            return queue.pop(0)
        return None

    async def _list_events(self, calendar_id):
        failure = self._record("list", calendar_id)
        if failure:
            return failure
        return ApiResult.success(self.events(calendar_id))

    async def _insert_event(self, calendar_id, event: LocalEvent):
        failure = self._record("insert", event.uid)
        if failure:
            return failure
        remote = RemoteEvent(
            remote_id=f"evt{next(self._ids)}",
            ical_uid=event.uid,
            title=event.remote_title,
            description=event.remote_description,
            location=event.remote_location,
            start=event.start,
            end=event.end,
            status="confirmed",
        )
        self.calendars.setdefault(calendar_id, {})[remote.remote_id] = remote
        return ApiResult.success(remote)

    async def _update_event(self, calendar_id, remote_id, event: LocalEvent):
        failure = self._record("update", event.uid)
        if failure:
            return failure
        calendar = self.calendars.get(calendar_id, {})
        if remote_id not in calendar:
            return ApiResult.failure(ApiErrorKind.NOT_FOUND, f"{remote_id} not found", 404)
        updated = calendar[remote_id].model_copy(update={
            "title": event.remote_title,
            "description": event.remote_description,
            "location": event.remote_location,
            "start": event.start,
            "end": event.end,
        })
        calendar[remote_id] = updated
        return ApiResult.success(updated)

    async def _delete_event(self, calendar_id, remote_id):
        failure = self._record("delete", remote_id)
        if failure:
            return failure
        calendar = self.calendars.get(calendar_id, {})
        if calendar.pop(remote_id, None) is None:
            return ApiResult.failure(ApiErrorKind.NOT_FOUND, f"{remote_id} not found", 404)
        return ApiResult.success(None)


def proposal(offer_id, title=None, hour=10, hours=1, day=0, **extra):
    start = BASE_TIME.replace(hour=hour) + timedelta(days=day)
    return dict(
        offer_id=str(offer_id),
        title=title or f"Workshop {offer_id}",
        start=start,
        end=start + timedelta(hours=hours),
        **extra,
    )


def write_proposals(settings, room, proposals, mtime=None):
    """Write a room's proposals.ics; returns its path."""
    cal = Calendar()
    cal.add("prodid", "-//roomsync tests//EN")
    cal.add("version", "2.0")
    for p in proposals:
        event = Event()
        event.add("uid", p.get("uid", f"offer-{p['offer_id']}@{DOMAIN}"))
        event.add("summary", p["title"])
        event.add("dtstart", p["start"])
        event.add("dtend", p["end"])
        if p.get("description"):
            event.add("description", p["description"])
        if p.get("location"):
            event.add("location", p["location"])
        if p.get("status"):
            event.add("status", p["status"])
        if p.get("min_rsvps") is not None:
            event.add("x-osv-min-rsvps", str(p["min_rsvps"]))
        for username, npub in p.get("attendees", []):
            attendee = vCalAddress(npub)
            attendee.params["cn"] = username
            attendee.params["partstat"] = "ACCEPTED"
            event.add("attendee", attendee, encode=0)
        cal.add_component(event)

    path = settings.room_source_path(room)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(cal.to_ical())
    if mtime is not None:
        os.utime(path, (mtime.timestamp(), mtime.timestamp()))
    return path


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def service(settings):
    return FakeCalendarService(settings)


@pytest.fixture
def engine(settings, service):
    engine = SyncEngine(settings, service=service)
    engine.db_manager.init_db()
    return engine
