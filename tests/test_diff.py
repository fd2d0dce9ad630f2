"""Tests for the diff engine."""

from datetime import timedelta

import pytest
import pytz

from roomsync.diff import compute_diff, event_differs, normalize_text, normalize_time
from roomsync.identity import derive_uid
from roomsync.models import (
    Attendee, EventStatus, LocalEvent, OrphanPolicy, RemoteEvent, SyncMetadata,
)

from conftest import BASE_TIME

ROOM = "ostrom"


def local(offer_id, title=None, status=EventStatus.CONFIRMED, **kwargs):
    start = kwargs.pop("start", BASE_TIME)
    return LocalEvent(
        offer_id=str(offer_id),
        uid=derive_uid(str(offer_id), ROOM),
        room_id=ROOM,
        title=title or f"Talk {offer_id}",
        start=start,
        end=kwargs.pop("end", start + timedelta(hours=1)),
        status=status,
        **kwargs,
    )


def remote(remote_id, event=None, ical_uid=None, **overrides):
    fields = dict(remote_id=remote_id, ical_uid=ical_uid, title="", start=BASE_TIME,
                  end=BASE_TIME + timedelta(hours=1))
    if event is not None:
        fields.update(ical_uid=ical_uid or event.uid, title=event.title,
                      description=event.remote_description, location=event.location,
                      start=event.start, end=event.end)
    fields.update(overrides)
    return RemoteEvent(**fields)


def mapped(**pairs):
    return SyncMetadata(local_to_remote_id=pairs)


class TestNormalization:

    def test_time_drops_microseconds_and_zone(self):
        berlin = pytz.timezone("Europe/Berlin")
        a = berlin.localize(BASE_TIME.replace(tzinfo=None)) + timedelta(microseconds=999)
        b = a.astimezone(pytz.UTC).replace(microsecond=0)
        assert normalize_time(a) == normalize_time(b)

    def test_text(self):
        assert normalize_text("  Hello\r\nWorld  ") == "Hello\nWorld"
        assert normalize_text(None) == normalize_text("")

    def test_missing_description_equals_empty(self):
        event = local(1)
        assert not event_differs(event, remote("r1", event, description=""))

    def test_sub_second_difference_is_not_a_change(self):
        event = local(1)
        assert not event_differs(
            event, remote("r1", event, start=event.start + timedelta(microseconds=500))
        )

    def test_title_change_is_a_change(self):
        event = local(1)
        assert event_differs(event, remote("r1", event, title="Other"))

    def test_location_change_is_a_change(self):
        event = local(1, location="Garden")
        assert event_differs(event, remote("r1", event, location="Ostrom Room"))

    def test_truncated_fields_are_not_a_change(self):
        event = local(1, "T" * 1100, description="d" * 9000 + "\x00")
        stored = remote("r1", event, title=event.remote_title)
        assert len(stored.title) == 1024 and len(stored.description) == 8192
        assert not event_differs(event, stored)

    def test_new_rsvp_is_a_change(self):
        event = local(1, description="Bring a laptop")
        stored = remote("r1", event)
        rsvped = event.model_copy(update={"attendees": [Attendee(username="alice", npub="npub1alice")]})
        assert rsvped.remote_description == "Bring a laptop\n\nRSVPs: 1 (alice)"
        assert event_differs(rsvped, stored)


class TestComputeDiff:

    def test_empty_remote_creates_everything(self):
        events = [local(1), local(2), local(3)]
        diff = compute_diff(events, [], SyncMetadata(), ROOM)
        assert [e.uid for e in diff.to_create] == [e.uid for e in events]
        assert not diff.to_update and not diff.to_delete

    def test_in_sync_is_empty(self):
        event = local(1)
        diff = compute_diff([event], [remote("r1", event)], mapped(**{event.uid: "r1"}), ROOM)
        assert diff.is_empty
        assert diff.matched == {event.uid: "r1"}

    def test_changed_event_is_updated(self):
        event = local(1, "New title")
        stale = remote("r1", event, title="Old title")
        diff = compute_diff([event], [stale], mapped(**{event.uid: "r1"}), ROOM)
        assert [(u.remote_id, u.event.uid) for u in diff.to_update] == [("r1", event.uid)]
        assert not diff.to_create

    def test_mapping_wins_over_ical_uid(self):
        event = local(1)
        # r1 was created by us but has a foreign iCalUID; r2 merely carries the uid
        tracked = remote("r1", event, ical_uid="abc@google.com")
        lookalike = remote("r2", event)
        diff = compute_diff([event], [lookalike, tracked], mapped(**{event.uid: "r1"}), ROOM)
        assert diff.matched == {event.uid: "r1"}
        assert [(d.remote_id, d.reason) for d in diff.to_delete] == [("r2", "duplicate")]

    def test_ical_uid_fallback_matches_untracked(self):
        event = local(1)
        diff = compute_diff([event], [remote("r9", event)], SyncMetadata(), ROOM)
        assert diff.is_empty
        assert diff.matched == {event.uid: "r9"}

    def test_legacy_uid_fallback(self):
        event = local(1)
        legacy = remote("r9", event, ical_uid="offer-1@opensourcevillage.org")
        diff = compute_diff([event], [legacy], SyncMetadata(), ROOM)
        assert diff.matched == {event.uid: "r9"}

    def test_removed_locally_is_deleted(self):
        gone = local(1)
        diff = compute_diff([], [remote("r1", gone)], mapped(**{gone.uid: "r1"}), ROOM)
        assert [(d.remote_id, d.uid, d.reason) for d in diff.to_delete] == [
            ("r1", gone.uid, "removed locally")
        ]

    @pytest.mark.parametrize("status", [EventStatus.CANCELLED, EventStatus.TENTATIVE])
    def test_inactive_event_is_deleted(self, status):
        event = local(1, status=status)
        diff = compute_diff([event], [remote("r1", event)], mapped(**{event.uid: "r1"}), ROOM)
        assert [d.reason for d in diff.to_delete] == ["cancelled"]
        assert not diff.to_create

    def test_inactive_event_never_created(self):
        diff = compute_diff([local(1, status=EventStatus.CANCELLED)], [], SyncMetadata(), ROOM)
        assert diff.is_empty

    def test_active_copy_wins_over_cancelled_copy(self):
        diff = compute_diff(
            [local(1), local(1, status=EventStatus.CANCELLED)], [], SyncMetadata(), ROOM
        )
        assert len(diff.to_create) == 1

    def test_every_planned_operation_touches_distinct_events(self):
        keep, change, new = local(1), local(2, "Changed"), local(3)
        remotes = [
            remote("r1", keep),
            remote("r2", change, title="Before"),
            remote("r4", local(4)),
        ]
        metadata = mapped(**{keep.uid: "r1", change.uid: "r2", derive_uid("4", ROOM): "r4"})
        diff = compute_diff([keep, change, new], remotes, metadata, ROOM)

        assert [e.uid for e in diff.to_create] == [new.uid]
        assert [u.remote_id for u in diff.to_update] == ["r2"]
        assert [d.remote_id for d in diff.to_delete] == ["r4"]


class TestOrphanPolicy:

    def setup_method(self):
        self.managed_orphan = remote("r1", ical_uid=derive_uid("99", ROOM), title="Stale")
        self.other_room = remote("r2", ical_uid=derive_uid("99", "satoshi"), title="Elsewhere")
        self.foreign = remote("r3", ical_uid="xyz@google.com", title="Staff meeting")
        self.remotes = [self.managed_orphan, self.other_room, self.foreign]

    def deleted(self, policy):
        diff = compute_diff([], self.remotes, SyncMetadata(), ROOM, orphan_policy=policy)
        return sorted(d.remote_id for d in diff.to_delete), sorted(r.remote_id for r in diff.ignored)

    def test_managed_deletes_only_own_namespace(self):
        assert self.deleted(OrphanPolicy.MANAGED) == (["r1"], ["r2", "r3"])

    def test_delete_removes_all_orphans(self):
        assert self.deleted(OrphanPolicy.DELETE) == (["r1", "r2", "r3"], [])

    def test_keep_never_deletes_orphans(self):
        assert self.deleted(OrphanPolicy.KEEP) == ([], ["r1", "r2", "r3"])

    def test_tracked_event_deleted_even_when_keeping_orphans(self):
        gone = local(1)
        diff = compute_diff(
            [], [remote("r1", gone)], mapped(**{gone.uid: "r1"}), ROOM,
            orphan_policy=OrphanPolicy.KEEP,
        )
        assert [d.remote_id for d in diff.to_delete] == ["r1"]
