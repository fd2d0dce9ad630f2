"""Three-way diff between a room's local events and its remote calendar."""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

import pytz

from .identity import DEFAULT_DOMAIN, canonical_uid
from .models import (
    EventDeletion, EventUpdate, LocalEvent, OrphanPolicy, RemoteEvent, SyncDiff,
    SyncMetadata, ensure_utc,
)

logger = logging.getLogger(__name__)


def normalize_time(dt: datetime) -> datetime:
    """UTC at whole-second precision; the remote service drops sub-seconds."""
    return ensure_utc(dt).astimezone(pytz.UTC).replace(microsecond=0)


def normalize_text(text: Optional[str]) -> str:
    """Trim surrounding whitespace and unify line endings."""
    return (text or "").replace("\r\n", "\n").strip()


def event_differs(local: LocalEvent, remote: RemoteEvent) -> bool:
    """Whether the remote copy needs rewriting to match the local event.

    The local side is compared in the form it is written remotely, so
    truncated fields and the RSVP line do not cause endless rewrites.
    """
    return (
        normalize_text(local.remote_title) != normalize_text(remote.title)
        or normalize_text(local.remote_description) != normalize_text(remote.description)
        or normalize_text(local.remote_location) != normalize_text(remote.location)
        or normalize_time(local.start) != normalize_time(remote.start)
        or normalize_time(local.end) != normalize_time(remote.end)
    )


def compute_diff(
    local_events: Iterable[LocalEvent],
    remote_events: Iterable[RemoteEvent],
    metadata: SyncMetadata,
    room_id: str,
    *,
    orphan_policy: OrphanPolicy = OrphanPolicy.MANAGED,
    uid_domain: str = DEFAULT_DOMAIN,
) -> SyncDiff:
    """Compute creates, updates and deletes that make the remote match local.

    Remote events are linked to local ones through the stored uid -> remote ID
    mapping first; events with no mapping entry fall back to their iCalUID.

    Args:
        local_events: Normalized local events for the room
        remote_events: Fresh snapshot of the room's remote calendar
        metadata: Stored metadata for the room
        room_id: Room slug (defines the managed uid namespace)
        orphan_policy: Handling of unmatched, untracked remote events
        uid_domain: Namespace domain for uids

    Returns:
        The diff, including every matched uid -> remote ID pair
    """
    diff = SyncDiff()

    active: Dict[str, LocalEvent] = {}
    inactive: Set[str] = set()
    for event in local_events:
        if event.is_active:
            active[event.uid] = event
            inactive.discard(event.uid)
        elif event.uid not in active:
            inactive.add(event.uid)

    tracked = metadata.remote_to_local_uid()
    remotes: List[RemoteEvent] = list(remote_events)
    # Mapped events first so the stored link wins over an iCalUID match
    remotes.sort(key=lambda r: r.remote_id not in tracked)

    for remote in remotes:
        is_tracked = remote.remote_id in tracked
        uid = tracked.get(remote.remote_id) or canonical_uid(remote.ical_uid, room_id, uid_domain)

        if uid is not None and uid in active:
            if uid in diff.matched:
                diff.to_delete.append(EventDeletion(
                    remote_id=remote.remote_id, uid=None, title=remote.title, reason="duplicate"
                ))
                continue
            diff.matched[uid] = remote.remote_id
            if event_differs(active[uid], remote):
                diff.to_update.append(EventUpdate(remote_id=remote.remote_id, event=active[uid]))
            continue

        if uid is not None and uid in inactive:
            reason = "cancelled"
        elif is_tracked:
            reason = "removed locally"
        elif orphan_policy == OrphanPolicy.DELETE or (
            orphan_policy == OrphanPolicy.MANAGED and uid is not None
        ):
            reason = "orphan"
        else:
            diff.ignored.append(remote)
            continue

        diff.to_delete.append(EventDeletion(
            remote_id=remote.remote_id,
            uid=uid,
            title=remote.title,
            reason=reason,
        ))

    for uid, event in active.items():
        if uid not in diff.matched:
            diff.to_create.append(event)

    logger.debug(
        f"[{room_id}] diff: {len(diff.to_create)} create, {len(diff.to_update)} update, "
        f"{len(diff.to_delete)} delete, {len(diff.ignored)} ignored"
    )
    return diff
