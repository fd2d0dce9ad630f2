"""Stable identifiers linking local proposals to remote calendar events.

The uid is written into the remote event's ``iCalUID`` field, so the format
below is a wire contract: changing it orphans every event already synced.

    offer-<offer_id>@<room_id>.<domain>

Events written before rooms were namespaced use ``offer-<offer_id>@<domain>``;
those are still recognised as belonging to the room's namespace.
"""

from typing import Optional

UID_PREFIX = "offer-"
DEFAULT_DOMAIN = "opensourcevillage.org"


def derive_uid(offer_id: str, room_id: str, domain: str = DEFAULT_DOMAIN) -> str:
    """Derive the iCal UID for an offer in a room.

    Args:
        offer_id: Source-assigned offer identifier
        room_id: Room slug
        domain: Namespace domain suffix

    Returns:
        Deterministic uid, distinct for distinct offer IDs within the room

    Raises:
        ValueError: If offer_id or room_id is empty
    """
    if not offer_id or not offer_id.strip():
        raise ValueError("offer_id must not be empty")
    if not room_id or not room_id.strip():
        raise ValueError("room_id must not be empty")
    return f"{UID_PREFIX}{offer_id}@{room_id}.{domain}"


def _split(uid: str):
    if not uid or not uid.startswith(UID_PREFIX) or "@" not in uid:
        return None
    # offer IDs may contain '@'; the namespace never does
    local, _, host = uid.rpartition("@")
    offer_id = local[len(UID_PREFIX):]
    if not offer_id or not host:
        return None
    return offer_id, host


def parse_offer_id(uid: Optional[str], domain: str = DEFAULT_DOMAIN) -> Optional[str]:
    """Extract the offer ID from a uid in either the room or legacy form."""
    parts = _split(uid or "")
    if parts is None:
        return None
    offer_id, host = parts
    if host == domain or host.endswith("." + domain):
        return offer_id
    return None


def canonical_uid(
    ical_uid: Optional[str],
    room_id: str,
    domain: str = DEFAULT_DOMAIN,
) -> Optional[str]:
    """Map a remote iCalUID onto the room's current uid format.

    Returns None when the uid lies outside the room's managed namespace
    (another room, or an event this system never created).
    """
    parts = _split(ical_uid or "")
    if parts is None:
        return None
    offer_id, host = parts
    if not offer_id.strip():
        return None
    if host == f"{room_id}.{domain}" or host == domain:
        return derive_uid(offer_id, room_id, domain)
    return None


def is_managed_uid(ical_uid: Optional[str], room_id: str, domain: str = DEFAULT_DOMAIN) -> bool:
    """Whether an iCalUID lies inside the room's managed namespace."""
    return canonical_uid(ical_uid, room_id, domain) is not None
