"""Google Calendar service implementation with async support."""

import asyncio
import json
import socket
from typing import Any, Dict, List, Optional

import google_auth_httplib2
import httplib2
import pytz
from dateutil.parser import isoparse
from google.oauth2 import service_account
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .base import ApiErrorKind, ApiResult, AuthenticationError, BaseCalendarService
from ..config import Settings
from ..models import LocalEvent, RemoteEvent

TRANSIENT_STATUSES = {429, 500, 502, 503, 504}
RATE_LIMIT_REASONS = {'rateLimitExceeded', 'userRateLimitExceeded'}
NOT_FOUND_STATUSES = {404, 410}
PAGE_SIZE = 2500


def _error_reason(error: HttpError) -> Optional[str]:
    """First 'reason' from a Google API error body."""
    try:
        body = json.loads(error.content.decode('utf-8'))
        errors = body.get('error', {}).get('errors') or []
        return errors[0].get('reason') if errors else None
    except (ValueError, AttributeError, UnicodeDecodeError):
        return None


def _retry_after(error: HttpError) -> Optional[float]:
    value = error.resp.get('retry-after') if error.resp is not None else None
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def classify_http_error(error: HttpError, operation: str) -> ApiResult:
    """Translate a Google HttpError into a tagged failure."""
    status = error.resp.status if error.resp is not None else None
    reason = _error_reason(error)
    message = f"{operation}: {reason or error}"

    if status in NOT_FOUND_STATUSES:
        return ApiResult.failure(ApiErrorKind.NOT_FOUND, message, status)
    if status in TRANSIENT_STATUSES:
        return ApiResult.failure(ApiErrorKind.TRANSIENT, message, status, _retry_after(error))
    if status == 403 and reason in RATE_LIMIT_REASONS:
        return ApiResult.failure(
            ApiErrorKind.TRANSIENT, message, status, _retry_after(error) or 1.0
        )
    return ApiResult.failure(ApiErrorKind.TERMINAL, message, status)


def _parse_google_time(value: Dict[str, Any]):
    if 'dateTime' in value:
        return isoparse(value['dateTime'])
    # All-day event: midnight UTC
    return isoparse(value['date']).replace(tzinfo=pytz.UTC)


class GoogleCalendarService(BaseCalendarService):
    """Google Calendar v3 adapter."""

    def __init__(self, settings: Settings):
        """Initialize Google Calendar service.

        Args:
            settings: Application settings
        """
        super().__init__(settings, "google")
        self.service = None
        self.credentials = None

    async def authenticate(self) -> None:
        """Load credentials and build the Calendar API client."""
        try:
            if self.settings.google_token_file:
                creds = Credentials.from_authorized_user_file(
                    str(self.settings.google_token_file),
                    self.settings.google_scopes
                )
            else:
                creds = service_account.Credentials.from_service_account_file(
                    str(self.settings.google_service_account_file),
                    scopes=self.settings.google_scopes
                )
            self.credentials = creds
            self.service = build(
                'calendar', 'v3', http=self._authorized_http(), cache_discovery=False
            )
            self._authenticated = True
            self.logger.info("Successfully authenticated with Google Calendar")
        except (OSError, ValueError) as e:
            raise AuthenticationError(f"Google Calendar authentication failed: {e}")

    def _authorized_http(self):
        # httplib2.Http is not thread-safe; every request gets its own
        return google_auth_httplib2.AuthorizedHttp(
            self.credentials,
            http=httplib2.Http(timeout=self.settings.request_timeout_seconds)
        )

    async def _execute(self, request, operation: str) -> ApiResult:
        """Execute a googleapiclient request in a worker thread."""
        try:
            response = await asyncio.get_running_loop().run_in_executor(
                None, lambda: request.execute(http=self._authorized_http())
            )
            return ApiResult.success(response)
        except HttpError as e:
            return classify_http_error(e, operation)
        except (socket.timeout, OSError, httplib2.HttpLib2Error) as e:
            # Network trouble: timeouts, resets, DNS failures
            return ApiResult.failure(ApiErrorKind.TRANSIENT, f"{operation}: {e}")

    async def _list_events(self, calendar_id: str) -> ApiResult[List[RemoteEvent]]:
        events: List[RemoteEvent] = []
        page_token = None
        while True:
            params = {'calendarId': calendar_id, 'maxResults': PAGE_SIZE}
            if page_token:
                params['pageToken'] = page_token
            result = await self._execute(
                self.service.events().list(**params), f"list {calendar_id}"
            )
            if not result.ok:
                return result
            for item in result.value.get('items', []):
                if item.get('status') == 'cancelled':
                    continue
                try:
                    events.append(self._format_google_event(item))
                except (KeyError, ValueError) as e:
                    self.logger.warning(f"Failed to format Google event {item.get('id')}: {e}")
            page_token = result.value.get('nextPageToken')
            if not page_token:
                return ApiResult.success(events)

    async def _insert_event(self, calendar_id: str, event: LocalEvent) -> ApiResult[RemoteEvent]:
        body = self._convert_to_google_format(event, include_uid=True)
        result = await self._execute(
            self.service.events().insert(calendarId=calendar_id, body=body),
            f"insert {event.uid}"
        )
        if result.ok:
            return ApiResult.success(self._format_google_event(result.value))
        if result.error.status == 409:
            # The iCalUID is taken: an earlier insert committed, or a deleted copy remains
            return await self._recover_existing(calendar_id, event, result)
        return result

    async def _recover_existing(
        self, calendar_id: str, event: LocalEvent, original: ApiResult
    ) -> ApiResult[RemoteEvent]:
        """Resolve an insert conflict by adopting the event holding the iCalUID.

        Deleted events keep their iCalUID, so a cancelled copy is patched
        back to confirmed with the local fields.
        """
        self.logger.info(f"Event {event.uid} already exists, looking it up by iCalUID")
        result = await self._execute(
            self.service.events().list(
                calendarId=calendar_id, iCalUID=event.uid, showDeleted=True
            ),
            f"lookup {event.uid}"
        )
        if not result.ok:
            return result
        items = result.value.get('items', [])
        if not items:
            return original

        live = [i for i in items if i.get('status') != 'cancelled']
        if live:
            return ApiResult.success(self._format_google_event(live[0]))

        remote_id = items[0]['id']
        self.logger.info(f"Restoring deleted event {remote_id} for {event.uid}")
        return await self._update_event(calendar_id, remote_id, event)

    async def _update_event(
        self, calendar_id: str, remote_id: str, event: LocalEvent
    ) -> ApiResult[RemoteEvent]:
        # iCalUID is immutable and must not be sent on update
        body = self._convert_to_google_format(event, include_uid=False)
        result = await self._execute(
            self.service.events().patch(calendarId=calendar_id, eventId=remote_id, body=body),
            f"update {remote_id}"
        )
        if not result.ok:
            return result
        return ApiResult.success(self._format_google_event(result.value))

    async def _delete_event(self, calendar_id: str, remote_id: str) -> ApiResult[None]:
        result = await self._execute(
            self.service.events().delete(calendarId=calendar_id, eventId=remote_id),
            f"delete {remote_id}"
        )
        if not result.ok:
            return result
        return ApiResult.success(None)

    def _format_google_event(self, event_data: Dict[str, Any]) -> RemoteEvent:
        """Convert a Google Calendar event to a RemoteEvent."""
        return RemoteEvent(
            remote_id=event_data['id'],
            ical_uid=event_data.get('iCalUID'),
            title=event_data.get('summary', ''),
            description=event_data.get('description'),
            location=event_data.get('location'),
            start=_parse_google_time(event_data['start']),
            end=_parse_google_time(event_data['end']),
            status=event_data.get('status'),
        )

    def _convert_to_google_format(self, event: LocalEvent, include_uid: bool) -> Dict[str, Any]:
        """Convert a local event to a Google Calendar request body.

        Attendees are not added as Google attendees (a service account cannot
        invite without domain-wide delegation); the RSVPs go into the
        description and the private extended properties instead.
        """
        google_event = {
            'summary': event.remote_title,
            'description': event.remote_description,
            'location': event.remote_location,
            'start': {
                'dateTime': event.start.astimezone(pytz.UTC).isoformat(),
                'timeZone': 'UTC',
            },
            'end': {
                'dateTime': event.end.astimezone(pytz.UTC).isoformat(),
                'timeZone': 'UTC',
            },
            'status': 'confirmed',
            'extendedProperties': {
                'private': {
                    'osvOfferId': event.offer_id,
                    'osvRoom': event.room_id,
                    'osvMinRsvps': str(event.min_rsvps),
                    'osvStatus': event.status.value,
                    'osvAttendeeCount': str(len(event.attendees)),
                    'osvAttendeeNpubs': ','.join(a.npub for a in event.attendees),
                },
            },
        }
        if include_uid:
            google_event['iCalUID'] = event.uid
        return google_event
