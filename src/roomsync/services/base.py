"""Base remote calendar service with retry and global rate limiting."""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Generic, List, Optional, TypeVar
import logging

from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt, wait_exponential,
)

from ..config import Settings
from ..models import LocalEvent, RemoteEvent, RoomConfig

logger = logging.getLogger(__name__)

T = TypeVar('T')


class CalendarServiceError(Exception):
    """Base exception for calendar service errors."""
    pass


class AuthenticationError(CalendarServiceError):
    """Authentication-related errors."""
    pass


class ApiErrorKind(str, Enum):
    """Classification of a failed remote call."""

    TRANSIENT = "transient"  # Rate limits, 5xx, network trouble: retried
    TERMINAL = "terminal"  # Permission denied, bad request: surfaced at once
    NOT_FOUND = "not_found"  # Target event does not exist


@dataclass(frozen=True)
class ApiError:
    """Failure of a remote call."""

    kind: ApiErrorKind
    message: str
    status: Optional[int] = None
    retry_after: Optional[float] = None

    @property
    def is_transient(self) -> bool:
        return self.kind == ApiErrorKind.TRANSIENT

    @property
    def is_rate_limit(self) -> bool:
        return self.status == 429 or self.retry_after is not None

    def __str__(self) -> str:
        status = f" (HTTP {self.status})" if self.status else ""
        return f"{self.kind.value}{status}: {self.message}"


@dataclass(frozen=True)
class ApiResult(Generic[T]):
    """Tagged result of a remote call: a value or an ApiError."""

    value: Optional[T] = None
    error: Optional[ApiError] = None

    @classmethod
    def success(cls, value: T = None) -> 'ApiResult[T]':
        return cls(value=value)

    @classmethod
    def failure(
        cls,
        kind: ApiErrorKind,
        message: str,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> 'ApiResult[T]':
        return cls(error=ApiError(kind, message, status, retry_after))

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def is_transient(self) -> bool:
        return self.error is not None and self.error.is_transient


class RateLimiter:
    """Request budget shared by every room worker of a service.

    Spaces request starts to ``requests_per_minute``, bounds in-flight requests,
    and holds everybody back after the service reports a rate limit.
    """

    def __init__(self, requests_per_minute: int, max_concurrent: int):
        self.interval = 60.0 / requests_per_minute
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._lock = asyncio.Lock()
        self._next_slot = 0.0
        self._blocked_until = 0.0

    @asynccontextmanager
    async def slot(self):
        """Wait for a request slot."""
        async with self._semaphore:
            loop = asyncio.get_running_loop()
            async with self._lock:
                now = loop.time()
                start = max(now, self._next_slot, self._blocked_until)
                self._next_slot = start + self.interval
            if start > now:
                await asyncio.sleep(start - now)
            yield

    def penalize(self, seconds: float) -> None:
        """Pause all new requests for ``seconds``."""
        until = asyncio.get_running_loop().time() + seconds
        self._blocked_until = max(self._blocked_until, until)


class BaseCalendarService(ABC):
    """Remote calendar adapter.

    Subclasses implement one attempt of each call and classify failures into an
    ApiResult; this class adds timeouts, global rate limiting and retries.
    """

    def __init__(self, settings: Settings, name: str):
        """Initialize calendar service.

        Args:
            settings: Application settings
            name: Service name used for logging
        """
        self.settings = settings
        self.name = name
        self.logger = logger.getChild(name)
        self._authenticated = False
        self.rate_limiter = RateLimiter(
            settings.rate_limit_requests_per_minute,
            settings.max_concurrent_requests,
        )

    @abstractmethod
    async def authenticate(self) -> None:
        """Authenticate with the calendar service.

        Raises:
            AuthenticationError: If authentication fails
        """
        pass

    @abstractmethod
    async def _list_events(self, calendar_id: str) -> ApiResult[List[RemoteEvent]]:
        """List all events of a calendar (one attempt)."""
        pass

    @abstractmethod
    async def _insert_event(self, calendar_id: str, event: LocalEvent) -> ApiResult[RemoteEvent]:
        """Insert an event (one attempt)."""
        pass

    @abstractmethod
    async def _update_event(
        self, calendar_id: str, remote_id: str, event: LocalEvent
    ) -> ApiResult[RemoteEvent]:
        """Overwrite an existing event (one attempt)."""
        pass

    @abstractmethod
    async def _delete_event(self, calendar_id: str, remote_id: str) -> ApiResult[None]:
        """Delete an event (one attempt)."""
        pass

    async def close(self) -> None:
        """Clean up resources."""
        pass

    async def list_events(self, room: RoomConfig) -> ApiResult[List[RemoteEvent]]:
        """Fetch the current remote snapshot for a room."""
        return await self._call(
            f"list {room.room_id}", lambda: self._list_events(room.calendar_id)
        )

    async def create_event(self, room: RoomConfig, event: LocalEvent) -> ApiResult[RemoteEvent]:
        """Create the remote copy of a local event."""
        return await self._call(
            f"create {event.uid}", lambda: self._insert_event(room.calendar_id, event)
        )

    async def update_event(
        self, room: RoomConfig, remote_id: str, event: LocalEvent
    ) -> ApiResult[RemoteEvent]:
        """Rewrite a remote event from its local version."""
        return await self._call(
            f"update {remote_id}", lambda: self._update_event(room.calendar_id, remote_id, event)
        )

    async def delete_event(self, room: RoomConfig, remote_id: str) -> ApiResult[None]:
        """Delete a remote event; an already-absent event counts as deleted."""
        result = await self._call(
            f"delete {remote_id}", lambda: self._delete_event(room.calendar_id, remote_id)
        )
        if result.error is not None and result.error.kind == ApiErrorKind.NOT_FOUND:
            self.logger.info(f"Event {remote_id} already absent from {room.room_id}")
            return ApiResult.success(None)
        return result

    async def _call(
        self, operation: str, request: Callable[[], Awaitable[ApiResult[T]]]
    ) -> ApiResult[T]:
        """Run a request with rate limiting, per-attempt timeout and retries.

        Transient failures are retried with exponential backoff; once the
        attempts are exhausted the last failed result is returned.
        """
        self._ensure_authenticated()
        config = self.settings.sync_config

        def _give_up(state: RetryCallState) -> ApiResult[T]:
            result = state.outcome.result()
            self.logger.error(
                f"{operation} failed after {state.attempt_number} attempts: {result.error}"
            )
            return result

        def _before_sleep(state: RetryCallState) -> None:
            result = state.outcome.result()
            self.logger.warning(
                f"{operation} attempt {state.attempt_number} failed ({result.error}), retrying"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(config.retry_attempts),
            wait=wait_exponential(
                multiplier=config.retry_backoff_seconds,
                max=config.retry_max_backoff_seconds,
            ),
            retry=retry_if_result(lambda r: r.is_transient),
            before_sleep=_before_sleep,
            retry_error_callback=_give_up,
        )
        return await retrying(self._attempt, operation, request)

    async def _attempt(
        self, operation: str, request: Callable[[], Awaitable[ApiResult[T]]]
    ) -> ApiResult[T]:
        async with self.rate_limiter.slot():
            try:
                result = await asyncio.wait_for(
                    request(), timeout=self.settings.request_timeout_seconds
                )
            except asyncio.TimeoutError:
                return ApiResult.failure(
                    ApiErrorKind.TRANSIENT,
                    f"{operation} timed out after {self.settings.request_timeout_seconds}s",
                )
        if result.error is not None and result.error.is_rate_limit:
            pause = result.error.retry_after or _default_pause(self.settings)
            self.logger.warning(f"Rate limited during {operation}, pausing requests for {pause:.1f}s")
            self.rate_limiter.penalize(pause)
        return result

    def _ensure_authenticated(self):
        """Ensure the service is authenticated.

        Raises:
            AuthenticationError: If not authenticated
        """
        if not self._authenticated:
            raise AuthenticationError("Service not authenticated")


def _default_pause(settings: Settings) -> float:
    """Default pause after a rate-limit response without Retry-After."""
    return max(settings.sync_config.retry_backoff_seconds, 60.0 / settings.rate_limit_requests_per_minute)
