"""Remote calendar service implementations."""

from .base import (
    ApiError, ApiErrorKind, ApiResult, AuthenticationError, BaseCalendarService,
    CalendarServiceError, RateLimiter,
)
from .google import GoogleCalendarService

__all__ = [
    'ApiError',
    'ApiErrorKind',
    'ApiResult',
    'AuthenticationError',
    'BaseCalendarService',
    'CalendarServiceError',
    'GoogleCalendarService',
    'RateLimiter',
]
