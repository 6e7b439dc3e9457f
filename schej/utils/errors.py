"""Centralized exception classes for the availability engine."""

from __future__ import annotations

from typing import Any

from fastapi import status


class CalendarEngineError(RuntimeError):
    """Base error for calendar integration and aggregation issues."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


# Caller errors
class InvalidWindowError(CalendarEngineError):
    """Raised when a time window does not satisfy time_min < time_max."""

    status_code = status.HTTP_400_BAD_REQUEST


class UnknownProviderTypeError(CalendarEngineError):
    """Raised when an account names a calendar type with no adapter."""

    def __init__(self, calendar_type: Any) -> None:
        super().__init__(f"Unknown calendar provider type: {calendar_type!r}")
        self.calendar_type = calendar_type


# Provider errors
class AuthExpiredError(CalendarEngineError):
    """Raised when a credential is invalid and cannot be refreshed.

    The account must be re-authorized out-of-band.
    """

    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str, *, account_id: str | None = None) -> None:
        super().__init__(message)
        self.account_id = account_id


class ProviderUnavailableError(CalendarEngineError):
    """Raised on network failures, timeouts, or 5xx responses after retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class MalformedResponseError(CalendarEngineError):
    """Raised when a provider payload cannot be decoded."""

    status_code = status.HTTP_502_BAD_GATEWAY


class ProviderRequestError(CalendarEngineError):
    """Raised when a provider API returns an error status."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        payload: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.response_status = status_code
        self.payload = payload


# Aggregation control flow
class AggregationCancelledError(CalendarEngineError):
    """Raised when the caller cancels an aggregation in progress."""

    # nginx-style "client closed request"
    status_code = 499


# Persistence boundary
class CredentialStoreError(CalendarEngineError):
    """Raised when the credential store cannot read or write a bundle."""
