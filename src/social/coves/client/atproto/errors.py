"""
Error taxonomy for the Coves client.

Every failure that leaves the network layer is one of the ``ApiError``
subclasses below. Stores catch them, keep a user-facing message in their
state, and never let them escape into the UI unless the caller asked for the
exception (mutations re-raise after rolling back).
"""

import asyncio
from typing import Any, Optional

import aiohttp


class ApiError(Exception):
    """Base class for errors raised while talking to the backend."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.original_error = original_error

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.message} (status {self.status_code})"
        return self.message


class NetworkError(ApiError):
    """Connection failures and timeouts."""


class AuthenticationError(ApiError):
    """The backend rejected our credentials (HTTP 401)."""


class NotFoundError(ApiError):
    """HTTP 404."""


class ValidationError(ApiError):
    """HTTP 400/422, or input rejected locally before a request was made."""


class ServerError(ApiError):
    """HTTP 5xx."""


class UnknownError(ApiError):
    """Anything else, including payloads we could not parse."""


class RefreshFailed(ApiError):
    """
    A token refresh did not produce a new session.

    The static constructors carry stable error codes so log lines can be
    matched to the failure site.
    """

    @staticmethod
    def no_session() -> "NoSessionError":
        return NoSessionError("error-coves-client-1000 No session to refresh")

    @staticmethod
    def missing_token() -> "RefreshFailed":
        return RefreshFailed(
            "error-coves-client-1001 Invalid refresh response: missing sealed_token",
            status_code=200,
        )

    @staticmethod
    def unexpected_status(status: int) -> "RefreshFailed":
        return RefreshFailed(
            f"error-coves-client-1002 Token refresh failed with status {status}",
            status_code=status,
        )

    @staticmethod
    def transport(error: BaseException) -> "RefreshFailed":
        return RefreshFailed(
            f"error-coves-client-1003 Token refresh failed: {error}",
            original_error=error,
        )

    @staticmethod
    def session_expired() -> "SessionExpired":
        return SessionExpired(
            "error-coves-client-1004 Session expired", status_code=401
        )


class SessionExpired(RefreshFailed):
    """The refresh endpoint answered 401; the user has to sign in again."""


class NoSessionError(RefreshFailed):
    """A refresh was requested while signed out."""


def _body_message(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        for key in ("message", "error"):
            value = body.get(key)
            if isinstance(value, str) and len(value) > 0:
                return value
    elif isinstance(body, str) and len(body) > 0:
        return body[:200]
    return None


def error_for_status(status: int, body: Any = None) -> ApiError:
    """Build the taxonomy error for a non-2xx response."""
    message = _body_message(body)

    if status == 401:
        return AuthenticationError(message or "Authentication required", status)
    if status == 404:
        return NotFoundError(message or "Not found", status)
    if status in (400, 422):
        return ValidationError(message or "Invalid request", status)
    if status >= 500:
        return ServerError(message or "Server error", status)
    return UnknownError(message or f"Request failed with status {status}", status)


def error_for_exception(error: BaseException) -> ApiError:
    """Translate a transport exception into the taxonomy."""
    if isinstance(error, ApiError):
        return error
    if isinstance(error, asyncio.TimeoutError):
        return NetworkError("Request timed out", original_error=error)
    if isinstance(error, aiohttp.ClientError):
        return NetworkError(f"Connection failed: {error}", original_error=error)
    return UnknownError(f"Unexpected error: {error}", original_error=error)


def friendly_message(error: BaseException) -> str:
    """Short message suitable for showing to a user."""
    if isinstance(error, NetworkError):
        if isinstance(error.original_error, asyncio.TimeoutError):
            return "Request timed out. Please try again"
        return "Please check your internet connection"
    if isinstance(error, (AuthenticationError, SessionExpired)):
        return "Authentication failed. Please sign in again"
    if isinstance(error, NotFoundError):
        return "Content not found"
    if isinstance(error, ValidationError):
        return error.message
    if isinstance(error, ServerError):
        return "Server error. Please try again later"
    return "Something went wrong. Please try again"
