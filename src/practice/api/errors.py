"""Typed failures raised by the practice API client.

The session components never inspect raw HTTP responses; they branch on
these exception types instead:

- NoHelpAvailable: soft-empty help outcome (HTTP 204), not an error
- RequestTimeout: retryable timeout
- ValidationFailed: HTTP 422 with per-field details
- UsageLimitExceeded: terminal for the current assessment attempt

RecordingStateError is not an API failure: it marks an illegal call on
the recording controller.
"""

from __future__ import annotations

from typing import Any


class ApiError(Exception):
    """A failed call to the practice backend.

    Args:
        message: Human-readable summary.
        status_code: HTTP status, if a response was received.
        detail: ``detail`` field of the error body, if any.
        body: Decoded response body, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        detail: Any = None,
        body: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail
        self.body = body


class NoHelpAvailable(ApiError):
    """The backend has no contextual help for this AI turn."""


class RequestTimeout(ApiError):
    """The request did not complete within its timeout."""


class ValidationFailed(ApiError):
    """The backend rejected the request body (HTTP 422)."""

    @property
    def field_errors(self) -> list[dict[str, Any]]:
        if isinstance(self.detail, list):
            return [item for item in self.detail if isinstance(item, dict)]
        return []


class UsageLimitExceeded(ApiError):
    """The user's plan does not allow another assessment."""


class RecordingStateError(RuntimeError):
    """A recording controller operation was called in a phase that does not allow it."""
