"""Async HTTP client for the practice backend REST API.

Provides PracticeApiClient covering the request/response contracts the
session core consumes: contextual help generation, help settings
read/write, help usage tracking, and speaking assessment submission.
All methods are async and log with structlog.

Idempotent settings calls are retried with tenacity (exponential backoff)
on connection failures and timeouts. Help generation and assessment
submission are never retried here: a timeout there is surfaced to the
caller, which owns the retry decision.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from src.practice.api.errors import (
    ApiError,
    NoHelpAvailable,
    RequestTimeout,
    UsageLimitExceeded,
    ValidationFailed,
)
from src.practice.config import Settings, get_settings
from src.practice.session.schemas import (
    AssessmentRequest,
    AssessmentResult,
    HelpContent,
    HelpRequest,
    HelpSettings,
)

logger = structlog.get_logger(__name__)

_TRANSIENT_ERRORS = (httpx.ConnectError, httpx.TimeoutException)

# Statuses the backend uses when a plan quota blocks an assessment. The
# status alone is not enough: 429 is also a plain rate limit.
_USAGE_LIMIT_STATUSES = frozenset({402, 403, 429})
_USAGE_LIMIT_CODES = frozenset({"usage_limit_exceeded", "limit_reached", "subscription_limit"})
_USAGE_LIMIT_PHRASES = (
    "usage limit",
    "assessment limit",
    "limit reached",
    "limit exceeded",
    "upgrade",
)


def _decode_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text or None


def _body_text(body: Any) -> str:
    """Flatten the human-readable parts of an error body for inspection."""
    if body is None:
        return ""
    if isinstance(body, str):
        return body
    if isinstance(body, dict):
        parts = [
            _body_text(body.get(key))
            for key in ("detail", "message", "error", "code")
            if body.get(key) is not None
        ]
        return " ".join(parts)
    if isinstance(body, list):
        return " ".join(_body_text(item) for item in body)
    return str(body)


def is_usage_limit_response(status_code: int, body: Any) -> bool:
    """Decide whether an error response means the usage quota is exhausted.

    A machine-readable code (``code``/``error`` in the body) matches on any
    status. Otherwise the status must be one of the quota statuses AND the
    body must say so in words.

    Args:
        status_code: HTTP status of the failed response.
        body: Decoded response body.

    Returns:
        True if the response is a usage-limit rejection.
    """
    if isinstance(body, dict):
        detail = body.get("detail")
        candidates = [body.get("code"), body.get("error")]
        if isinstance(detail, dict):
            candidates.extend([detail.get("code"), detail.get("error")])
        for code in candidates:
            if isinstance(code, str) and code.lower() in _USAGE_LIMIT_CODES:
                return True

    if status_code not in _USAGE_LIMIT_STATUSES:
        return False
    text = _body_text(body).lower()
    return any(phrase in text for phrase in _USAGE_LIMIT_PHRASES)


class PracticeApiClient:
    """Async client for the practice backend.

    Uses a fresh httpx.AsyncClient per call with timeouts per operation
    type. The identity token is passed per call; ``None`` means a guest.

    Args:
        base_url: Backend base URL. Defaults to settings.API_BASE_URL.
        settings: Settings instance. Defaults to get_settings().
        retry_wait: Tenacity wait strategy for retried calls.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        settings: Settings | None = None,
        retry_wait: wait_base | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._base_url = (base_url or self._settings.API_BASE_URL).rstrip("/")
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)

    def _headers(self, token: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _client(self, timeout: float, token: str | None) -> httpx.AsyncClient:
        """Create a new httpx client with specified timeout and auth."""
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers(token),
            timeout=timeout,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self._settings.API_MAX_RETRIES)),
            wait=self._retry_wait,
            retry=retry_if_exception_type(_TRANSIENT_ERRORS),
            reraise=True,
        )

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str) -> None:
        if response.is_success:
            return
        body = _decode_body(response)
        detail = body.get("detail") if isinstance(body, dict) else body
        message = f"{operation} failed with status {response.status_code}"
        if response.status_code == 422:
            raise ValidationFailed(
                message, status_code=422, detail=detail, body=body
            )
        raise ApiError(
            message, status_code=response.status_code, detail=detail, body=body
        )

    # ── Contextual help ──────────────────────────────────────────────────

    async def generate_help(
        self, request: HelpRequest, token: str | None = None
    ) -> HelpContent:
        """Generate contextual help for a completed AI utterance.

        POST /api/conversation-help/generate.

        Args:
            request: Help request body.
            token: Identity token, if signed in.

        Returns:
            Generated HelpContent.

        Raises:
            NoHelpAvailable: Backend answered 204 (no help for this turn).
            RequestTimeout: Generation exceeded HELP_GENERATION_TIMEOUT.
            ValidationFailed: Backend rejected the body (422).
            ApiError: Any other failure.
        """
        try:
            async with self._client(self._settings.HELP_GENERATION_TIMEOUT, token) as client:
                response = await client.post(
                    "/api/conversation-help/generate",
                    json=request.model_dump(exclude_none=True),
                )
        except httpx.TimeoutException as exc:
            raise RequestTimeout(f"help generation timeout: {exc}") from exc
        except httpx.RequestError as exc:
            raise ApiError(f"help generation request error: {exc}") from exc

        if response.status_code == 204:
            raise NoHelpAvailable("no contextual help available", status_code=204)
        self._raise_for_status(response, "help generation")

        content = HelpContent.model_validate(response.json())
        logger.debug(
            "api.help_generated",
            suggestions=len(content.suggested_responses),
            vocabulary=len(content.vocabulary_highlights),
        )
        return content

    async def get_help_settings(self, token: str) -> HelpSettings:
        """Fetch persisted help settings.

        GET /api/conversation-help/settings, retried on transient errors.
        """
        try:
            async for attempt in self._retrying():
                with attempt:
                    async with self._client(self._settings.API_TIMEOUT_READ, token) as client:
                        response = await client.get("/api/conversation-help/settings")
        except httpx.TimeoutException as exc:
            raise RequestTimeout(f"settings read timeout: {exc}") from exc
        except httpx.RequestError as exc:
            raise ApiError(f"settings read request error: {exc}") from exc

        self._raise_for_status(response, "settings read")
        return HelpSettings.model_validate(response.json())

    async def update_help_settings(self, token: str, changes: dict[str, Any]) -> None:
        """Persist a partial settings update.

        PUT /api/conversation-help/settings, retried on transient errors.
        """
        try:
            async for attempt in self._retrying():
                with attempt:
                    async with self._client(self._settings.API_TIMEOUT_MUTATE, token) as client:
                        response = await client.put(
                            "/api/conversation-help/settings", json=changes
                        )
        except httpx.TimeoutException as exc:
            raise RequestTimeout(f"settings update timeout: {exc}") from exc
        except httpx.RequestError as exc:
            raise ApiError(f"settings update request error: {exc}") from exc

        self._raise_for_status(response, "settings update")
        logger.info("api.settings_updated", fields=sorted(changes))

    async def track_help_usage(
        self, help_type: str, language: str, token: str | None = None
    ) -> None:
        """Record a help analytics event.

        POST /api/conversation-help/track-usage. Callers treat this as
        fire-and-forget; errors are raised here and swallowed upstream.
        """
        try:
            async with self._client(self._settings.API_TIMEOUT_READ, token) as client:
                response = await client.post(
                    "/api/conversation-help/track-usage",
                    json={"help_type": help_type, "language": language},
                )
        except httpx.RequestError as exc:
            raise ApiError(f"usage tracking request error: {exc}") from exc
        self._raise_for_status(response, "usage tracking")

    # ── Speaking assessment ──────────────────────────────────────────────

    async def assess_speaking(
        self, request: AssessmentRequest, token: str | None = None
    ) -> AssessmentResult:
        """Submit a recording for speaking assessment.

        POST /api/speaking/assess. Not retried: every submission counts
        against the user's assessment quota.

        Raises:
            UsageLimitExceeded: Quota exhausted (status and body inspected).
            RequestTimeout: Upload or scoring exceeded ASSESSMENT_TIMEOUT.
            ValidationFailed: Backend rejected the body (422).
            ApiError: Any other failure.
        """
        try:
            async with self._client(self._settings.ASSESSMENT_TIMEOUT, token) as client:
                response = await client.post(
                    "/api/speaking/assess", json=request.model_dump()
                )
        except httpx.TimeoutException as exc:
            raise RequestTimeout(f"assessment timeout: {exc}") from exc
        except httpx.RequestError as exc:
            raise ApiError(f"assessment request error: {exc}") from exc

        if not response.is_success:
            body = _decode_body(response)
            if is_usage_limit_response(response.status_code, body):
                detail = body.get("detail") if isinstance(body, dict) else body
                raise UsageLimitExceeded(
                    _body_text(body) or "assessment usage limit reached",
                    status_code=response.status_code,
                    detail=detail,
                    body=body,
                )
        self._raise_for_status(response, "speaking assessment")

        result = AssessmentResult.model_validate(response.json())
        logger.info(
            "api.assessment_received",
            language=request.language,
            duration=request.duration,
            recommended_level=result.recommended_level,
        )
        return result
