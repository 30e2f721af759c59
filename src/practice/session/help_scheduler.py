"""Contextual help scheduling for live conversation practice.

Provides ContextualHelpScheduler, which decides when to ask the backend
for contextual help (suggested replies, vocabulary, grammar, culture)
after each completed AI utterance, and tracks the request lifecycle.

Scheduling rules, in order:
1. Skip when help is disabled or the utterance is empty.
2. Session-end guard: skip when fewer than 10 seconds of the session
   remain, since generation cannot finish before the session ends.
3. Debounce: only the most recent completion within 500ms survives.
4. Dedup: an utterance that already produced help is answered from the
   held content without a network call.

Help state is reset whenever the user starts a new turn so stale help is
never shown against new user speech. Results of requests that were
in flight across a reset or teardown are dropped.

Settings and analytics are best-effort: failures are logged, never raised.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine, Sequence
from typing import TYPE_CHECKING, Any

import structlog

from src.practice.api.errors import NoHelpAvailable, RequestTimeout, ValidationFailed
from src.practice.config import get_settings
from src.practice.core.monitoring import help_skipped_total, track_help_generation
from src.practice.core.timers import Clock, LoopClock, SingleShotTimer
from src.practice.session.schemas import (
    ConversationMessage,
    HelpContent,
    HelpErrorKind,
    HelpRequest,
    HelpRequestState,
    HelpSettings,
    HelpUsageKind,
)

if TYPE_CHECKING:
    from src.practice.api.client import PracticeApiClient

logger = structlog.get_logger(__name__)

HELP_TIMEOUT_MESSAGE = "Help generation timeout - please try again"
HELP_GENERIC_MESSAGE = "Failed to generate help content"

HistoryItem = ConversationMessage | dict[str, Any]


class DebounceSlot:
    """Pending generation plus the dedup key of the last processed utterance.

    Replace-not-stack: scheduling always cancels the previous pending
    generation, so at most one is ever waiting to fire.
    """

    def __init__(self, timer: SingleShotTimer) -> None:
        self._timer = timer
        self.last_key = ""

    @property
    def pending(self) -> bool:
        return self._timer.pending

    def replace(self, delay: float, callback: Callable[[], None]) -> None:
        self._timer.schedule(delay, callback)

    def cancel(self) -> bool:
        return self._timer.cancel()

    def is_duplicate(self, key: str) -> bool:
        return bool(key) and key == self.last_key

    def clear(self) -> None:
        self._timer.cancel()
        self.last_key = ""


def _to_context(history: Sequence[HistoryItem]) -> list[dict[str, str]]:
    context: list[dict[str, str]] = []
    for item in history:
        if isinstance(item, ConversationMessage):
            context.append({"role": item.role, "content": item.content})
        else:
            context.append({"role": str(item["role"]), "content": str(item["content"])})
    return context


class ContextualHelpScheduler:
    """Schedules, deduplicates, and tracks contextual help generation.

    Args:
        api_client: PracticeApiClient used for help, settings and analytics.
        target_language: Language being practised.
        proficiency_level: Learner level sent with each request (e.g. "B1").
        topic: Optional conversation topic.
        enabled: Caller-supplied enablement. Always wins over the persisted
            ``help_enabled`` preference; only the call site knows whether
            help is appropriate (guest sessions force it on).
        clock: Clock for the debounce timer. Defaults to the running loop.
        debounce_seconds: Override for HELP_DEBOUNCE_SECONDS.
        session_end_guard_seconds: Override for HELP_SESSION_END_GUARD_SECONDS.
    """

    def __init__(
        self,
        api_client: PracticeApiClient,
        *,
        target_language: str,
        proficiency_level: str,
        topic: str | None = None,
        enabled: bool = True,
        clock: Clock | None = None,
        debounce_seconds: float | None = None,
        session_end_guard_seconds: float | None = None,
    ) -> None:
        config = get_settings()
        self._api = api_client
        self._target_language = target_language
        self._proficiency_level = proficiency_level
        self._topic = topic
        self._enabled_override = enabled
        self._clock = clock or LoopClock()
        self._debounce_seconds = (
            config.HELP_DEBOUNCE_SECONDS if debounce_seconds is None else debounce_seconds
        )
        self._session_end_guard = (
            config.HELP_SESSION_END_GUARD_SECONDS
            if session_end_guard_seconds is None
            else session_end_guard_seconds
        )
        self._default_language = config.HELP_DEFAULT_LANGUAGE

        self._settings = HelpSettings(
            help_enabled=enabled, help_language=self._default_language
        )
        self._state = HelpRequestState()
        self._slot = DebounceSlot(SingleShotTimer(self._clock, "help.debounce"))
        self._identity: str | None = None

        # Bumped by reset()/aclose(); results started under an older epoch are dropped
        self._epoch = 0
        self._closed = False
        self._tasks: set[asyncio.Task[Any]] = set()

    # ── Projections ──────────────────────────────────────────────────────

    @property
    def settings(self) -> HelpSettings:
        return self._settings

    @property
    def state(self) -> HelpRequestState:
        return self._state.model_copy(
            update={"last_processed_utterance": self._slot.last_key}
        )

    @property
    def is_pending(self) -> bool:
        """True while a debounced generation is waiting to fire."""
        return self._slot.pending

    # ── Settings ─────────────────────────────────────────────────────────

    async def load_settings(self, identity: str | None = None) -> HelpSettings:
        """Load persisted preferences and merge in the caller override.

        Args:
            identity: Identity token of the signed-in user; None for guests.

        Returns:
            The effective settings.
        """
        self._identity = identity
        if not identity:
            self._settings = HelpSettings(
                help_enabled=self._enabled_override,
                help_language=self._default_language,
            )
            logger.info("help.settings_guest_defaults", help_enabled=self._enabled_override)
            return self._settings

        try:
            stored = await self._api.get_help_settings(identity)
        except Exception:
            logger.warning(
                "help.settings_load_failed",
                help_enabled=self._enabled_override,
                exc_info=True,
            )
            self._settings = HelpSettings(
                help_enabled=self._enabled_override,
                help_language=self._default_language,
            )
            return self._settings

        self._settings = stored.model_copy(
            update={
                "help_enabled": self._enabled_override,
                "help_language": stored.help_language or self._default_language,
            }
        )
        logger.info(
            "help.settings_loaded",
            help_enabled=self._settings.help_enabled,
            stored_help_enabled=stored.help_enabled,
            help_language=self._settings.help_language,
        )
        return self._settings

    async def update_settings(self, changes: dict[str, Any]) -> HelpSettings:
        """Apply a partial settings update locally, then persist it.

        The local change is kept even if persisting fails.

        Args:
            changes: Field name to new value.

        Returns:
            The updated local settings.
        """
        unknown = set(changes) - set(HelpSettings.model_fields)
        if unknown:
            raise ValueError(f"Unknown help settings: {sorted(unknown)}")

        self._settings = self._settings.model_copy(update=changes)

        if not self._identity:
            logger.info("help.settings_updated_locally", fields=sorted(changes))
            return self._settings

        try:
            await self._api.update_help_settings(self._identity, changes)
        except Exception:
            logger.warning(
                "help.settings_persist_failed", fields=sorted(changes), exc_info=True
            )
            return self._settings

        await self.track_usage(HelpUsageKind.SETTINGS_UPDATED)
        return self._settings

    # ── Scheduling ───────────────────────────────────────────────────────

    def on_ai_utterance_complete(
        self,
        text: str,
        history: Sequence[HistoryItem],
        elapsed_seconds: float | None = None,
        total_duration_seconds: float | None = None,
    ) -> bool:
        """Entry point invoked once per completed AI turn.

        Args:
            text: The AI utterance just completed.
            history: Recent conversation messages sent as context.
            elapsed_seconds: Seconds elapsed in the session, if known.
            total_duration_seconds: Total session length, if known.

        Returns:
            True if a generation was scheduled.
        """
        if self._closed:
            return False
        if not self._settings.help_enabled:
            help_skipped_total.labels(reason="disabled").inc()
            logger.debug("help.skipped_disabled")
            return False
        if not text:
            help_skipped_total.labels(reason="empty").inc()
            return False

        if elapsed_seconds is not None and total_duration_seconds is not None:
            remaining = total_duration_seconds - elapsed_seconds
            if remaining < self._session_end_guard:
                help_skipped_total.labels(reason="session_end").inc()
                logger.info(
                    "help.skipped_session_end",
                    remaining_seconds=remaining,
                    guard_seconds=self._session_end_guard,
                )
                return False

        snapshot = list(history)

        def _fire() -> None:
            self._spawn(self.generate_help_content(text, snapshot))

        self._slot.replace(self._debounce_seconds, _fire)
        logger.debug(
            "help.scheduled",
            delay_seconds=self._debounce_seconds,
            text_length=len(text),
        )
        return True

    async def generate_help_content(
        self, text: str, history: Sequence[HistoryItem]
    ) -> HelpContent | None:
        """Generate help for ``text``, reusing held content for a repeat.

        Args:
            text: The AI utterance.
            history: Conversation context messages.

        Returns:
            The help content, or None when disabled, unavailable, failed,
            or superseded by a reset.
        """
        if self._closed or not self._settings.help_enabled:
            return None

        if self._slot.is_duplicate(text):
            help_skipped_total.labels(reason="duplicate").inc()
            logger.debug("help.duplicate_utterance")
            return self._state.content

        epoch = self._epoch
        self._state = self._state.model_copy(
            update={"loading": True, "ready": False, "error": None, "error_kind": None}
        )

        request = HelpRequest(
            ai_response=text,
            conversation_context=_to_context(history),
            target_language=self._target_language,
            user_language=self._settings.help_language or self._default_language,
            proficiency_level=self._proficiency_level,
            topic=self._topic or None,
        )

        try:
            async with track_help_generation(self._target_language) as tracker:
                try:
                    content = await self._api.generate_help(request, self._identity)
                except NoHelpAvailable:
                    tracker["outcome"] = "no_content"
                    raise
                except RequestTimeout:
                    tracker["outcome"] = "timeout"
                    raise
                except ValidationFailed:
                    tracker["outcome"] = "validation"
                    raise
        except NoHelpAvailable:
            if self._is_stale(epoch):
                return None
            logger.info("help.no_content")
            self._state = self._state.model_copy(
                update={"loading": False, "ready": False, "content": None}
            )
            return None
        except RequestTimeout:
            if self._is_stale(epoch):
                return None
            logger.warning("help.timeout", text_length=len(text))
            self._fail(HelpErrorKind.TIMEOUT, HELP_TIMEOUT_MESSAGE)
            return None
        except ValidationFailed as exc:
            for field_error in exc.field_errors:
                logger.error(
                    "help.validation_error",
                    loc=field_error.get("loc"),
                    msg=field_error.get("msg"),
                    type=field_error.get("type"),
                )
            logger.error("help.validation_failed", detail=exc.detail, body=exc.body)
            if self._is_stale(epoch):
                return None
            self._fail(HelpErrorKind.VALIDATION, HELP_GENERIC_MESSAGE)
            return None
        except Exception as exc:
            logger.error("help.generation_failed", exc_info=True)
            if self._is_stale(epoch):
                return None
            self._fail(HelpErrorKind.GENERIC, str(exc) or HELP_GENERIC_MESSAGE)
            return None

        if self._is_stale(epoch):
            return None

        self._state = self._state.model_copy(
            update={"loading": False, "ready": True, "content": content}
        )
        self._slot.last_key = text
        logger.info(
            "help.generated",
            suggestions=len(content.suggested_responses),
            text_length=len(text),
        )
        await self.track_usage(HelpUsageKind.HELP_GENERATED)
        return content

    def reset(self) -> None:
        """Clear help for the previous AI turn. Called when the user starts speaking."""
        self._epoch += 1
        self._slot.clear()
        self._state = HelpRequestState()
        logger.debug("help.reset")

    # ── Modal ────────────────────────────────────────────────────────────

    def show_modal(self) -> bool:
        """Open the help modal if help is enabled and content is ready."""
        if not self._settings.help_enabled:
            logger.debug("help.modal_blocked_disabled")
            return False
        if not self._state.ready or self._state.content is None:
            logger.debug("help.modal_blocked_not_ready")
            return False
        self._state = self._state.model_copy(update={"modal_visible": True})
        self._spawn(self.track_usage(HelpUsageKind.MODAL_OPENED))
        return True

    def close_modal(self) -> None:
        self._state = self._state.model_copy(update={"modal_visible": False})
        self._spawn(self.track_usage(HelpUsageKind.MODAL_CLOSED))

    def select_suggested_response(self, response_text: str) -> str:
        """Record the pick of a suggested reply and close the modal."""
        logger.info("help.response_selected", text_length=len(response_text))
        self._spawn(self.track_usage(HelpUsageKind.RESPONSE_SELECTED))
        self.close_modal()
        return response_text

    # ── Analytics ────────────────────────────────────────────────────────

    async def track_usage(self, kind: HelpUsageKind | str) -> None:
        """Send an analytics event. Failures never reach the caller."""
        help_type = kind.value if isinstance(kind, HelpUsageKind) else kind
        try:
            await self._api.track_help_usage(
                help_type, self._target_language, self._identity
            )
        except Exception:
            logger.warning("help.track_usage_failed", help_type=help_type, exc_info=True)

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def aclose(self) -> None:
        """Cancel the pending debounce and drop any in-flight result.

        In-flight requests are not interrupted; they finish on their own
        and their results are discarded.
        """
        self._closed = True
        self._epoch += 1
        self._slot.cancel()
        logger.debug("help.closed", in_flight=len(self._tasks))

    def _is_stale(self, epoch: int) -> bool:
        if self._closed or epoch != self._epoch:
            logger.info("help.result_discarded", reason="closed" if self._closed else "reset")
            return True
        return False

    def _fail(self, kind: HelpErrorKind, message: str) -> None:
        self._state = self._state.model_copy(
            update={"loading": False, "ready": False, "error": message, "error_kind": kind}
        )

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
