"""Live conversation session wiring.

ConversationSession connects the realtime transport to the turn-state
tracker and the contextual-help scheduler:

- every transport event is mapped to a SpeechSignal and applied in order
- completed transcripts are appended to the conversation history
- a completed AI transcript asks the help scheduler for help, with the
  most recent messages as context and the live session timing
- help is reset as soon as the user starts a new turn (VAD or push-to-talk)
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog

from src.practice.config import get_settings
from src.practice.core.timers import Clock, LoopClock
from src.practice.session.help_scheduler import ContextualHelpScheduler
from src.practice.session.schemas import ConversationMessage, SpeechSignal, TurnState
from src.practice.session.signals import (
    AI_TRANSCRIPT_DONE,
    USER_TRANSCRIPT_DONE,
    parse_realtime_event,
)
from src.practice.session.turn_state import TurnStateTracker

if TYPE_CHECKING:
    from src.practice.api.client import PracticeApiClient

logger = structlog.get_logger(__name__)


class ConversationSession:
    """One live practice conversation.

    Args:
        api_client: PracticeApiClient shared with the help scheduler.
        target_language: Language being practised.
        proficiency_level: Learner level.
        topic: Optional conversation topic.
        help_enabled: Caller enablement override for contextual help.
        total_duration_seconds: Planned session length, used by the help
            session-end guard. None disables the guard.
        clock: Clock shared by the tracker and the scheduler.
        on_state_change: Listener for turn-state changes.
    """

    def __init__(
        self,
        api_client: PracticeApiClient,
        *,
        target_language: str,
        proficiency_level: str,
        topic: str | None = None,
        help_enabled: bool = True,
        total_duration_seconds: float | None = None,
        clock: Clock | None = None,
        on_state_change: Callable[[TurnState, TurnState], None] | None = None,
    ) -> None:
        self._clock = clock or LoopClock()
        self._context_size = get_settings().HELP_CONTEXT_MESSAGES
        self._total_duration = total_duration_seconds
        self.tracker = TurnStateTracker(self._clock, on_state_change=on_state_change)
        self.help = ContextualHelpScheduler(
            api_client,
            target_language=target_language,
            proficiency_level=proficiency_level,
            topic=topic,
            enabled=help_enabled,
            clock=self._clock,
        )
        self._history: list[ConversationMessage] = []
        self._started_at: float | None = None
        self._closed = False

    @property
    def history(self) -> list[ConversationMessage]:
        return list(self._history)

    @property
    def elapsed_seconds(self) -> float | None:
        if self._started_at is None:
            return None
        return self._clock.time() - self._started_at

    async def start(self, identity: str | None = None) -> None:
        """Load help settings and start the session timer."""
        await self.help.load_settings(identity)
        self._started_at = self._clock.time()
        logger.info(
            "conversation.started",
            total_duration_seconds=self._total_duration,
            help_enabled=self.help.settings.help_enabled,
        )

    def handle_transport_event(self, event: dict[str, Any]) -> None:
        """Route one realtime transport event.

        Args:
            event: Decoded transport event with a ``type`` key.
        """
        if self._closed:
            return

        signal = parse_realtime_event(event)
        if signal is not None:
            self._apply(signal)
            return

        event_type = event.get("type")
        if event_type == AI_TRANSCRIPT_DONE:
            self._on_ai_transcript(event.get("transcript") or "")
        elif event_type == USER_TRANSCRIPT_DONE:
            transcript = event.get("transcript") or ""
            if transcript:
                self.add_message("user", transcript)

    def set_user_speaking(self, speaking: bool) -> None:
        """Apply the push-to-talk control."""
        if self._closed:
            return
        self._apply(SpeechSignal.manual(speaking))

    def add_message(self, role: str, content: str) -> ConversationMessage:
        message = ConversationMessage(
            role=role, content=content, timestamp=datetime.now(timezone.utc)
        )
        self._history.append(message)
        return message

    async def aclose(self) -> None:
        """Cancel every pending timer of the session."""
        if self._closed:
            return
        self._closed = True
        self.tracker.close()
        await self.help.aclose()
        logger.info(
            "conversation.closed",
            messages=len(self._history),
            elapsed_seconds=self.elapsed_seconds,
        )

    def _apply(self, signal: SpeechSignal) -> None:
        was_user_speaking = self.tracker.is_user_speaking
        self.tracker.apply_event(signal)
        if self.tracker.is_user_speaking and not was_user_speaking:
            self.help.reset()

    def _on_ai_transcript(self, transcript: str) -> None:
        if not transcript:
            return
        self.add_message("assistant", transcript)
        self.help.on_ai_utterance_complete(
            transcript,
            self._history[-self._context_size :],
            elapsed_seconds=self.elapsed_seconds,
            total_duration_seconds=self._total_duration,
        )
