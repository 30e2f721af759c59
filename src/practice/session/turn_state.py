"""Turn-state tracking for a live spoken conversation.

Provides TurnStateTracker, which derives a single "who is talking now"
TurnState from two independent sources:
- the realtime transport (AI audio events and server-side VAD)
- a local push-to-talk control (manual override)

Upstream signals flicker within tens of milliseconds, so exits from a
speaking state go through short grace windows (200ms after AI audio ends,
300ms after VAD reports silence). A newer event of the same category
cancels the pending window. Entries into a speaking state are immediate.

A transport error is a hard reset to AI_IDLE and never propagates.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog

from src.practice.config import get_settings
from src.practice.core.monitoring import (
    turn_state_transitions_total,
    turn_transport_errors_total,
)
from src.practice.core.timers import Clock, LoopClock, SingleShotTimer
from src.practice.session.schemas import SpeechSignal, SpeechSignalKind, TurnState

logger = structlog.get_logger(__name__)

StateListener = Callable[[TurnState, TurnState], None]


class TurnStateTracker:
    """Derives the conversation TurnState from speech signals.

    Args:
        clock: Clock for the grace timers. Defaults to the running loop.
        ai_grace_period: Seconds to wait after AI audio ends before
            settling on AI_IDLE/AI_LISTENING.
        user_grace_period: Seconds to wait after VAD silence before
            settling on AI_IDLE.
        on_state_change: Optional listener called with (old, new) on
            every change of the derived state.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        *,
        ai_grace_period: float | None = None,
        user_grace_period: float | None = None,
        on_state_change: StateListener | None = None,
    ) -> None:
        settings = get_settings()
        self._clock = clock or LoopClock()
        self._ai_grace_period = (
            settings.AI_GRACE_PERIOD if ai_grace_period is None else ai_grace_period
        )
        self._user_grace_period = (
            settings.USER_GRACE_PERIOD if user_grace_period is None else user_grace_period
        )
        self._on_state_change = on_state_change

        self._state = TurnState.AI_IDLE
        self._ai_speaking = False
        self._user_speaking_vad = False
        self._user_speaking_manual = False

        self._ai_grace_timer = SingleShotTimer(self._clock, "turn_state.ai_grace")
        self._user_grace_timer = SingleShotTimer(self._clock, "turn_state.user_grace")

    # ── Projections ──────────────────────────────────────────────────────

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def is_ai_speaking(self) -> bool:
        return self._ai_speaking

    @property
    def is_user_speaking(self) -> bool:
        return self._user_speaking_vad or self._user_speaking_manual

    @property
    def is_ai_listening(self) -> bool:
        return self._state == TurnState.AI_LISTENING

    @property
    def is_idle(self) -> bool:
        return self._state in (TurnState.AI_IDLE, TurnState.USER_IDLE)

    # ── Inputs ───────────────────────────────────────────────────────────

    def apply_event(self, signal: SpeechSignal) -> None:
        """Apply one speech signal in arrival order.

        Args:
            signal: Tagged event from the transport or the manual control.
        """
        kind = signal.kind
        logger.debug("turn_state.event", kind=kind.value, state=self._state.value)

        if kind in (SpeechSignalKind.AI_AUDIO_STARTED, SpeechSignalKind.AI_AUDIO_DELTA):
            self._ai_speaking = True
            self._set_state(TurnState.AI_SPEAKING, reason=kind.value)
            self._ai_grace_timer.cancel()

        elif kind == SpeechSignalKind.AI_AUDIO_DONE:
            self._ai_speaking = False
            self._ai_grace_timer.schedule(self._ai_grace_period, self._settle_after_ai)

        elif kind == SpeechSignalKind.USER_SPEECH_STARTED:
            self._user_speaking_vad = True
            self._user_grace_timer.cancel()
            if not self._ai_speaking:
                self._set_state(TurnState.AI_LISTENING, reason="vad_speech_started")

        elif kind == SpeechSignalKind.USER_SPEECH_STOPPED:
            self._user_speaking_vad = False
            self._user_grace_timer.schedule(self._user_grace_period, self._settle_after_user)

        elif kind == SpeechSignalKind.USER_AUDIO_COMMITTED:
            pass

        elif kind == SpeechSignalKind.TRANSPORT_ERROR:
            self._reset_after_error(signal.error)

        elif kind == SpeechSignalKind.MANUAL_SPEAKING_CHANGED:
            self.apply_manual_override(bool(signal.speaking))

    def apply_manual_override(self, speaking: bool) -> None:
        """Apply the local push-to-talk state.

        Pressing enters USER_SPEAKING immediately, even while the AI is
        speaking. Every other entry into a user state checks ai_speaking;
        this one does not.

        Args:
            speaking: True while the talk control is held.
        """
        self._user_speaking_manual = speaking
        if speaking:
            self._set_state(TurnState.USER_SPEAKING, reason="manual_pressed")
        elif not self._user_speaking_vad and not self._ai_speaking:
            self._set_state(TurnState.AI_IDLE, reason="manual_released")

    def close(self) -> None:
        """Cancel both grace timers. Called on session teardown."""
        cancelled = int(self._ai_grace_timer.cancel()) + int(self._user_grace_timer.cancel())
        logger.debug("turn_state.closed", cancelled_timers=cancelled)

    # ── Internals ────────────────────────────────────────────────────────

    def _settle_after_ai(self) -> None:
        if self._user_speaking_vad or self._user_speaking_manual:
            self._set_state(TurnState.AI_LISTENING, reason="ai_grace_user_active")
        else:
            self._set_state(TurnState.AI_IDLE, reason="ai_grace_elapsed")

    def _settle_after_user(self) -> None:
        if not self._user_speaking_manual and not self._ai_speaking:
            self._set_state(TurnState.AI_IDLE, reason="user_grace_elapsed")

    def _reset_after_error(self, error: str | None) -> None:
        # Pending grace decisions are superseded; speaking flags are left as-is
        self._ai_grace_timer.cancel()
        self._user_grace_timer.cancel()
        turn_transport_errors_total.inc()
        logger.warning(
            "turn_state.transport_error",
            error=error,
            previous_state=self._state.value,
        )
        self._set_state(TurnState.AI_IDLE, reason="transport_error")

    def _set_state(self, new_state: TurnState, *, reason: str) -> None:
        old_state = self._state
        if new_state == old_state:
            return
        self._state = new_state
        turn_state_transitions_total.labels(
            from_state=old_state.value, to_state=new_state.value
        ).inc()
        logger.info(
            "turn_state.transition",
            from_state=old_state.value,
            to_state=new_state.value,
            reason=reason,
        )
        if self._on_state_change is not None:
            self._on_state_change(old_state, new_state)
