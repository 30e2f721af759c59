"""Live conversation session core.

Turn-taking state, contextual help scheduling, and the timed recording
controller for spoken-language practice.

Exports:
    TurnState: Derived "who is talking now" state.
    SpeechSignal: Tagged speech event applied to the tracker.
    TurnStateTracker: Debounced turn-state derivation from speech signals.
    ContextualHelpScheduler: Debounced, deduplicated help generation.
    TimedRecordingController: Countdown, timed capture, and assessment submission.
    ConversationSession: Wires the transport into the tracker and help scheduler.
"""

from __future__ import annotations

from src.practice.session.schemas import SpeechSignal, TurnState

__all__ = [
    "ContextualHelpScheduler",
    "ConversationSession",
    "SpeechSignal",
    "TimedRecordingController",
    "TurnState",
    "TurnStateTracker",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load the components so importing schemas stays cheap."""
    if name == "TurnStateTracker":
        from src.practice.session.turn_state import TurnStateTracker

        return TurnStateTracker
    if name == "ContextualHelpScheduler":
        from src.practice.session.help_scheduler import ContextualHelpScheduler

        return ContextualHelpScheduler
    if name == "TimedRecordingController":
        from src.practice.session.recording import TimedRecordingController

        return TimedRecordingController
    if name == "ConversationSession":
        from src.practice.session.conversation import ConversationSession

        return ConversationSession
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
