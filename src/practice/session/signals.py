"""Mapping of realtime transport events onto speech signals.

The realtime voice transport delivers JSON events tagged by ``type``.
Only the audio/VAD events below influence turn state; everything else
(session, conversation item, and transcript events) maps to None.
"""

from __future__ import annotations

from typing import Any

from src.practice.session.schemas import SpeechSignal, SpeechSignalKind

REALTIME_SIGNAL_MAP: dict[str, SpeechSignalKind] = {
    "response.audio.start": SpeechSignalKind.AI_AUDIO_STARTED,
    "output_audio_buffer.started": SpeechSignalKind.AI_AUDIO_STARTED,
    "response.audio.delta": SpeechSignalKind.AI_AUDIO_DELTA,
    "response.audio.done": SpeechSignalKind.AI_AUDIO_DONE,
    "output_audio_buffer.stopped": SpeechSignalKind.AI_AUDIO_DONE,
    "input_audio_buffer.speech_started": SpeechSignalKind.USER_SPEECH_STARTED,
    "input_audio_buffer.speech_stopped": SpeechSignalKind.USER_SPEECH_STOPPED,
    "input_audio_buffer.committed": SpeechSignalKind.USER_AUDIO_COMMITTED,
    "error": SpeechSignalKind.TRANSPORT_ERROR,
}

# Transcript events consumed by the conversation session, not the tracker
AI_TRANSCRIPT_DONE = "response.audio_transcript.done"
USER_TRANSCRIPT_DONE = "conversation.item.input_audio_transcription.completed"


def _error_detail(error: Any) -> str | None:
    if error is None:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or error)
    return str(error)


def parse_realtime_event(event: dict[str, Any]) -> SpeechSignal | None:
    """Translate a raw realtime event into a SpeechSignal.

    Args:
        event: Decoded transport event with a ``type`` key.

    Returns:
        The matching SpeechSignal, or None for events that do not affect
        turn state.
    """
    kind = REALTIME_SIGNAL_MAP.get(event.get("type", ""))
    if kind is None:
        return None
    if kind == SpeechSignalKind.TRANSPORT_ERROR:
        return SpeechSignal(kind=kind, error=_error_detail(event.get("error")))
    return SpeechSignal(kind=kind)
