"""Pydantic v2 schemas for the live conversation session core.

Defines the data contracts shared by the turn-state tracker, the
contextual-help scheduler, the timed recording controller, and the
practice API client: turn states, speech signals, help settings and
content, assessment requests and results, and submission outcomes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


# ── Turn State ───────────────────────────────────────────────────────────────


class TurnState(str, Enum):
    """Derived "who is talking now" state of a live conversation."""

    AI_IDLE = "ai_idle"
    AI_LISTENING = "ai_listening"
    AI_SPEAKING = "ai_speaking"
    USER_SPEAKING = "user_speaking"
    # Reserved: no transition produces this value.
    USER_IDLE = "user_idle"


class SpeechSignalKind(str, Enum):
    """Kinds of speech/audio events consumed by the turn-state tracker."""

    AI_AUDIO_STARTED = "ai_audio_started"
    AI_AUDIO_DELTA = "ai_audio_delta"
    AI_AUDIO_DONE = "ai_audio_done"
    USER_SPEECH_STARTED = "user_speech_started"
    USER_SPEECH_STOPPED = "user_speech_stopped"
    USER_AUDIO_COMMITTED = "user_audio_committed"
    TRANSPORT_ERROR = "transport_error"
    MANUAL_SPEAKING_CHANGED = "manual_speaking_changed"


class SpeechSignal(BaseModel):
    """A tagged speech event. Transient: applied and discarded."""

    kind: SpeechSignalKind
    speaking: bool | None = Field(
        None, description="Only set for MANUAL_SPEAKING_CHANGED"
    )
    error: str | None = Field(None, description="Transport error detail, if any")

    @classmethod
    def manual(cls, speaking: bool) -> SpeechSignal:
        return cls(kind=SpeechSignalKind.MANUAL_SPEAKING_CHANGED, speaking=speaking)


class ConversationMessage(BaseModel):
    """One transcript entry of the conversation history."""

    role: str
    content: str
    timestamp: datetime | None = None


# ── Help Settings & Content ──────────────────────────────────────────────────


class HelpSettings(BaseModel):
    """Per-user contextual help preferences."""

    help_enabled: bool = True
    help_language: str = "english"
    show_pronunciation: bool = True
    show_grammar_tips: bool = True
    show_cultural_notes: bool = True
    show_vocabulary: bool = True
    user_id: str = ""


class SuggestedResponse(BaseModel):
    text: str
    translation: str | None = None
    context: str | None = None


class VocabularyItem(BaseModel):
    word: str
    translation: str | None = None
    definition: str | None = None
    example: str | None = None


class GrammarTip(BaseModel):
    title: str
    explanation: str
    example: str | None = None


class CulturalNote(BaseModel):
    title: str
    content: str


class PronunciationTip(BaseModel):
    phrase: str
    guide: str


class HelpContent(BaseModel):
    """Contextual help generated for one completed AI utterance."""

    ai_response_summary: str = ""
    suggested_responses: list[SuggestedResponse] = Field(default_factory=list)
    vocabulary_highlights: list[VocabularyItem] = Field(default_factory=list)
    grammar_tips: list[GrammarTip] = Field(default_factory=list)
    cultural_context: CulturalNote | None = None
    pronunciation_tips: list[PronunciationTip] = Field(default_factory=list)
    generated_at: datetime | None = None


class HelpRequest(BaseModel):
    """Body of POST /api/conversation-help/generate."""

    ai_response: str
    conversation_context: list[dict[str, str]] = Field(default_factory=list)
    target_language: str
    user_language: str
    proficiency_level: str
    topic: str | None = None


class HelpErrorKind(str, Enum):
    """Categorised help generation failures."""

    TIMEOUT = "timeout"
    VALIDATION = "validation"
    GENERIC = "generic"


class HelpRequestState(BaseModel):
    """Lifecycle of the help request for the current AI turn."""

    loading: bool = False
    ready: bool = False
    content: HelpContent | None = None
    error: str | None = None
    error_kind: HelpErrorKind | None = None
    modal_visible: bool = False
    last_processed_utterance: str = ""


class HelpUsageKind(str, Enum):
    """Analytics events sent to the usage-tracking sink."""

    HELP_GENERATED = "help_generated"
    MODAL_OPENED = "modal_opened"
    MODAL_CLOSED = "modal_closed"
    RESPONSE_SELECTED = "response_selected"
    SETTINGS_UPDATED = "settings_updated"


# ── Speaking Assessment ──────────────────────────────────────────────────────


class RecordingPhase(str, Enum):
    """Phases of a one-shot speaking assessment attempt."""

    IDLE = "idle"
    COUNTING_DOWN = "counting_down"
    RECORDING = "recording"
    STOPPED = "stopped"
    ANALYZING = "analyzing"
    SUBMITTED = "submitted"
    FAILED = "failed"


class AssessmentRequest(BaseModel):
    """Body of POST /api/speaking/assess."""

    audio_base64: str
    language: str
    duration: int
    prompt: str


class SkillScore(BaseModel):
    score: float
    feedback: str = ""
    examples: list[str] = Field(default_factory=list)


class AssessmentResult(BaseModel):
    """Structured speaking assessment returned by the backend."""

    recognized_text: str
    recommended_level: str
    overall_score: float
    confidence: float
    pronunciation: SkillScore
    grammar: SkillScore
    vocabulary: SkillScore
    fluency: SkillScore
    coherence: SkillScore
    strengths: list[str] = Field(default_factory=list)
    areas_for_improvement: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)


class SubmissionStatus(str, Enum):
    SUBMITTED = "submitted"
    USAGE_LIMIT = "usage_limit"
    RETRYABLE = "retryable"


class SubmissionOutcome(BaseModel):
    """Typed result of an assessment submission handed back to the caller."""

    status: SubmissionStatus
    result: AssessmentResult | None = None
    error: str | None = None

    @property
    def retryable(self) -> bool:
        return self.status == SubmissionStatus.RETRYABLE


class ExitPrompt(BaseModel):
    """Confirmation shown before an assessment attempt is discarded."""

    title: str
    message: str
    confirm_label: str
    cancel_label: str
