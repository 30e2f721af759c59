"""Tests for ConversationSession wiring.

Tests cover:
- Transport events driving the turn-state tracker
- Transcript history and help scheduling with the last messages as context
- Help reset when the user starts a new turn
- Session-end guard using the live elapsed time
- Teardown cancelling every pending timer
"""

from __future__ import annotations

import pytest

from src.practice.session.conversation import ConversationSession
from src.practice.session.schemas import HelpContent, HelpSettings, SuggestedResponse, TurnState


@pytest.fixture
def session(api_client, clock) -> ConversationSession:
    api_client.generate_help.return_value = HelpContent(
        suggested_responses=[SuggestedResponse(text="Sí, claro.")]
    )
    api_client.get_help_settings.return_value = HelpSettings(help_language="english")
    return ConversationSession(
        api_client,
        target_language="spanish",
        proficiency_level="B1",
        total_duration_seconds=180,
        clock=clock,
    )


def _ai_transcript(text: str) -> dict:
    return {"type": "response.audio_transcript.done", "transcript": text}


def _user_transcript(text: str) -> dict:
    return {
        "type": "conversation.item.input_audio_transcription.completed",
        "transcript": text,
    }


class TestTransportRouting:
    """Tests for handle_transport_event."""

    @pytest.mark.asyncio
    async def test_audio_events_drive_tracker(self, session, clock) -> None:
        await session.start("token-1")

        session.handle_transport_event({"type": "response.audio.start"})
        assert session.tracker.state == TurnState.AI_SPEAKING

        session.handle_transport_event({"type": "response.audio.done"})
        await clock.advance(0.3)
        assert session.tracker.state == TurnState.AI_IDLE

    @pytest.mark.asyncio
    async def test_unknown_events_are_ignored(self, session) -> None:
        await session.start()

        session.handle_transport_event({"type": "session.updated"})

        assert session.tracker.state == TurnState.AI_IDLE
        assert session.history == []

    @pytest.mark.asyncio
    async def test_transcripts_build_history(self, session) -> None:
        await session.start()

        session.handle_transport_event(_ai_transcript("¿Cómo estás?"))
        session.handle_transport_event(_user_transcript("Muy bien."))

        assert [(m.role, m.content) for m in session.history] == [
            ("assistant", "¿Cómo estás?"),
            ("user", "Muy bien."),
        ]


class TestHelpWiring:
    """Tests for help scheduling and reset from the session."""

    @pytest.mark.asyncio
    async def test_ai_transcript_schedules_help_with_recent_context(
        self, session, api_client, clock
    ) -> None:
        await session.start("token-1")
        for i in range(4):
            session.add_message("assistant", f"pregunta {i}")
            session.add_message("user", f"respuesta {i}")

        session.handle_transport_event(_ai_transcript("¿Y mañana?"))
        await clock.advance(0.6)

        api_client.generate_help.assert_awaited_once()
        request = api_client.generate_help.await_args.args[0]
        assert request.ai_response == "¿Y mañana?"
        assert len(request.conversation_context) == 5
        assert request.conversation_context[-1] == {"role": "assistant", "content": "¿Y mañana?"}
        assert session.help.state.ready is True

    @pytest.mark.asyncio
    async def test_user_speech_resets_help(self, session, clock) -> None:
        await session.start()
        session.handle_transport_event(_ai_transcript("¿Qué tal?"))
        await clock.advance(0.6)
        assert session.help.state.ready is True

        session.handle_transport_event({"type": "input_audio_buffer.speech_started"})

        assert session.help.state.ready is False
        assert session.help.state.content is None

    @pytest.mark.asyncio
    async def test_push_to_talk_resets_pending_help(self, session, api_client, clock) -> None:
        await session.start()
        session.handle_transport_event(_ai_transcript("¿Qué tal?"))

        session.set_user_speaking(True)
        await clock.advance(1.0)

        assert session.tracker.state == TurnState.USER_SPEAKING
        api_client.generate_help.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_session_end_guard_uses_elapsed_time(self, session, api_client, clock) -> None:
        await session.start()
        await clock.advance(175.0)

        session.handle_transport_event(_ai_transcript("¡Hasta luego!"))
        await clock.advance(1.0)

        assert session.elapsed_seconds == pytest.approx(176.0)
        api_client.generate_help.assert_not_awaited()


class TestLifecycle:
    """Tests for aclose()."""

    @pytest.mark.asyncio
    async def test_aclose_cancels_all_timers(self, session, api_client, clock) -> None:
        await session.start()
        session.handle_transport_event({"type": "response.audio.start"})
        session.handle_transport_event({"type": "response.audio.done"})
        session.handle_transport_event(_ai_transcript("Adiós"))

        await session.aclose()
        await clock.advance(5.0)

        assert clock.pending == 0
        assert session.tracker.state == TurnState.AI_SPEAKING
        api_client.generate_help.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_events_after_close_are_ignored(self, session) -> None:
        await session.start()
        await session.aclose()

        session.handle_transport_event(_ai_transcript("¿Sigues ahí?"))
        session.set_user_speaking(True)

        assert session.history == []
        assert session.tracker.state == TurnState.AI_IDLE
