"""Tests for ContextualHelpScheduler.

Tests cover:
- Debounce (replace-not-stack) and content-addressed dedup
- Session-end guard
- Error categorisation (no content, timeout, validation, generic)
- Reset and teardown dropping in-flight results
- Settings load/update with the caller enablement override
- Help modal and analytics tracking
"""

from __future__ import annotations

import asyncio

import pytest

from src.practice.api.errors import (
    ApiError,
    NoHelpAvailable,
    RequestTimeout,
    ValidationFailed,
)
from src.practice.session.help_scheduler import (
    HELP_GENERIC_MESSAGE,
    HELP_TIMEOUT_MESSAGE,
    ContextualHelpScheduler,
    DebounceSlot,
)
from src.practice.core.timers import SingleShotTimer
from src.practice.session.schemas import (
    ConversationMessage,
    HelpContent,
    HelpErrorKind,
    HelpSettings,
    SuggestedResponse,
)


@pytest.fixture
def help_content() -> HelpContent:
    return HelpContent(
        ai_response_summary="The tutor asked about your weekend.",
        suggested_responses=[
            SuggestedResponse(text="Fui a la playa.", translation="I went to the beach."),
            SuggestedResponse(text="Me quedé en casa.", translation="I stayed home."),
        ],
    )


@pytest.fixture
def scheduler(api_client, clock, help_content) -> ContextualHelpScheduler:
    api_client.generate_help.return_value = help_content
    return ContextualHelpScheduler(
        api_client,
        target_language="spanish",
        proficiency_level="B1",
        topic="weekend plans",
        clock=clock,
    )


HISTORY = [
    ConversationMessage(role="assistant", content="Hola, ¿qué tal?"),
    ConversationMessage(role="user", content="Bien, gracias."),
]


# ── DebounceSlot ─────────────────────────────────────────────────────────────


class TestDebounceSlot:
    """Tests for the debounce/dedup value object."""

    @pytest.mark.asyncio
    async def test_replace_keeps_only_latest(self, clock) -> None:
        fired: list[str] = []
        slot = DebounceSlot(SingleShotTimer(clock, "test"))

        slot.replace(0.5, lambda: fired.append("first"))
        slot.replace(0.5, lambda: fired.append("second"))
        await clock.advance(1.0)

        assert fired == ["second"]
        assert slot.pending is False

    def test_duplicate_requires_matching_non_empty_key(self, clock) -> None:
        slot = DebounceSlot(SingleShotTimer(clock, "test"))
        assert slot.is_duplicate("") is False

        slot.last_key = "Hola"
        assert slot.is_duplicate("Hola") is True
        assert slot.is_duplicate("Adiós") is False

        slot.clear()
        assert slot.is_duplicate("Hola") is False


# ── Scheduling ───────────────────────────────────────────────────────────────


class TestScheduling:
    """Tests for on_ai_utterance_complete."""

    @pytest.mark.asyncio
    async def test_schedules_one_call_after_debounce(self, scheduler, api_client, clock) -> None:
        scheduled = scheduler.on_ai_utterance_complete(
            "¿Qué hiciste el fin de semana?", HISTORY, elapsed_seconds=60, total_duration_seconds=180
        )
        assert scheduled is True
        assert scheduler.is_pending is True

        await clock.advance(0.4)
        api_client.generate_help.assert_not_awaited()

        await clock.advance(0.2)
        api_client.generate_help.assert_awaited_once()
        assert scheduler.state.ready is True

    @pytest.mark.asyncio
    async def test_session_end_guard_skips(self, scheduler, api_client, clock) -> None:
        scheduled = scheduler.on_ai_utterance_complete(
            "¿Algo más?", HISTORY, elapsed_seconds=175, total_duration_seconds=180
        )

        await clock.advance(2.0)

        assert scheduled is False
        api_client.generate_help.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rapid_completions_only_latest_survives(
        self, scheduler, api_client, clock
    ) -> None:
        scheduler.on_ai_utterance_complete("uno", HISTORY)
        await clock.advance(0.2)
        scheduler.on_ai_utterance_complete("dos", HISTORY)
        await clock.advance(0.2)
        scheduler.on_ai_utterance_complete("tres", HISTORY)

        await clock.advance(1.0)

        api_client.generate_help.assert_awaited_once()
        request = api_client.generate_help.await_args.args[0]
        assert request.ai_response == "tres"

    @pytest.mark.asyncio
    async def test_disabled_never_schedules(self, api_client, clock) -> None:
        scheduler = ContextualHelpScheduler(
            api_client,
            target_language="spanish",
            proficiency_level="B1",
            enabled=False,
            clock=clock,
        )

        assert scheduler.on_ai_utterance_complete("Hola", HISTORY) is False
        await clock.advance(1.0)
        api_client.generate_help.assert_not_awaited()

    def test_empty_text_is_skipped(self, scheduler) -> None:
        assert scheduler.on_ai_utterance_complete("", HISTORY) is False
        assert scheduler.is_pending is False

    @pytest.mark.asyncio
    async def test_request_body(self, scheduler, api_client, clock) -> None:
        scheduler.on_ai_utterance_complete("¿Y tú?", HISTORY)
        await clock.advance(0.5)

        request = api_client.generate_help.await_args.args[0]
        assert request.conversation_context == [
            {"role": "assistant", "content": "Hola, ¿qué tal?"},
            {"role": "user", "content": "Bien, gracias."},
        ]
        assert request.target_language == "spanish"
        assert request.user_language == "english"
        assert request.proficiency_level == "B1"
        assert request.topic == "weekend plans"


# ── Generation ───────────────────────────────────────────────────────────────


class TestGeneration:
    """Tests for generate_help_content."""

    @pytest.mark.asyncio
    async def test_identical_text_hits_network_once(
        self, scheduler, api_client, help_content
    ) -> None:
        first = await scheduler.generate_help_content("Hola", HISTORY)
        second = await scheduler.generate_help_content("Hola", HISTORY)

        assert first == help_content
        assert second == help_content
        api_client.generate_help.assert_awaited_once()
        assert scheduler.state.last_processed_utterance == "Hola"

    @pytest.mark.asyncio
    async def test_success_tracks_help_generated(self, scheduler, api_client) -> None:
        await scheduler.generate_help_content("Hola", HISTORY)

        api_client.track_help_usage.assert_any_await("help_generated", "spanish", None)

    @pytest.mark.asyncio
    async def test_no_content_is_soft_empty(self, scheduler, api_client) -> None:
        api_client.generate_help.side_effect = NoHelpAvailable("none", status_code=204)

        result = await scheduler.generate_help_content("Hola", HISTORY)

        assert result is None
        state = scheduler.state
        assert state.loading is False
        assert state.ready is False
        assert state.error is None

    @pytest.mark.asyncio
    async def test_timeout_sets_timeout_message(self, scheduler, api_client) -> None:
        api_client.generate_help.side_effect = RequestTimeout("slow")

        await scheduler.generate_help_content("Hola", HISTORY)

        assert scheduler.state.error == HELP_TIMEOUT_MESSAGE
        assert scheduler.state.error_kind == HelpErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_validation_sets_generic_message(self, scheduler, api_client) -> None:
        api_client.generate_help.side_effect = ValidationFailed(
            "bad body",
            status_code=422,
            detail=[{"loc": ["body", "proficiency_level"], "msg": "field required", "type": "missing"}],
        )

        await scheduler.generate_help_content("Hola", HISTORY)

        assert scheduler.state.error == HELP_GENERIC_MESSAGE
        assert scheduler.state.error_kind == HelpErrorKind.VALIDATION

    @pytest.mark.asyncio
    async def test_other_errors_use_their_message(self, scheduler, api_client) -> None:
        api_client.generate_help.side_effect = ApiError("server exploded", status_code=500)

        await scheduler.generate_help_content("Hola", HISTORY)

        assert scheduler.state.error == "server exploded"
        assert scheduler.state.error_kind == HelpErrorKind.GENERIC

    @pytest.mark.asyncio
    async def test_failed_text_is_retried_next_time(self, scheduler, api_client, help_content) -> None:
        api_client.generate_help.side_effect = [RequestTimeout("slow"), help_content]

        await scheduler.generate_help_content("Hola", HISTORY)
        result = await scheduler.generate_help_content("Hola", HISTORY)

        assert result == help_content
        assert api_client.generate_help.await_count == 2


# ── Reset & Teardown ─────────────────────────────────────────────────────────


class TestResetAndTeardown:
    """Tests for reset() and aclose()."""

    @pytest.mark.asyncio
    async def test_reset_drops_in_flight_result(
        self, scheduler, api_client, clock, help_content
    ) -> None:
        gate = asyncio.Event()

        async def slow_generate(request, token):
            await gate.wait()
            return help_content

        api_client.generate_help.side_effect = slow_generate
        task = asyncio.create_task(scheduler.generate_help_content("Hola", HISTORY))
        await clock.settle()
        assert scheduler.state.loading is True

        scheduler.reset()
        gate.set()
        result = await task

        assert result is None
        assert scheduler.state.content is None
        assert scheduler.state.loading is False
        assert scheduler.state.last_processed_utterance == ""

    @pytest.mark.asyncio
    async def test_reset_cancels_pending_debounce(self, scheduler, api_client, clock) -> None:
        scheduler.on_ai_utterance_complete("Hola", HISTORY)
        scheduler.reset()

        await clock.advance(1.0)

        api_client.generate_help.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reset_clears_dedup_key(self, scheduler, api_client) -> None:
        await scheduler.generate_help_content("Hola", HISTORY)
        scheduler.reset()
        await scheduler.generate_help_content("Hola", HISTORY)

        assert api_client.generate_help.await_count == 2

    @pytest.mark.asyncio
    async def test_aclose_cancels_debounce(self, scheduler, api_client, clock) -> None:
        scheduler.on_ai_utterance_complete("Hola", HISTORY)
        await scheduler.aclose()

        await clock.advance(1.0)

        api_client.generate_help.assert_not_awaited()
        assert clock.pending == 0
        assert scheduler.on_ai_utterance_complete("Otra vez", HISTORY) is False


# ── Settings ─────────────────────────────────────────────────────────────────


class TestSettings:
    """Tests for load_settings and update_settings."""

    @pytest.mark.asyncio
    async def test_guest_uses_defaults(self, scheduler, api_client) -> None:
        settings = await scheduler.load_settings(None)

        assert settings.help_enabled is True
        assert settings.help_language == "english"
        api_client.get_help_settings.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_caller_override_wins_over_stored(self, scheduler, api_client) -> None:
        api_client.get_help_settings.return_value = HelpSettings(
            help_enabled=False, help_language="french", show_grammar_tips=False
        )

        settings = await scheduler.load_settings("token-123")

        assert settings.help_enabled is True
        assert settings.help_language == "french"
        assert settings.show_grammar_tips is False

    @pytest.mark.asyncio
    async def test_disabled_override_wins_over_stored(self, api_client, clock) -> None:
        api_client.get_help_settings.return_value = HelpSettings(help_enabled=True)
        scheduler = ContextualHelpScheduler(
            api_client,
            target_language="spanish",
            proficiency_level="A2",
            enabled=False,
            clock=clock,
        )

        settings = await scheduler.load_settings("token-123")

        assert settings.help_enabled is False

    @pytest.mark.asyncio
    async def test_load_failure_falls_back_to_defaults(self, scheduler, api_client) -> None:
        api_client.get_help_settings.side_effect = ApiError("down", status_code=503)

        settings = await scheduler.load_settings("token-123")

        assert settings.help_enabled is True
        assert settings.help_language == "english"

    @pytest.mark.asyncio
    async def test_update_persists_and_tracks(self, scheduler, api_client) -> None:
        api_client.get_help_settings.return_value = HelpSettings()
        await scheduler.load_settings("token-123")

        settings = await scheduler.update_settings({"help_language": "german"})

        assert settings.help_language == "german"
        api_client.update_help_settings.assert_awaited_once_with(
            "token-123", {"help_language": "german"}
        )
        api_client.track_help_usage.assert_awaited_once_with(
            "settings_updated", "spanish", "token-123"
        )

    @pytest.mark.asyncio
    async def test_update_keeps_local_change_on_failure(self, scheduler, api_client) -> None:
        api_client.get_help_settings.return_value = HelpSettings()
        api_client.update_help_settings.side_effect = ApiError("down", status_code=503)
        await scheduler.load_settings("token-123")

        settings = await scheduler.update_settings({"show_vocabulary": False})

        assert settings.show_vocabulary is False
        api_client.track_help_usage.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, scheduler) -> None:
        with pytest.raises(ValueError, match="Unknown help settings"):
            await scheduler.update_settings({"dark_mode": True})


# ── Modal & Analytics ────────────────────────────────────────────────────────


class TestModal:
    """Tests for the help modal and usage tracking."""

    @pytest.mark.asyncio
    async def test_modal_requires_ready_content(self, scheduler, api_client, clock) -> None:
        assert scheduler.show_modal() is False

        await scheduler.generate_help_content("Hola", HISTORY)
        assert scheduler.show_modal() is True
        await clock.settle()

        assert scheduler.state.modal_visible is True
        api_client.track_help_usage.assert_any_await("modal_opened", "spanish", None)

    @pytest.mark.asyncio
    async def test_select_response_closes_modal(self, scheduler, api_client, clock) -> None:
        await scheduler.generate_help_content("Hola", HISTORY)
        scheduler.show_modal()

        chosen = scheduler.select_suggested_response("Fui a la playa.")
        await clock.settle()

        assert chosen == "Fui a la playa."
        assert scheduler.state.modal_visible is False
        api_client.track_help_usage.assert_any_await("response_selected", "spanish", None)
        api_client.track_help_usage.assert_any_await("modal_closed", "spanish", None)

    @pytest.mark.asyncio
    async def test_tracking_failures_are_swallowed(self, scheduler, api_client) -> None:
        api_client.track_help_usage.side_effect = ApiError("analytics down")

        result = await scheduler.generate_help_content("Hola", HISTORY)

        assert result is not None
        assert scheduler.state.ready is True
