"""Timed recording controller for the one-shot speaking assessment.

Provides TimedRecordingController driving a fixed capture protocol:

    IDLE -> COUNTING_DOWN -> RECORDING -> STOPPED -> ANALYZING -> SUBMITTED | FAILED

- A pre-roll countdown (default 5s) that can be skipped.
- Recording with a minimum duration (45s) before the user may stop, and a
  hard ceiling (60s) that force-stops regardless of the minimum.
- Finalize the capture, submit it for assessment, and hand the typed
  outcome back to the caller.
- An exit confirmation gate reachable at any point before ANALYZING.

The controller exclusively owns the hardware capture for one attempt and
releases it on every exit path. Its timers (countdown, per-second tick,
forced stop) live in one TimerGroup and are all cancelled on confirmed
exit, natural completion, and teardown.
"""

from __future__ import annotations

import asyncio
import base64
from collections.abc import Callable, Coroutine
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from src.practice.api.errors import RecordingStateError, UsageLimitExceeded
from src.practice.config import get_settings
from src.practice.core.monitoring import assessment_submissions_total
from src.practice.core.timers import Clock, LoopClock, TimerGroup
from src.practice.session.schemas import (
    AssessmentRequest,
    ExitPrompt,
    RecordingPhase,
    SubmissionOutcome,
    SubmissionStatus,
)

if TYPE_CHECKING:
    from src.practice.api.client import PracticeApiClient

logger = structlog.get_logger(__name__)

COUNTDOWN_TIMER = "recording.countdown"
TICK_TIMER = "recording.tick"
FORCED_STOP_TIMER = "recording.forced_stop"

START_FAILED_MESSAGE = "Failed to start recording. Please try again."
FINALIZE_FAILED_MESSAGE = "Failed to process recording. Please try again."
ANALYSIS_FAILED_MESSAGE = "Failed to analyze your speaking. Please try again."

_EXIT_ALLOWED = (RecordingPhase.IDLE, RecordingPhase.COUNTING_DOWN, RecordingPhase.RECORDING)


class CaptureDevice(Protocol):
    """Hardware audio capture for a single recording."""

    async def start(self) -> None: ...

    async def stop(self) -> bytes:
        """Finalize the capture and return the encoded audio (WAV)."""
        ...

    async def discard(self) -> None:
        """Stop and unload without keeping the audio."""
        ...


class TimedRecordingController:
    """Drives countdown, timed capture, and submission of one assessment attempt.

    Args:
        api_client: PracticeApiClient used to submit the recording.
        capture_factory: Returns a fresh CaptureDevice for each recording.
        language: Assessment language.
        prompt: Prompt the learner is speaking about.
        token: Identity token, if signed in.
        clock: Clock for timers. Defaults to the running loop.
        target_duration: Hard ceiling in seconds (default 60).
        minimum_duration: Seconds before stop is allowed (default 45).
        warning_seconds: Remaining seconds that trigger on_final_seconds.
        on_minimum_reached: Called once when stopping becomes allowed.
        on_final_seconds: Called once when warning_seconds remain.
        on_outcome: Called with the SubmissionOutcome of every submission.
        on_exit: Called when the attempt is abandoned (confirmed exit or cancel).
    """

    def __init__(
        self,
        api_client: PracticeApiClient,
        capture_factory: Callable[[], CaptureDevice],
        *,
        language: str,
        prompt: str,
        token: str | None = None,
        clock: Clock | None = None,
        target_duration: int | None = None,
        minimum_duration: int | None = None,
        warning_seconds: int | None = None,
        on_minimum_reached: Callable[[], None] | None = None,
        on_final_seconds: Callable[[], None] | None = None,
        on_outcome: Callable[[SubmissionOutcome], None] | None = None,
        on_exit: Callable[[], None] | None = None,
    ) -> None:
        settings = get_settings()
        self._api = api_client
        self._capture_factory = capture_factory
        self._language = language
        self._prompt = prompt
        self._token = token
        self._clock = clock or LoopClock()
        self._target_duration = target_duration or settings.RECORDING_TARGET_SECONDS
        self._minimum_duration = minimum_duration or settings.RECORDING_MINIMUM_SECONDS
        self._warning_seconds = (
            settings.RECORDING_WARNING_SECONDS if warning_seconds is None else warning_seconds
        )
        self._default_countdown = settings.RECORDING_COUNTDOWN_SECONDS
        if self._minimum_duration > self._target_duration:
            raise ValueError("minimum_duration must not exceed target_duration")

        self._on_minimum_reached = on_minimum_reached
        self._on_final_seconds = on_final_seconds
        self._on_outcome = on_outcome
        self._on_exit = on_exit

        self._timers = TimerGroup(self._clock)
        self._phase = RecordingPhase.IDLE
        self._countdown_remaining: int | None = None
        self._elapsed = 0
        self._can_stop = False
        self._warned = False
        self._capture: CaptureDevice | None = None
        self._artifact: bytes | None = None
        self._outcome: SubmissionOutcome | None = None
        self._error: str | None = None
        self._exit_prompt: ExitPrompt | None = None
        self._exited = False
        self._closed = False
        self._start_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    # ── Projections ──────────────────────────────────────────────────────

    @property
    def phase(self) -> RecordingPhase:
        return self._phase

    @property
    def countdown_remaining(self) -> int | None:
        return self._countdown_remaining

    @property
    def elapsed(self) -> int:
        return self._elapsed

    @property
    def time_remaining(self) -> int:
        return self._target_duration - self._elapsed

    @property
    def target_duration(self) -> int:
        return self._target_duration

    @property
    def minimum_duration(self) -> int:
        return self._minimum_duration

    @property
    def can_stop(self) -> bool:
        return self._can_stop

    @property
    def has_capture(self) -> bool:
        return self._capture is not None

    @property
    def pending_timers(self) -> list[str]:
        return self._timers.pending

    @property
    def outcome(self) -> SubmissionOutcome | None:
        return self._outcome

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def exit_prompt(self) -> ExitPrompt | None:
        return self._exit_prompt

    @property
    def exited(self) -> bool:
        return self._exited

    @property
    def closed(self) -> bool:
        return self._closed

    # ── Countdown ────────────────────────────────────────────────────────

    def start_countdown(self, seconds: int | None = None) -> None:
        """Enter COUNTING_DOWN and tick once per second until recording starts.

        Args:
            seconds: Countdown length. Defaults to RECORDING_COUNTDOWN_SECONDS.
        """
        self._require_open()
        if self._phase != RecordingPhase.IDLE:
            raise RecordingStateError(f"Cannot start countdown while {self._phase.value}")

        count = self._default_countdown if seconds is None else seconds
        self._error = None
        self._exited = False
        self._phase = RecordingPhase.COUNTING_DOWN
        self._countdown_remaining = count
        logger.info("recording.countdown_started", seconds=count)

        if count <= 0:
            self._countdown_remaining = None
            self._start_task = self._spawn(self.begin_recording())
            return
        self._timers.timer(COUNTDOWN_TIMER).schedule(1.0, self._on_countdown_tick)

    async def skip_countdown(self) -> None:
        """Cancel the remaining countdown ticks and start recording now."""
        self._require_open()
        if self._phase != RecordingPhase.COUNTING_DOWN:
            raise RecordingStateError(f"No countdown to skip while {self._phase.value}")
        if self._start_task is not None and not self._start_task.done():
            await self._start_task
            return
        self._timers.timer(COUNTDOWN_TIMER).cancel()
        self._countdown_remaining = None
        logger.info("recording.countdown_skipped")
        await self.begin_recording()

    def _on_countdown_tick(self) -> None:
        remaining = (self._countdown_remaining or 0) - 1
        if remaining > 0:
            self._countdown_remaining = remaining
            self._timers.timer(COUNTDOWN_TIMER).schedule(1.0, self._on_countdown_tick)
            return
        self._countdown_remaining = None
        self._start_task = self._spawn(self.begin_recording())

    # ── Recording ────────────────────────────────────────────────────────

    async def begin_recording(self) -> None:
        """Start hardware capture and enter RECORDING.

        Any capture left over from a previous attempt is released first.
        A capture failure returns the controller to IDLE with ``error`` set.
        """
        self._require_open()
        if self._phase not in (RecordingPhase.IDLE, RecordingPhase.COUNTING_DOWN):
            raise RecordingStateError(f"Cannot start recording while {self._phase.value}")

        self._exited = False
        await self._release_capture()

        capture = self._capture_factory()
        try:
            await capture.start()
        except asyncio.CancelledError:
            await self._discard(capture)
            raise
        except Exception:
            logger.error("recording.start_failed", exc_info=True)
            self._phase = RecordingPhase.IDLE
            self._error = START_FAILED_MESSAGE
            return

        if self._closed or self._exited:
            # Torn down or exited while the hardware was starting
            await self._discard(capture)
            return

        self._capture = capture
        self._phase = RecordingPhase.RECORDING
        self._elapsed = 0
        self._can_stop = False
        self._warned = False
        self._timers.timer(TICK_TIMER).schedule(1.0, self._on_tick)
        self._timers.timer(FORCED_STOP_TIMER).schedule(
            float(self._target_duration), self._on_forced_stop
        )
        logger.info(
            "recording.started",
            target_duration=self._target_duration,
            minimum_duration=self._minimum_duration,
        )

    def _on_tick(self) -> None:
        if self._phase != RecordingPhase.RECORDING:
            return
        self._elapsed += 1

        if self._elapsed == self._minimum_duration and not self._can_stop:
            self._can_stop = True
            logger.info("recording.minimum_reached", elapsed=self._elapsed)
            if self._on_minimum_reached is not None:
                self._on_minimum_reached()

        if (
            not self._warned
            and self._warning_seconds > 0
            and self.time_remaining == self._warning_seconds
        ):
            self._warned = True
            if self._on_final_seconds is not None:
                self._on_final_seconds()

        if self._elapsed < self._target_duration:
            self._timers.timer(TICK_TIMER).schedule(1.0, self._on_tick)

    def _on_forced_stop(self) -> None:
        if self._phase != RecordingPhase.RECORDING:
            return
        self._timers.timer(TICK_TIMER).cancel()
        self._elapsed = self._target_duration
        logger.info("recording.forced_stop", elapsed=self._elapsed)
        self._spawn(self._forced_stop())

    async def _forced_stop(self) -> None:
        try:
            await self._finalize(forced=True)
        except RecordingStateError:
            logger.warning("recording.forced_stop_skipped", phase=self._phase.value, exc_info=True)

    async def stop(self) -> SubmissionOutcome | None:
        """Stop on user request, then submit the recording for analysis.

        Returns:
            The submission outcome, or None if finalizing the capture failed.

        Raises:
            RecordingStateError: Not recording, or the minimum duration has
                not been reached.
        """
        self._require_open()
        if self._phase != RecordingPhase.RECORDING:
            raise RecordingStateError(f"Cannot stop while {self._phase.value}")
        if not self._can_stop:
            raise RecordingStateError(
                f"Recording must last at least {self._minimum_duration}s "
                f"(elapsed {self._elapsed}s)"
            )
        return await self._finalize(forced=False)

    async def _finalize(self, *, forced: bool) -> SubmissionOutcome | None:
        self._require_open()
        if self._phase != RecordingPhase.RECORDING:
            raise RecordingStateError(f"Cannot stop while {self._phase.value}")

        self._timers.cancel_all()
        self._exit_prompt = None
        self._phase = RecordingPhase.STOPPED
        capture, self._capture = self._capture, None
        duration = self._elapsed

        try:
            artifact = await capture.stop() if capture is not None else b""
        except Exception:
            logger.error("recording.finalize_failed", exc_info=True)
            self._phase = RecordingPhase.IDLE
            self._error = FINALIZE_FAILED_MESSAGE
            return None

        logger.info("recording.stopped", duration=duration, forced=forced, size=len(artifact))
        self._phase = RecordingPhase.ANALYZING
        return await self.submit(artifact, duration)

    async def submit(self, artifact: bytes, duration_seconds: int) -> SubmissionOutcome:
        """Hand the recording to the assessment service.

        Args:
            artifact: Encoded audio returned by the capture.
            duration_seconds: Recorded duration.

        Returns:
            SUBMITTED with the result; USAGE_LIMIT (terminal, no retry);
            or RETRYABLE for network/validation failures.
        """
        self._require_open()
        if self._phase != RecordingPhase.ANALYZING:
            raise RecordingStateError(f"Cannot submit while {self._phase.value}")

        self._artifact = artifact
        request = AssessmentRequest(
            audio_base64=base64.b64encode(artifact).decode("ascii"),
            language=self._language,
            duration=duration_seconds,
            prompt=self._prompt,
        )

        try:
            result = await self._api.assess_speaking(request, self._token)
            outcome = SubmissionOutcome(status=SubmissionStatus.SUBMITTED, result=result)
        except UsageLimitExceeded as exc:
            logger.warning("recording.usage_limit", status_code=exc.status_code)
            outcome = SubmissionOutcome(
                status=SubmissionStatus.USAGE_LIMIT, error=exc.message
            )
        except Exception as exc:
            logger.error("recording.submit_failed", exc_info=True)
            outcome = SubmissionOutcome(
                status=SubmissionStatus.RETRYABLE,
                error=str(exc) or ANALYSIS_FAILED_MESSAGE,
            )

        assessment_submissions_total.labels(
            language=self._language, outcome=outcome.status.value
        ).inc()

        if self._closed:
            logger.info("recording.outcome_discarded", status=outcome.status.value)
            return outcome

        self._outcome = outcome
        if outcome.status == SubmissionStatus.SUBMITTED:
            self._phase = RecordingPhase.SUBMITTED
            self._artifact = None
        else:
            self._phase = RecordingPhase.FAILED
            self._error = outcome.error
        if self._on_outcome is not None:
            self._on_outcome(outcome)
        return outcome

    # ── Recovery ─────────────────────────────────────────────────────────

    async def retry(self) -> None:
        """Discard the failed attempt and return to IDLE for a new one."""
        self._require_open()
        if self._phase != RecordingPhase.FAILED or self._outcome is None:
            raise RecordingStateError(f"Nothing to retry while {self._phase.value}")
        if not self._outcome.retryable:
            raise RecordingStateError("Usage limit reached; this attempt cannot be retried")

        self._timers.cancel_all()
        await self._release_capture()
        self._artifact = None
        self._outcome = None
        self._error = None
        self._elapsed = 0
        self._can_stop = False
        self._warned = False
        self._phase = RecordingPhase.IDLE
        logger.info("recording.retry")

    async def cancel(self) -> None:
        """Discard the attempt and exit the flow."""
        await self._teardown("cancelled")
        self._phase = RecordingPhase.IDLE
        self._exited = True
        if self._on_exit is not None:
            self._on_exit()

    # ── Exit gate ────────────────────────────────────────────────────────

    def request_exit(self) -> ExitPrompt:
        """Ask for confirmation before discarding the attempt.

        Recording continues while the prompt is open.

        Returns:
            The prompt to show; its wording warns about losing the
            recording when one is in progress.
        """
        self._require_open()
        if self._phase not in _EXIT_ALLOWED:
            raise RecordingStateError(f"Cannot exit while {self._phase.value}")

        if self._phase == RecordingPhase.RECORDING:
            prompt = ExitPrompt(
                title="Stop Recording?",
                message=(
                    "Are you sure you want to cancel the recording? "
                    "Your recording in progress will be lost."
                ),
                confirm_label="Stop",
                cancel_label="Continue Recording",
            )
        else:
            prompt = ExitPrompt(
                title="Leave Assessment?",
                message="Are you sure you want to leave the speaking assessment?",
                confirm_label="Leave",
                cancel_label="Stay",
            )
        self._exit_prompt = prompt
        logger.info("recording.exit_requested", phase=self._phase.value)
        return prompt

    async def confirm_exit(self) -> None:
        """Tear the attempt down and return to IDLE."""
        self._require_open()
        if self._exit_prompt is None:
            raise RecordingStateError("No exit confirmation pending")
        phase = self._phase
        await self._teardown("exit_confirmed")
        self._phase = RecordingPhase.IDLE
        self._exited = True
        logger.info("recording.exited", from_phase=phase.value)
        if self._on_exit is not None:
            self._on_exit()

    def dismiss_exit(self) -> None:
        self._exit_prompt = None

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def aclose(self) -> None:
        """Abrupt teardown: cancel every timer and release the capture."""
        if self._closed:
            return
        await self._teardown("closed")
        self._closed = True

    async def _teardown(self, reason: str) -> None:
        cancelled = self._timers.cancel_all()
        if self._start_task is not None and not self._start_task.done():
            self._start_task.cancel()
        self._start_task = None
        self._countdown_remaining = None
        self._exit_prompt = None
        self._artifact = None
        await self._release_capture()
        logger.info("recording.teardown", reason=reason, cancelled_timers=cancelled)

    async def _release_capture(self) -> None:
        capture, self._capture = self._capture, None
        if capture is not None:
            await self._discard(capture)

    async def _discard(self, capture: CaptureDevice) -> None:
        try:
            await capture.discard()
        except Exception:
            logger.warning("recording.discard_failed", exc_info=True)

    def _require_open(self) -> None:
        if self._closed:
            raise RecordingStateError("Recording controller is closed")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
