"""Shared fixtures for the session core tests.

Provides:
- VirtualClock: deterministic Clock whose time only moves on advance()
- Fake API client with AsyncMock endpoints
- Fake capture device for the recording controller
- Settings cache reset between tests
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.practice.config import get_settings


class VirtualHandle:
    """Cancelable handle returned by VirtualClock.call_later."""

    def __init__(self, when: float, seq: int, callback: Callable[[], None]) -> None:
        self.when = when
        self.seq = seq
        self.callback = callback
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


class VirtualClock:
    """Clock that fires callbacks in (time, scheduling order) as time is advanced.

    After every fired callback the event loop is drained so tasks spawned
    by the callback (help generation, forced stop) run before the next
    callback is considered.
    """

    def __init__(self) -> None:
        self._now = 0.0
        self._seq = 0
        self._handles: list[VirtualHandle] = []

    def time(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> VirtualHandle:
        self._seq += 1
        handle = VirtualHandle(self._now + max(0.0, delay), self._seq, callback)
        self._handles.append(handle)
        return handle

    async def settle(self) -> None:
        await settle()

    @property
    def pending(self) -> int:
        return sum(1 for handle in self._handles if not handle.cancelled())

    async def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while True:
            due = [h for h in self._handles if not h.cancelled() and h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: (h.when, h.seq))
            self._handles.remove(handle)
            self._now = handle.when
            handle.callback()
            await settle()
        self._now = target
        self._handles = [h for h in self._handles if not h.cancelled()]
        await settle()


async def settle(rounds: int = 20) -> None:
    """Let spawned tasks run to completion against immediate mocks."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeCapture:
    """Capture device recording the calls made on it."""

    def __init__(self, artifact: bytes = b"RIFF-fake-wav") -> None:
        self.artifact = artifact
        self.started = False
        self.stopped = False
        self.discarded = False
        self.start_error: Exception | None = None

    async def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    async def stop(self) -> bytes:
        self.stopped = True
        return self.artifact

    async def discard(self) -> None:
        self.discarded = True


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def api_client() -> MagicMock:
    """PracticeApiClient stand-in with AsyncMock endpoints."""
    client = MagicMock()
    client.generate_help = AsyncMock()
    client.get_help_settings = AsyncMock()
    client.update_help_settings = AsyncMock(return_value=None)
    client.track_help_usage = AsyncMock(return_value=None)
    client.assess_speaking = AsyncMock()
    return client


@pytest.fixture
def captures() -> list[FakeCapture]:
    """Every capture handed out by capture_factory, in order."""
    return []


@pytest.fixture
def capture_factory(captures: list[FakeCapture]) -> Callable[[], FakeCapture]:
    def _factory() -> FakeCapture:
        capture = FakeCapture()
        captures.append(capture)
        return capture

    return _factory
