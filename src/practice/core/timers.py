"""Single-shot cancellable timers on top of the asyncio event loop.

Every delayed decision in the session core (grace windows, help debounce,
countdown and recording ticks) goes through a SingleShotTimer so that
cancellation is mechanical: a timer owns at most one pending handle and
scheduling always cancels the previous one first.

The Clock protocol is the only seam to the event loop. LoopClock uses the
running asyncio loop; tests substitute a virtual clock that advances time
explicitly.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Protocol

import structlog

logger = structlog.get_logger(__name__)


class Cancelable(Protocol):
    """Handle returned by Clock.call_later (asyncio.TimerHandle compatible)."""

    def cancel(self) -> None: ...

    def cancelled(self) -> bool: ...


class Clock(Protocol):
    """Minimal scheduling surface used by the session components."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> Cancelable: ...

    def time(self) -> float: ...


class LoopClock:
    """Clock backed by the running asyncio event loop.

    The loop is resolved lazily on first use so components can be
    constructed outside of a running loop.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self._get_loop().call_later(delay, callback)

    def time(self) -> float:
        return self._get_loop().time()


class SingleShotTimer:
    """A named timer with at most one pending callback.

    Args:
        clock: Clock used to schedule the callback.
        name: Name used in log events.
    """

    def __init__(self, clock: Clock, name: str) -> None:
        self._clock = clock
        self._name = name
        self._handle: Cancelable | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def pending(self) -> bool:
        """True while a scheduled callback has not yet fired or been cancelled."""
        return self._handle is not None and not self._handle.cancelled()

    def schedule(self, delay: float, callback: Callable[[], None]) -> None:
        """Cancel any pending callback, then schedule ``callback`` after ``delay`` seconds."""
        self.cancel()

        def _fire() -> None:
            # Clear first so the callback may reschedule this same timer
            self._handle = None
            callback()

        self._handle = self._clock.call_later(delay, _fire)

    def cancel(self) -> bool:
        """Cancel the pending callback.

        Returns:
            True if a pending callback was cancelled, False if none was pending.
        """
        handle, self._handle = self._handle, None
        if handle is None or handle.cancelled():
            return False
        handle.cancel()
        logger.debug("timer.cancelled", timer=self._name)
        return True


class TimerGroup:
    """Owns a set of SingleShotTimers and cancels them together on teardown."""

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._timers: dict[str, SingleShotTimer] = {}

    def timer(self, name: str) -> SingleShotTimer:
        """Return the timer registered under ``name``, creating it on first use."""
        if name not in self._timers:
            self._timers[name] = SingleShotTimer(self._clock, name)
        return self._timers[name]

    @property
    def pending(self) -> list[str]:
        return [name for name, timer in self._timers.items() if timer.pending]

    def cancel_all(self) -> int:
        """Cancel every pending timer in the group.

        Returns:
            Number of timers that were actually pending.
        """
        return sum(1 for timer in self._timers.values() if timer.cancel())
