"""Prometheus metrics for the conversation session core.

Provides:
- Turn-state transition counter
- Help generation counters/histogram and the track_help_generation() helper
- Help skip counter (disabled, empty, session-end guard, dedup)
- Assessment submission counter
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from prometheus_client import Counter, Histogram

# ── Turn-State Metrics ───────────────────────────────────────────────────────

turn_state_transitions_total = Counter(
    "turn_state_transitions_total",
    "Derived conversation turn-state transitions",
    ["from_state", "to_state"],
)

turn_transport_errors_total = Counter(
    "turn_transport_errors_total",
    "Transport error events that forced a turn-state reset",
)

# ── Help Metrics ─────────────────────────────────────────────────────────────

help_generations_total = Counter(
    "help_generations_total",
    "Contextual help generation requests by outcome",
    ["language", "outcome"],
)

help_generation_duration_seconds = Histogram(
    "help_generation_duration_seconds",
    "Contextual help generation request duration in seconds",
    ["language"],
    buckets=(0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

help_skipped_total = Counter(
    "help_skipped_total",
    "Help generation attempts suppressed before a network call",
    ["reason"],
)

# ── Assessment Metrics ───────────────────────────────────────────────────────

assessment_submissions_total = Counter(
    "assessment_submissions_total",
    "Speaking assessment submissions by outcome",
    ["language", "outcome"],
)


@asynccontextmanager
async def track_help_generation(language: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks help generation metrics.

    Usage:
        async with track_help_generation("spanish") as tracker:
            content = await client.generate_help(...)
            tracker["outcome"] = "ready"

    The outcome defaults to "success" and becomes "error" when the body
    raises, unless the body already set a more specific outcome.
    """
    tracker: dict[str, Any] = {"outcome": "success"}
    start_time = time.perf_counter()

    try:
        yield tracker
    except Exception:
        if tracker["outcome"] == "success":
            tracker["outcome"] = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        help_generations_total.labels(language=language, outcome=tracker["outcome"]).inc()
        help_generation_duration_seconds.labels(language=language).observe(duration)
