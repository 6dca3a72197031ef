"""Process-lifetime usage tracking.

One :class:`UsageTracker` is created at application startup and handed to
the batch scheduler.  Nothing is persisted; counts reset on restart or on
:meth:`UsageTracker.reset_usage_stats`.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter

from pageforge.core.models import GenerationResult, UsageStats

logger = logging.getLogger(__name__)


class UsageTracker:
    """Accumulates generation counts, cost and timing."""

    def __init__(self) -> None:
        # Tracking may be called from worker threads as well as the event loop.
        self._lock = threading.Lock()
        self._reset()

    def _reset(self) -> None:
        self._total = 0
        self._successes = 0
        self._total_cost = 0.0
        self._total_duration_ms = 0.0
        self._total_attempts = 0
        self._by_style: Counter[str] = Counter()
        self._by_complexity: Counter[str] = Counter()

    def track(self, result: GenerationResult, style: str, complexity: str) -> None:
        """Record one completed generation, successful or not."""
        with self._lock:
            self._total += 1
            if result.success:
                self._successes += 1
            self._total_cost += result.estimated_cost
            self._total_duration_ms += result.duration_ms
            self._total_attempts += result.attempts
            self._by_style[style] += 1
            self._by_complexity[complexity] += 1

    def get_usage_stats(self) -> UsageStats:
        """Return a snapshot of the counters."""
        with self._lock:
            if self._total == 0:
                return UsageStats()
            return UsageStats(
                total_generations=self._total,
                total_cost=self._total_cost,
                success_rate=self._successes / self._total,
                average_duration_ms=self._total_duration_ms / self._total,
                average_attempts=self._total_attempts / self._total,
                by_style=dict(self._by_style),
                by_complexity=dict(self._by_complexity),
            )

    def reset_usage_stats(self) -> None:
        with self._lock:
            self._reset()
        logger.info("Usage statistics reset")
