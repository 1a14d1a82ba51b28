"""Provider rate-limit gate.

Tracks until when new send-for-signature attempts must be suppressed after the
provider answered 429. One instance is shared by every concurrent sender, so
every read and write of the blocked-until deadline happens under one lock.
The deadline is a monotonic ratchet: a shorter ``retryAfter`` observed while
already blocked never brings it forward.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from signdesk.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    blocked_for: float = 0.0

    @classmethod
    def allow(cls) -> "GateDecision":
        return cls(allowed=True)


@dataclass(frozen=True)
class RateLimitStatus:
    is_rate_limited: bool
    retry_after_seconds: int
    blocked_until: Optional[datetime]
    hits: int
    last_hit_at: Optional[datetime]
    message: str


def format_wait(seconds: float) -> str:
    whole = max(int(round(seconds)), 0)
    minutes = max((whole + 59) // 60, 1) if whole else 0
    return f"Rate limited. Retry after {whole} seconds ({minutes} minutes)"


class RateLimitGate:
    """Process-wide advisory gate in front of agreement creation."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._clock = clock
        self._wall_clock = wall_clock
        self._lock = threading.Lock()
        self._blocked_until: Optional[float] = None
        self._hits = 0
        self._last_hit_at: Optional[datetime] = None

    @property
    def blocked_until(self) -> Optional[float]:
        """Monotonic deadline, or None when not blocked."""
        with self._lock:
            return self._current_deadline()

    def _current_deadline(self) -> Optional[float]:
        if self._blocked_until is not None and self._clock() >= self._blocked_until:
            self._blocked_until = None
        return self._blocked_until

    def check_allowed(self) -> GateDecision:
        with self._lock:
            deadline = self._current_deadline()
            if deadline is None:
                return GateDecision.allow()
            return GateDecision(allowed=False, blocked_for=deadline - self._clock())

    def record_rate_limited(self, retry_after_seconds: float) -> float:
        """Block until ``now + retry_after_seconds`` unless already blocked for longer."""
        if retry_after_seconds <= 0:
            raise ValueError("retry_after_seconds must be positive")
        with self._lock:
            candidate = self._clock() + retry_after_seconds
            current = self._current_deadline()
            self._hits += 1
            self._last_hit_at = self._wall_clock()
            if current is None or candidate > current:
                self._blocked_until = candidate
            deadline = self._blocked_until
        logger.warning(
            "rate_limit_gate.blocked",
            retry_after_seconds=retry_after_seconds,
            extended=deadline == candidate,
        )
        return deadline

    def status(self) -> RateLimitStatus:
        with self._lock:
            deadline = self._current_deadline()
            remaining = 0.0 if deadline is None else deadline - self._clock()
            hits = self._hits
            last_hit_at = self._last_hit_at
        if deadline is None:
            return RateLimitStatus(False, 0, None, hits, last_hit_at, "Not rate limited")
        return RateLimitStatus(
            is_rate_limited=True,
            retry_after_seconds=int(round(remaining)),
            blocked_until=self._wall_clock() + timedelta(seconds=remaining),
            hits=hits,
            last_hit_at=last_hit_at,
            message=format_wait(remaining),
        )

    def reset(self) -> None:
        with self._lock:
            self._blocked_until = None
        logger.info("rate_limit_gate.reset")
