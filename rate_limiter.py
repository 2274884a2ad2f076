"""Process-wide admission control for the summarization provider."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Optional

from models import Admission, AdmissionKind, RequestBudget

logger = logging.getLogger(__name__)

WINDOW_MS = 60_000


def now_ms() -> int:
    return int(time.time() * 1000)


def month_start_ms(at_ms: int) -> int:
    dt = datetime.fromtimestamp(at_ms / 1000, tz=timezone.utc)
    start = dt.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return int(start.timestamp() * 1000)


def next_month_start_ms(at_ms: int) -> int:
    dt = datetime.fromtimestamp(month_start_ms(at_ms) / 1000, tz=timezone.utc)
    if dt.month == 12:
        nxt = dt.replace(year=dt.year + 1, month=1)
    else:
        nxt = dt.replace(month=dt.month + 1)
    return int(nxt.timestamp() * 1000)


def estimate_tokens(*texts: str) -> int:
    """Rough provider-agnostic estimate, about four characters per token."""
    chars = sum(len(t) for t in texts if t)
    return max(1, chars // 4 + 1)


class RateLimiter:
    """Sliding 60 s request window plus a calendar-month token budget.

    One instance is shared by every session in the process; ``admit`` is
    serialized so two sessions can never take the same slot.
    """

    def __init__(
        self,
        requests_per_minute: int,
        tokens_per_month: int,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._rpm = max(0, requests_per_minute)
        self._tokens_per_month = max(0, tokens_per_month)
        self._clock = clock or now_ms
        self._lock = threading.Lock()
        self._admitted_at: deque[int] = deque()
        now = self._clock()
        self._month_start = month_start_ms(now)
        self._month_end = next_month_start_ms(now)
        self._tokens_this_month = 0

    def admit(self, estimated_tokens: int) -> Admission:
        tokens = max(1, int(estimated_tokens))
        with self._lock:
            now = self._clock()
            self._roll_month(now)
            if self._tokens_this_month + tokens > self._tokens_per_month:
                reason = (
                    f"monthly token budget exhausted "
                    f"({self._tokens_this_month}/{self._tokens_per_month})"
                )
                logger.warning("rejecting %d-token request: %s", tokens, reason)
                return Admission(AdmissionKind.REJECTED, reason=reason)

            self._evict(now)
            if len(self._admitted_at) >= self._rpm:
                if self._admitted_at:
                    retry_after = self._admitted_at[0] + WINDOW_MS - now
                else:
                    retry_after = WINDOW_MS
                retry_after = max(1, retry_after)
                logger.debug("deferring request for %d ms", retry_after)
                return Admission(AdmissionKind.DEFERRED, retry_after_ms=retry_after)

            self._admitted_at.append(now)
            self._tokens_this_month += tokens
            return Admission(AdmissionKind.ADMITTED)

    def snapshot(self) -> RequestBudget:
        with self._lock:
            now = self._clock()
            self._roll_month(now)
            self._evict(now)
            return RequestBudget(
                requests_this_minute=len(self._admitted_at),
                window_start_ms=self._admitted_at[0] if self._admitted_at else now,
                tokens_this_month=self._tokens_this_month,
                month_start_ms=self._month_start,
            )

    def _evict(self, now: int) -> None:
        cutoff = now - WINDOW_MS
        while self._admitted_at and self._admitted_at[0] <= cutoff:
            self._admitted_at.popleft()

    def _roll_month(self, now: int) -> None:
        if now < self._month_end:
            return
        logger.info("token budget reset for new month")
        self._month_start = month_start_ms(now)
        self._month_end = next_month_start_ms(now)
        self._tokens_this_month = 0
