"""Sequential summarization worker for one recording session.

Requests are drained strictly one at a time by a single daemon thread, so
summaries merge into one running document without racing. The transcript
window of a request is resolved when the request executes, against the
latest buffer state; an incremental request queued early therefore also
covers whatever was ingested while it waited.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from cancellation import CancelToken, run_cancellable
from errors import (
    RATE_LIMIT_EXHAUSTED,
    SUMMARIZATION_FAILED,
    SummarizationCallFailure,
    map_provider_exception,
)
from interfaces import Summarizer
from models import AdmissionKind, Priority, Segment, Summary, SummaryFields
from rate_limiter import RateLimiter, estimate_tokens, now_ms
from transcript_buffer import TranscriptBuffer, join_segments

logger = logging.getLogger(__name__)

NoticeCallback = Callable[[str, str], None]
SummaryCallback = Callable[[Summary], None]

CANCELLED = "CANCELLED"
EMPTY_WINDOW = "EMPTY_WINDOW"


@dataclass
class SummaryRequest:
    priority: Priority
    generation: int
    attempts: int = 0
    token: CancelToken = field(default_factory=CancelToken)
    result: Optional[Summary] = None
    error_code: str = ""
    _done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def is_final(self) -> bool:
        return self.priority == Priority.FINAL

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def complete(self, result: Optional[Summary] = None, error_code: str = "") -> None:
        if self._done.is_set():
            return
        self.result = result
        self.error_code = error_code
        self._done.set()


class SummarizationScheduler:
    def __init__(
        self,
        session_id: str,
        buffer: TranscriptBuffer,
        rate_limiter: RateLimiter,
        summarizer: Summarizer,
        per_call_timeout_ms: int = 30_000,
        max_retry_attempts: int = 3,
        backoff_base_ms: int = 1_000,
        budget_hint_tokens: int = 1_024,
        on_summary: Optional[SummaryCallback] = None,
        on_notice: Optional[NoticeCallback] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._session_id = session_id
        self._buffer = buffer
        self._limiter = rate_limiter
        self._summarizer = summarizer
        self._per_call_timeout_s = per_call_timeout_ms / 1000.0
        self._max_attempts = max(1, max_retry_attempts)
        self._backoff_base_ms = backoff_base_ms
        self._budget_hint = budget_hint_tokens
        self._on_summary = on_summary
        self._on_notice = on_notice
        self._clock = clock or now_ms

        self._cond = threading.Condition()
        self._queue: deque[SummaryRequest] = deque()
        self._in_flight: Optional[SummaryRequest] = None
        self._generation = 0
        self._token = CancelToken()
        self._thread: Optional[threading.Thread] = None
        self._running = False

        self._current: Optional[Summary] = None
        self._history: dict[str, Summary] = {}
        self._summarized: dict[str, str] = {}
        self._executed = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def current_summary(self) -> Optional[Summary]:
        return self._current

    @property
    def executed_requests(self) -> int:
        """Number of summarizer calls made, retries included."""
        return self._executed

    def summary(self, summary_id: str) -> Optional[Summary]:
        return self._history.get(summary_id)

    def summaries(self) -> list[Summary]:
        return list(self._history.values())

    @property
    def running(self) -> bool:
        return self._running

    def pending(self) -> int:
        with self._cond:
            return len(self._queue) + (1 if self._in_flight is not None else 0)

    def start(self) -> None:
        with self._cond:
            if self._running:
                return
            self._generation += 1
            self._token = CancelToken()
            self._running = True
            self._thread = threading.Thread(
                target=self._worker,
                args=(self._token,),
                name=f"summary-worker-{self._session_id}",
                daemon=True,
            )
            self._thread.start()

    def enqueue(self, priority: Priority = Priority.INCREMENTAL) -> Optional[SummaryRequest]:
        """Queue a request; None when it coalesced or the worker is down."""
        with self._cond:
            if not self._running:
                return None
            if priority == Priority.INCREMENTAL and self._has_incremental():
                logger.debug("incremental request coalesced into pending one")
                return None
            request = SummaryRequest(priority=priority, generation=self._generation)
            self._token.add_callback(request.token.cancel)
            if request.is_final:
                self._queue.appendleft(request)
            else:
                self._queue.append(request)
            self._cond.notify_all()
            return request

    def preempt_incremental(self) -> None:
        """Abandon the in-flight incremental call and drop queued ones."""
        with self._cond:
            dropped = [r for r in self._queue if not r.is_final]
            self._queue = deque(r for r in self._queue if r.is_final)
            in_flight = self._in_flight
        for request in dropped:
            request.token.cancel("preempted")
            request.complete(error_code=CANCELLED)
        if in_flight is not None and not in_flight.is_final:
            logger.info("abandoning in-flight incremental summary")
            in_flight.token.cancel("preempted")

    def shutdown(self, join_timeout_s: float = 1.0) -> None:
        with self._cond:
            if not self._running:
                return
            self._running = False
            self._generation += 1
            pending = list(self._queue)
            self._queue.clear()
            thread = self._thread
            self._thread = None
            self._token.cancel("shutdown")
            self._cond.notify_all()
        for request in pending:
            request.complete(error_code=CANCELLED)
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=join_timeout_s)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _has_incremental(self) -> bool:
        in_flight = self._in_flight
        if in_flight is not None and not in_flight.is_final and not in_flight.done:
            return True
        return any(not r.is_final for r in self._queue)

    def _worker(self, token: CancelToken) -> None:
        while True:
            with self._cond:
                while not self._queue and not token.cancelled:
                    self._cond.wait()
                if token.cancelled:
                    return
                request = self._queue.popleft()
                self._in_flight = request
            try:
                self._process(request)
            except Exception:
                logger.exception("summary worker failed on %s request", request.priority.value)
                request.complete(error_code=SUMMARIZATION_FAILED)
            finally:
                with self._cond:
                    if self._in_flight is request:
                        self._in_flight = None
                if request.done:
                    token.remove_callback(request.token.cancel)

    def _process(self, request: SummaryRequest) -> None:
        if request.token.cancelled:
            request.complete(error_code=CANCELLED)
            return

        segments, total = self._buffer.window(None if request.is_final else self._summarized)
        text = join_segments(segments)
        if not text:
            request.complete(error_code=EMPTY_WINDOW)
            return
        prior = "" if request.is_final or self._current is None else self._current.content
        estimate = estimate_tokens(text, prior) + self._budget_hint

        while True:
            admission = self._limiter.admit(estimate)
            if admission.kind == AdmissionKind.REJECTED:
                self._notice(RATE_LIMIT_EXHAUSTED, admission.reason)
                request.complete(error_code=RATE_LIMIT_EXHAUSTED)
                return
            if admission.kind == AdmissionKind.DEFERRED:
                if self._defer(request, admission.retry_after_ms):
                    continue
                return

            request.attempts += 1
            self._executed += 1
            started = time.monotonic()
            outcome = run_cancellable(
                lambda: self._summarizer.summarize(text, prior, self._budget_hint),
                request.token,
                timeout_s=self._per_call_timeout_s,
                name=f"summarize-{self._session_id}",
            )
            if request.token.cancelled or request.generation != self._generation:
                logger.info("discarding stale summary response")
                request.complete(error_code=CANCELLED)
                return

            if outcome.finished and outcome.error is None:
                elapsed_ms = int((time.monotonic() - started) * 1000)
                summary = self._merge(request, outcome.value, segments, total, elapsed_ms)
                request.complete(result=summary)
                self._emit_summary(summary)
                return

            if not outcome.finished:
                failure = SummarizationCallFailure("summarizer call timed out", retryable=True)
            else:
                failure = map_provider_exception(outcome.error)
            logger.warning(
                "summary attempt %d/%d failed: %s",
                request.attempts,
                self._max_attempts,
                failure,
            )
            if request.attempts >= self._max_attempts or not failure.retryable:
                self._notice(
                    SUMMARIZATION_FAILED,
                    f"summary dropped after {request.attempts} attempt(s): {failure}",
                )
                request.complete(error_code=failure.code)
                return
            backoff_ms = self._backoff_base_ms * (2 ** (request.attempts - 1))
            if request.token.wait(backoff_ms / 1000.0):
                request.complete(error_code=CANCELLED)
                return

    def _defer(self, request: SummaryRequest, retry_after_ms: int) -> bool:
        """Wait out a deferral. False when the request left the worker meanwhile."""
        logger.debug("summary request deferred for %d ms", retry_after_ms)
        if request.token.wait(retry_after_ms / 1000.0):
            request.complete(error_code=CANCELLED)
            return False
        with self._cond:
            if request.is_final or not self._queue or not self._queue[0].is_final:
                return True
            # a final pass arrived while waiting; run it first, this one right behind
            index = sum(1 for r in self._queue if r.is_final)
            self._queue.insert(index, request)
            self._in_flight = None
            return False

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def _merge(
        self,
        request: SummaryRequest,
        fields: SummaryFields,
        segments: tuple[Segment, ...],
        total: int,
        processing_ms: int,
    ) -> Summary:
        previous = self._current
        if request.is_final or previous is None:
            key_points = _dedupe(fields.key_points)
            decisions = _dedupe(fields.decisions)
            action_items = _dedupe(fields.action_items)
            quotes = _dedupe(fields.quotes)
        else:
            key_points = _dedupe(previous.key_points, fields.key_points)
            decisions = _dedupe(previous.decisions, fields.decisions)
            action_items = _dedupe(previous.action_items, fields.action_items)
            quotes = _dedupe(previous.quotes, fields.quotes)

        summary = Summary(
            id=f"{self._session_id}-summary-{len(self._history) + 1}",
            session_id=self._session_id,
            content=fields.content,
            key_points=key_points,
            decisions=decisions,
            action_items=action_items,
            quotes=quotes,
            generated_at=datetime.fromtimestamp(self._clock() / 1000, tz=timezone.utc).isoformat(),
            processing_time_ms=processing_ms,
            covers_up_to_segment_index=total,
        )
        self._history[summary.id] = summary
        self._current = summary
        if request.is_final:
            self._summarized.clear()
        self._summarized.update((seg.id, seg.text) for seg in segments)
        return summary

    def _emit_summary(self, summary: Summary) -> None:
        if self._on_summary:
            try:
                self._on_summary(summary)
            except Exception:
                logger.exception("summary observer failed")

    def _notice(self, code: str, message: str) -> None:
        logger.warning("%s: %s", code, message)
        if self._on_notice:
            try:
                self._on_notice(code, message)
            except Exception:
                logger.exception("notice observer failed")


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip().casefold().rstrip(".!?;:")


def _dedupe(*groups: Iterable[str]) -> tuple[str, ...]:
    seen: set[str] = set()
    out: list[str] = []
    for group in groups:
        for item in group:
            key = _normalize(item)
            if not key or key in seen:
                continue
            seen.add(key)
            out.append(item.strip())
    return tuple(out)
