"""State-machine based session orchestration."""

from __future__ import annotations

import logging
import sys
import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Optional

from cancellation import CancelToken, run_cancellable
from config import AutoSummaryConfig, RateLimitConfig
from errors import (
    ERROR_MESSAGES,
    INGESTION_REJECTED,
    INITIALIZATION_FAILED,
    PERSISTENCE_FAILED,
    STOP_FAILED,
    STOP_TIMEOUT,
    SUMMARIZATION_FAILED,
    severity_for,
)
from interfaces import SessionStore, SpeechSource, Summarizer
from models import (
    Notice,
    Priority,
    Segment,
    SessionRecord,
    SessionState,
    SessionStats,
    Severity,
    StopResult,
    Summary,
)
from rate_limiter import RateLimiter, now_ms
from summary_scheduler import SummarizationScheduler
from transcript_buffer import TranscriptBuffer

logger = logging.getLogger(__name__)

StateCallback = Callable[[SessionState, SessionState], None]
SegmentCallback = Callable[[Segment], None]
TranscriptCallback = Callable[[tuple], None]
SummaryCallback = Callable[[Summary], None]
NoticeCallback = Callable[[Notice], None]
StatsCallback = Callable[[SessionStats], None]

_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}

_STARTABLE = (SessionState.IDLE, SessionState.STOPPED, SessionState.FAILED)
_STOPPABLE = (SessionState.LISTENING, SessionState.PAUSED)


class SessionController:
    """Owns one recording session at a time.

    Segments from the speech source are committed to the transcript buffer
    under the controller lock; crossing the auto-summary thresholds hands an
    incremental request to the per-session scheduler without waiting on it.
    ``stop`` runs the bounded shutdown sequence and hands the finished
    record to the store exactly once per session.
    """

    def __init__(
        self,
        speech_source: SpeechSource,
        summarizer: Summarizer,
        store: SessionStore,
        rate_limiter: RateLimiter,
        auto_summary: Optional[AutoSummaryConfig] = None,
        limits: Optional[RateLimitConfig] = None,
        on_state_change: Optional[StateCallback] = None,
        on_interim: Optional[SegmentCallback] = None,
        on_transcript: Optional[TranscriptCallback] = None,
        on_summary: Optional[SummaryCallback] = None,
        on_notice: Optional[NoticeCallback] = None,
        on_stats: Optional[StatsCallback] = None,
        clock: Optional[Callable[[], int]] = None,
        notice_history: int = 50,
    ) -> None:
        self._source = speech_source
        self._summarizer = summarizer
        self._store = store
        self._limiter = rate_limiter
        self._auto = auto_summary or AutoSummaryConfig()
        self._limits = limits or RateLimitConfig()
        self._on_state_change = on_state_change
        self._on_interim = on_interim
        self._on_transcript = on_transcript
        self._on_summary = on_summary
        self._on_notice = on_notice
        self._on_stats = on_stats
        self._clock = clock or now_ms

        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._generation = 0
        self._session_id = ""
        self._started_at_ms = 0
        self._stopped_at_ms: Optional[int] = None
        self._buffer = TranscriptBuffer()
        self._buffer.add_listener(self._handle_buffer_change)
        self._scheduler: Optional[SummarizationScheduler] = None
        self._last_summary_attempt_ms: Optional[int] = None
        self._rejected_segments = 0
        self._notices: deque[Notice] = deque(maxlen=notice_history)
        self._stop_done = threading.Event()
        self._stop_result: Optional[StopResult] = None

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def transcript(self) -> TranscriptBuffer:
        return self._buffer

    @property
    def current_summary(self) -> Optional[Summary]:
        scheduler = self._scheduler
        return scheduler.current_summary if scheduler else None

    def summary(self, summary_id: str) -> Optional[Summary]:
        scheduler = self._scheduler
        return scheduler.summary(summary_id) if scheduler else None

    def notices(self) -> list[Notice]:
        return list(self._notices)

    def stats(self) -> SessionStats:
        scheduler = self._scheduler
        summaries = scheduler.summaries() if scheduler else []
        if self._started_at_ms:
            end = self._stopped_at_ms if self._stopped_at_ms is not None else self._clock()
            duration = max(0, (end - self._started_at_ms) // 1000)
        else:
            duration = 0
        return SessionStats(
            duration_sec=duration,
            final_segments=self._buffer.final_count(),
            word_count=self._buffer.word_count(),
            summary_generated=bool(summaries),
            summaries_generated=len(summaries),
            rejected_segments=self._rejected_segments,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(self) -> bool:
        with self._lock:
            if self._state not in _STARTABLE:
                return False
            self._transition(SessionState.INITIALIZING)
            self._generation += 1
            generation = self._generation
            self._started_at_ms = self._clock()
            self._stopped_at_ms = None
            self._session_id = f"session_{self._started_at_ms}_{uuid.uuid4().hex[:6]}"
            self._buffer.reset()
            self._last_summary_attempt_ms = None
            self._rejected_segments = 0
            self._stop_done = threading.Event()
            self._stop_result = None
            self._scheduler = SummarizationScheduler(
                session_id=self._session_id,
                buffer=self._buffer,
                rate_limiter=self._limiter,
                summarizer=self._summarizer,
                per_call_timeout_ms=self._limits.per_call_timeout_ms,
                max_retry_attempts=self._limits.max_retry_attempts,
                backoff_base_ms=self._limits.backoff_base_ms,
                on_summary=self._handle_summary,
                on_notice=self._notice,
                clock=self._clock,
            )
            try:
                self._source.begin(lambda segment: self._handle_source_segment(generation, segment))
            except Exception as exc:
                self._scheduler = None
                self._transition(SessionState.FAILED)
                self._notice(INITIALIZATION_FAILED, f"{ERROR_MESSAGES[INITIALIZATION_FAILED]} {exc}")
                return False
            self._scheduler.start()
            self._transition(SessionState.LISTENING)
            logger.info("session %s listening", self._session_id)
            return True

    def ingest(self, segment: Segment) -> bool:
        with self._lock:
            if self._state != SessionState.LISTENING:
                self._rejected_segments += 1
                logger.info(
                    "%s: segment %s dropped in state %s",
                    INGESTION_REJECTED,
                    segment.id,
                    self._state.value,
                )
                return False
            accepted = self._buffer.upsert(segment)
            if accepted and segment.is_final:
                self._maybe_auto_summarize()
                self._emit(self._on_stats, self.stats())
            return accepted

    def pause(self) -> bool:
        with self._lock:
            if self._state != SessionState.LISTENING:
                return False
            self._transition(SessionState.PAUSED)
            return True

    def resume(self) -> bool:
        with self._lock:
            if self._state != SessionState.PAUSED:
                return False
            self._transition(SessionState.LISTENING)
            return True

    def request_summary(self) -> bool:
        """Ask for an incremental summary now, ignoring the auto thresholds.

        True when a request was queued or folded into one already pending.
        """
        with self._lock:
            scheduler = self._scheduler
            if self._state not in _STOPPABLE or scheduler is None or not scheduler.running:
                return False
            scheduler.enqueue(Priority.INCREMENTAL)
            self._last_summary_attempt_ms = self._clock()
            logger.info("summary requested for %s", self._session_id)
            return True

    def stop(self) -> Optional[StopResult]:
        with self._lock:
            if self._state == SessionState.STOPPING:
                waiter: Optional[threading.Event] = self._stop_done
            elif self._state in _STOPPABLE:
                waiter = None
                self._transition(SessionState.STOPPING)
            elif self._state == SessionState.STOPPED:
                return self._stop_result
            else:
                return None

        if waiter is not None:
            waiter.wait()
            return self._stop_result

        try:
            result = self._run_stop_sequence()
        except Exception as exc:
            logger.exception("stop sequence failed for %s", self._session_id)
            with self._lock:
                self._transition(SessionState.FAILED)
            self._notice(STOP_FAILED, f"{ERROR_MESSAGES[STOP_FAILED]} {exc}")
            result = StopResult(state=SessionState.FAILED, saved=False, error_code=STOP_FAILED)
            self._stop_result = result
        self._stop_done.set()
        return result

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run_stop_sequence(self) -> StopResult:
        warnings: list[str] = []
        scheduler = self._scheduler
        deadline = CancelToken.with_deadline(self._limits.stop_deadline_ms, "stop deadline")
        if scheduler is not None:
            # incremental summaries still running get until the deadline
            deadline.add_callback(scheduler.preempt_incremental)

        if not self._end_speech_source(deadline):
            warnings.append(STOP_TIMEOUT)
            self._notice(
                STOP_TIMEOUT,
                f"{ERROR_MESSAGES[STOP_TIMEOUT]} Gave up after {self._limits.stop_deadline_ms} ms.",
            )
        with self._lock:
            # late segments from the discarded source are ignored from here on
            self._generation += 1

        summary: Optional[Summary] = None
        if scheduler is not None:
            if self._buffer.final_count() > 0:
                summary = self._final_summary(scheduler)
            if summary is None:
                summary = scheduler.current_summary
            deadline.dispose()
            scheduler.shutdown()
        else:
            deadline.dispose()

        with self._lock:
            self._stopped_at_ms = self._clock()
            record = self._build_record(summary, timed_out=bool(warnings))

        saved = True
        error_code = ""
        try:
            self._store.save(record)
        except Exception as exc:
            saved = False
            error_code = PERSISTENCE_FAILED
            self._notice(PERSISTENCE_FAILED, f"{ERROR_MESSAGES[PERSISTENCE_FAILED]} {exc}")

        result = StopResult(
            state=SessionState.STOPPED,
            saved=saved,
            record=record,
            error_code=error_code,
            warnings=warnings,
        )
        with self._lock:
            self._stop_result = result
            self._transition(SessionState.STOPPED)
        self._emit(self._on_stats, self.stats())
        logger.info("session %s stopped (saved=%s)", record.id, saved)
        return result

    def _end_speech_source(self, deadline: CancelToken) -> bool:
        """Ask the source to end; False if it was still busy at the deadline."""
        outcome = run_cancellable(self._source.end, deadline, name="speech-source-end")
        if not outcome.finished:
            logger.warning(
                "speech source did not end within %d ms, discarding it",
                self._limits.stop_deadline_ms,
            )
            return False
        if outcome.error is not None:
            logger.warning("speech source end failed: %s", outcome.error)
        return True

    def _final_summary(self, scheduler: SummarizationScheduler) -> Optional[Summary]:
        request = scheduler.enqueue(Priority.FINAL)
        if request is None:
            return None
        wait_s = (self._limits.per_call_timeout_ms + self._limits.stop_deadline_ms) / 1000.0
        if not request.wait(wait_s):
            request.token.cancel("final summary timeout")
            self._notice(SUMMARIZATION_FAILED, "Final summary timed out, keeping the last update.")
            return None
        return request.result

    def _build_record(self, summary: Optional[Summary], timed_out: bool) -> SessionRecord:
        scheduler = self._scheduler
        started = datetime.fromtimestamp(self._started_at_ms / 1000, tz=timezone.utc)
        end = self._stopped_at_ms if self._stopped_at_ms is not None else self._clock()
        return SessionRecord(
            id=self._session_id,
            date=started.isoformat(),
            duration_sec=max(0, (end - self._started_at_ms) // 1000),
            segments=self._buffer.final_segments(),
            summary=summary,
            metadata={
                "platform": sys.platform,
                "audio_quality": 1.0,
                "processing_time_ms": summary.processing_time_ms if summary else 0,
                "rejected_segments": self._rejected_segments,
                "summaries_generated": len(scheduler.summaries()) if scheduler else 0,
                "stop_timed_out": timed_out,
            },
        )

    def _maybe_auto_summarize(self) -> None:
        auto = self._auto
        if not auto.enable_auto_generation or self._scheduler is None:
            return
        if self._buffer.final_count() < auto.min_segments:
            return
        if self._buffer.word_count() < auto.min_words:
            return
        now = self._clock()
        last = self._last_summary_attempt_ms
        if last is not None and now - last < auto.interval_seconds * 1000:
            return
        if self._scheduler.enqueue(Priority.INCREMENTAL) is not None:
            self._last_summary_attempt_ms = now

    def _handle_source_segment(self, generation: int, segment: Segment) -> None:
        if generation != self._generation:
            logger.debug("ignoring segment %s from a discarded source", segment.id)
            return
        self.ingest(segment)

    def _handle_buffer_change(self, segment: Segment) -> None:
        if segment.is_final:
            self._emit(self._on_transcript, self._buffer.final_segments())
        else:
            self._emit(self._on_interim, segment)

    def _handle_summary(self, summary: Summary) -> None:
        self._emit(self._on_summary, summary)
        self._emit(self._on_stats, self.stats())

    def _notice(self, code: str, message: str) -> None:
        notice = Notice(
            code=code,
            severity=severity_for(code),
            message=message,
            timestamp_ms=self._clock(),
            session_id=self._session_id,
        )
        self._notices.append(notice)
        logger.log(_LOG_LEVELS[notice.severity], "%s: %s", code, message)
        self._emit(self._on_notice, notice)

    def _emit(self, callback: Optional[Callable], *args: object) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("session observer failed")

    def _transition(self, to_state: SessionState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        self._emit(self._on_state_change, from_state, to_state)


def format_duration(seconds: int) -> str:
    hours, rest = divmod(max(0, int(seconds)), 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"
