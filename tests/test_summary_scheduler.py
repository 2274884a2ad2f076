from __future__ import annotations

import threading
import time
from typing import Callable

import pytest

from errors import AUTH_FAILED, NETWORK_ERROR, RATE_LIMIT_EXHAUSTED, SUMMARIZATION_FAILED
from models import Admission, AdmissionKind, Priority, Segment, SummaryFields
from rate_limiter import RateLimiter
from summary_scheduler import CANCELLED, EMPTY_WINDOW, SummarizationScheduler
from transcript_buffer import TranscriptBuffer


class FakeSummarizer:
    """Records calls; optional per-call gates hold a call until released."""

    def __init__(self, results: list | None = None) -> None:
        self.calls: list[tuple[str, str, int]] = []
        self.results = list(results or [])
        self.gates: dict[int, threading.Event] = {}
        self._lock = threading.Lock()

    def gate(self, call_index: int) -> threading.Event:
        event = threading.Event()
        self.gates[call_index] = event
        return event

    def summarize(self, transcript_window: str, prior_summary: str, budget_hint: int) -> SummaryFields:
        with self._lock:
            index = len(self.calls)
            self.calls.append((transcript_window, prior_summary, budget_hint))
            result = self.results.pop(0) if self.results else None
        gate = self.gates.get(index)
        if gate is not None:
            gate.wait(5.0)
        if isinstance(result, Exception):
            raise result
        if result is None:
            return SummaryFields(content=f"summary of: {transcript_window}")
        return result


class ScriptedLimiter:
    def __init__(self, admissions: list[Admission]) -> None:
        self.admissions = list(admissions)
        self.calls = 0

    def admit(self, estimated_tokens: int) -> Admission:
        self.calls += 1
        if self.admissions:
            return self.admissions.pop(0)
        return Admission(AdmissionKind.ADMITTED)


def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _add(buffer: TranscriptBuffer, *words: str) -> None:
    start = buffer.final_count()
    for i, word in enumerate(words):
        buffer.upsert(Segment(id=f"s{start + i}", text=word, timestamp_ms=(start + i) * 1000, is_final=True))


@pytest.fixture
def buffer() -> TranscriptBuffer:
    return TranscriptBuffer()


@pytest.fixture
def notices() -> list[tuple[str, str]]:
    return []


def _scheduler(buffer, summarizer, notices, limiter=None, **kwargs) -> SummarizationScheduler:
    scheduler = SummarizationScheduler(
        session_id="session_1",
        buffer=buffer,
        rate_limiter=limiter or RateLimiter(100, 1_000_000),
        summarizer=summarizer,
        backoff_base_ms=kwargs.pop("backoff_base_ms", 1),
        on_notice=lambda code, message: notices.append((code, message)),
        **kwargs,
    )
    scheduler.start()
    return scheduler


# ---------------------------------------------------------------------------
# Queueing
# ---------------------------------------------------------------------------


def test_enqueue_before_start_is_refused(buffer, notices) -> None:
    scheduler = SummarizationScheduler("s", buffer, RateLimiter(1, 1), FakeSummarizer())
    assert scheduler.enqueue(Priority.INCREMENTAL) is None


def test_incremental_requests_coalesce(buffer, notices) -> None:
    summarizer = FakeSummarizer()
    gate = summarizer.gate(0)
    _add(buffer, "hello", "world")
    scheduler = _scheduler(buffer, summarizer, notices)

    first = scheduler.enqueue(Priority.INCREMENTAL)
    second = scheduler.enqueue(Priority.INCREMENTAL)
    gate.set()

    assert first is not None
    assert second is None
    assert first.wait(2.0)
    assert _wait_until(lambda: scheduler.pending() == 0)
    assert len(summarizer.calls) == 1
    assert summarizer.calls[0][0] == "hello world"
    scheduler.shutdown()


def test_window_is_resolved_when_request_runs(buffer, notices) -> None:
    summarizer = FakeSummarizer()
    gate = summarizer.gate(0)
    _add(buffer, "one")
    scheduler = _scheduler(buffer, summarizer, notices)

    blocker = scheduler.enqueue(Priority.FINAL)
    assert _wait_until(lambda: len(summarizer.calls) == 1)
    queued = scheduler.enqueue(Priority.INCREMENTAL)
    _add(buffer, "two", "three")
    gate.set()

    assert blocker.wait(2.0)
    assert queued.wait(2.0)
    # the final covered "one"; the incremental picks up everything after it
    assert summarizer.calls[1][0] == "two three"
    scheduler.shutdown()


def test_final_request_jumps_the_queue(buffer, notices) -> None:
    summarizer = FakeSummarizer()
    gate = summarizer.gate(0)
    _add(buffer, "a", "b")
    scheduler = _scheduler(buffer, summarizer, notices)

    running = scheduler.enqueue(Priority.FINAL)
    assert _wait_until(lambda: len(summarizer.calls) == 1)
    incremental = scheduler.enqueue(Priority.INCREMENTAL)
    final = scheduler.enqueue(Priority.FINAL)
    _add(buffer, "c")
    gate.set()

    assert running.wait(2.0)
    assert final.wait(2.0)
    assert incremental.wait(2.0)
    assert summarizer.calls[1][0] == "a b c"
    assert summarizer.calls[1][1] == ""
    # nothing is left for the incremental once the final covered everything
    assert incremental.error_code == EMPTY_WINDOW
    assert len(summarizer.calls) == 2
    scheduler.shutdown()


def test_empty_window_skips_provider(buffer, notices) -> None:
    summarizer = FakeSummarizer()
    scheduler = _scheduler(buffer, summarizer, notices)

    request = scheduler.enqueue(Priority.INCREMENTAL)
    assert request.wait(2.0)
    assert request.error_code == EMPTY_WINDOW
    assert summarizer.calls == []
    scheduler.shutdown()


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


def test_incremental_merge_appends_and_dedupes(buffer, notices) -> None:
    summarizer = FakeSummarizer(
        [
            SummaryFields(content="first", key_points=("Budget approved.",)),
            SummaryFields(
                content="second",
                key_points=("budget  approved", "Hire two engineers"),
                decisions=("Ship in May",),
            ),
        ]
    )
    _add(buffer, "a")
    scheduler = _scheduler(buffer, summarizer, notices)

    first = scheduler.enqueue(Priority.INCREMENTAL)
    assert first.wait(2.0)
    assert _wait_until(lambda: scheduler.pending() == 0)
    _add(buffer, "b")
    second = scheduler.enqueue(Priority.INCREMENTAL)
    assert second.wait(2.0)

    assert summarizer.calls[1][0] == "b"
    assert summarizer.calls[1][1] == "first"

    current = scheduler.current_summary
    assert current is second.result
    assert current.content == "second"
    assert current.key_points == ("Budget approved.", "Hire two engineers")
    assert current.decisions == ("Ship in May",)
    assert current.covers_up_to_segment_index == 2

    # history is immutable and addressable by id
    assert first.result.id != second.result.id
    assert scheduler.summary(first.result.id).content == "first"
    assert [s.id for s in scheduler.summaries()] == [first.result.id, second.result.id]
    scheduler.shutdown()


def test_late_segment_is_summarized_once_and_nothing_repeats(buffer, notices) -> None:
    summarizer = FakeSummarizer()
    buffer.upsert(Segment(id="A", text="alpha", timestamp_ms=0, is_final=True))
    buffer.upsert(Segment(id="B", text="bravo", timestamp_ms=1000, is_final=True))
    scheduler = _scheduler(buffer, summarizer, notices)

    assert scheduler.enqueue(Priority.INCREMENTAL).wait(2.0)
    assert _wait_until(lambda: scheduler.pending() == 0)
    buffer.upsert(Segment(id="C", text="charlie", timestamp_ms=500, is_final=True))
    second = scheduler.enqueue(Priority.INCREMENTAL)
    assert second.wait(2.0)

    assert [call[0] for call in summarizer.calls] == ["alpha bravo", "charlie"]
    assert second.result.covers_up_to_segment_index == 3
    assert _wait_until(lambda: scheduler.pending() == 0)
    assert scheduler.enqueue(Priority.INCREMENTAL).wait(2.0)
    assert len(summarizer.calls) == 2
    scheduler.shutdown()


def test_corrected_segment_is_summarized_again(buffer, notices) -> None:
    summarizer = FakeSummarizer()
    buffer.upsert(Segment(id="A", text="alpha", timestamp_ms=0, is_final=True))
    buffer.upsert(Segment(id="B", text="brovo", timestamp_ms=1000, is_final=True))
    scheduler = _scheduler(buffer, summarizer, notices)

    assert scheduler.enqueue(Priority.INCREMENTAL).wait(2.0)
    assert _wait_until(lambda: scheduler.pending() == 0)
    buffer.upsert(Segment(id="B", text="bravo", timestamp_ms=1000, is_final=True))
    assert scheduler.enqueue(Priority.INCREMENTAL).wait(2.0)

    assert [call[0] for call in summarizer.calls] == ["alpha brovo", "bravo"]
    scheduler.shutdown()


def test_final_summary_replaces_running_one(buffer, notices) -> None:
    summarizer = FakeSummarizer(
        [
            SummaryFields(content="partial", key_points=("a", "b")),
            SummaryFields(content="complete", key_points=("c",)),
        ]
    )
    _add(buffer, "x", "y")
    scheduler = _scheduler(buffer, summarizer, notices)

    assert scheduler.enqueue(Priority.INCREMENTAL).wait(2.0)
    final = scheduler.enqueue(Priority.FINAL)
    assert final.wait(2.0)

    assert summarizer.calls[1] == ("x y", "", 1024)
    assert scheduler.current_summary.content == "complete"
    assert scheduler.current_summary.key_points == ("c",)
    assert scheduler.current_summary.session_id == "session_1"
    scheduler.shutdown()


def test_summary_observer_failure_is_contained(buffer, notices) -> None:
    _add(buffer, "a")

    def boom(_summary) -> None:
        raise RuntimeError("boom")

    scheduler = SummarizationScheduler(
        "s", buffer, RateLimiter(10, 1_000_000), FakeSummarizer(), on_summary=boom
    )
    scheduler.start()
    request = scheduler.enqueue(Priority.INCREMENTAL)
    assert request.wait(2.0)
    assert request.result is not None
    scheduler.shutdown()


# ---------------------------------------------------------------------------
# Failures and retries
# ---------------------------------------------------------------------------


def test_retries_with_backoff_then_succeeds(buffer, notices) -> None:
    summarizer = FakeSummarizer(
        [
            ConnectionError("connection reset"),
            ConnectionError("connection reset"),
            SummaryFields(content="ok"),
        ]
    )
    _add(buffer, "a")
    scheduler = _scheduler(buffer, summarizer, notices, max_retry_attempts=3)

    request = scheduler.enqueue(Priority.INCREMENTAL)
    assert request.wait(2.0)
    assert request.result.content == "ok"
    assert request.attempts == 3
    assert scheduler.executed_requests == 3
    assert notices == []
    scheduler.shutdown()


def test_backoff_doubles_between_attempts(buffer, notices) -> None:
    summarizer = FakeSummarizer([ConnectionError("network down")] * 3)
    _add(buffer, "a")
    scheduler = _scheduler(buffer, summarizer, notices, max_retry_attempts=3, backoff_base_ms=40)

    start = time.monotonic()
    request = scheduler.enqueue(Priority.INCREMENTAL)
    assert request.wait(3.0)
    elapsed = time.monotonic() - start

    # 40 ms then 80 ms between the three attempts
    assert elapsed >= 0.11
    assert request.error_code == NETWORK_ERROR
    scheduler.shutdown()


def test_request_dropped_after_max_attempts(buffer, notices) -> None:
    summarizer = FakeSummarizer([TimeoutError("timeout")] * 2)
    _add(buffer, "a")
    scheduler = _scheduler(buffer, summarizer, notices, max_retry_attempts=2)

    request = scheduler.enqueue(Priority.INCREMENTAL)
    assert request.wait(2.0)
    assert request.result is None
    assert request.error_code == NETWORK_ERROR
    assert len(summarizer.calls) == 2
    assert [code for code, _ in notices] == [SUMMARIZATION_FAILED]

    # the session keeps going
    assert _wait_until(lambda: scheduler.pending() == 0)
    later = scheduler.enqueue(Priority.INCREMENTAL)
    assert later.wait(2.0)
    assert later.result is not None
    scheduler.shutdown()


def test_non_retryable_failure_stops_early(buffer, notices) -> None:
    summarizer = FakeSummarizer([RuntimeError("401 invalid api key")])
    _add(buffer, "a")
    scheduler = _scheduler(buffer, summarizer, notices, max_retry_attempts=3)

    request = scheduler.enqueue(Priority.INCREMENTAL)
    assert request.wait(2.0)
    assert request.error_code == AUTH_FAILED
    assert len(summarizer.calls) == 1
    scheduler.shutdown()


def test_call_timeout_counts_as_failed_attempt(buffer, notices) -> None:
    summarizer = FakeSummarizer()
    gate = summarizer.gate(0)
    _add(buffer, "a")
    scheduler = _scheduler(
        buffer, summarizer, notices, per_call_timeout_ms=50, max_retry_attempts=1
    )

    request = scheduler.enqueue(Priority.INCREMENTAL)
    assert request.wait(2.0)
    assert request.error_code == SUMMARIZATION_FAILED
    assert [code for code, _ in notices] == [SUMMARIZATION_FAILED]

    # the abandoned call finishing later must not land in the summary
    gate.set()
    time.sleep(0.05)
    assert scheduler.current_summary is None
    scheduler.shutdown()


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------


def test_rejected_budget_notifies_and_skips_provider(buffer, notices) -> None:
    summarizer = FakeSummarizer()
    _add(buffer, "a")
    scheduler = _scheduler(buffer, summarizer, notices, limiter=RateLimiter(10, 0))

    request = scheduler.enqueue(Priority.INCREMENTAL)
    assert request.wait(2.0)
    assert request.error_code == RATE_LIMIT_EXHAUSTED
    assert summarizer.calls == []
    assert scheduler.executed_requests == 0
    assert [code for code, _ in notices] == [RATE_LIMIT_EXHAUSTED]
    scheduler.shutdown()


def test_deferred_request_waits_and_runs(buffer, notices) -> None:
    limiter = ScriptedLimiter([Admission(AdmissionKind.DEFERRED, retry_after_ms=30)])
    summarizer = FakeSummarizer()
    _add(buffer, "a")
    scheduler = _scheduler(buffer, summarizer, notices, limiter=limiter)

    start = time.monotonic()
    request = scheduler.enqueue(Priority.INCREMENTAL)
    assert request.wait(2.0)

    assert time.monotonic() - start >= 0.025
    assert request.result is not None
    assert limiter.calls == 2
    scheduler.shutdown()


def test_deferred_incremental_yields_to_new_final(buffer, notices) -> None:
    limiter = ScriptedLimiter([Admission(AdmissionKind.DEFERRED, retry_after_ms=200)])
    summarizer = FakeSummarizer()
    _add(buffer, "a", "b")
    scheduler = _scheduler(buffer, summarizer, notices, limiter=limiter)

    incremental = scheduler.enqueue(Priority.INCREMENTAL)
    assert _wait_until(lambda: limiter.calls == 1)
    final = scheduler.enqueue(Priority.FINAL)

    assert final.wait(2.0)
    assert incremental.wait(2.0)
    assert final.result is not None
    assert summarizer.calls[0][0] == "a b"
    assert incremental.error_code == EMPTY_WINDOW
    scheduler.shutdown()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


def test_preempt_abandons_in_flight_incremental(buffer, notices) -> None:
    summarizer = FakeSummarizer()
    gate = summarizer.gate(0)
    _add(buffer, "a")
    scheduler = _scheduler(buffer, summarizer, notices)

    request = scheduler.enqueue(Priority.INCREMENTAL)
    assert _wait_until(lambda: len(summarizer.calls) == 1)
    scheduler.preempt_incremental()

    assert request.wait(2.0)
    assert request.error_code == CANCELLED
    gate.set()
    time.sleep(0.05)
    assert scheduler.current_summary is None

    # finals still run after a preemption
    final = scheduler.enqueue(Priority.FINAL)
    assert final.wait(2.0)
    assert final.result is not None
    scheduler.shutdown()


def test_shutdown_cancels_work_and_refuses_new_requests(buffer, notices) -> None:
    summarizer = FakeSummarizer()
    gate = summarizer.gate(0)
    _add(buffer, "a")
    scheduler = _scheduler(buffer, summarizer, notices)

    in_flight = scheduler.enqueue(Priority.FINAL)
    assert _wait_until(lambda: len(summarizer.calls) == 1)
    queued = scheduler.enqueue(Priority.INCREMENTAL)
    scheduler.shutdown(join_timeout_s=1.0)
    gate.set()

    assert in_flight.wait(2.0)
    assert in_flight.error_code == CANCELLED
    assert queued.done
    assert queued.error_code == CANCELLED
    assert scheduler.enqueue(Priority.FINAL) is None
    assert scheduler.current_summary is None
