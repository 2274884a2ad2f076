"""Core data models for the app."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class SessionState(str, Enum):
    IDLE = "IDLE"
    INITIALIZING = "INITIALIZING"
    LISTENING = "LISTENING"
    PAUSED = "PAUSED"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    FAILED = "FAILED"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class Priority(str, Enum):
    INCREMENTAL = "incremental"
    FINAL = "final"


class AdmissionKind(str, Enum):
    ADMITTED = "admitted"
    DEFERRED = "deferred"
    REJECTED = "rejected"


@dataclass
class AudioFrame:
    pcm16_bytes: bytes
    sample_rate: int = 16000
    channels: int = 1
    timestamp_ms: int = 0


@dataclass(frozen=True)
class Segment:
    id: str
    text: str
    timestamp_ms: int = 0
    confidence: float = 1.0
    is_final: bool = False
    duration_ms: int = 0


@dataclass(frozen=True)
class SummaryFields:
    """Structured output of one summarizer call."""

    content: str = ""
    key_points: tuple[str, ...] = ()
    decisions: tuple[str, ...] = ()
    action_items: tuple[str, ...] = ()
    quotes: tuple[str, ...] = ()


@dataclass(frozen=True)
class Summary:
    id: str
    session_id: str
    content: str
    key_points: tuple[str, ...] = ()
    decisions: tuple[str, ...] = ()
    action_items: tuple[str, ...] = ()
    quotes: tuple[str, ...] = ()
    generated_at: str = ""
    processing_time_ms: int = 0
    covers_up_to_segment_index: int = 0


@dataclass(frozen=True)
class Admission:
    kind: AdmissionKind
    retry_after_ms: int = 0
    reason: str = ""

    @property
    def admitted(self) -> bool:
        return self.kind == AdmissionKind.ADMITTED


@dataclass(frozen=True)
class RequestBudget:
    requests_this_minute: int
    window_start_ms: int
    tokens_this_month: int
    month_start_ms: int


@dataclass(frozen=True)
class Notice:
    code: str
    severity: Severity
    message: str
    timestamp_ms: int = 0
    session_id: str = ""


@dataclass(frozen=True)
class SessionRecord:
    id: str
    date: str
    duration_sec: int
    segments: tuple[Segment, ...]
    summary: Optional[Summary]
    metadata: dict = field(default_factory=dict)


@dataclass
class SessionStats:
    duration_sec: int = 0
    final_segments: int = 0
    word_count: int = 0
    summary_generated: bool = False
    summaries_generated: int = 0
    rejected_segments: int = 0


@dataclass
class StopResult:
    state: SessionState
    saved: bool
    record: Optional[SessionRecord] = None
    error_code: str = ""
    warnings: list[str] = field(default_factory=list)
