"""Protocol interfaces used by SessionController and its collaborators."""

from __future__ import annotations

from queue import Queue
from typing import Callable, Optional, Protocol

from models import AudioFrame, SessionRecord, Segment, SummaryFields


class AudioFeed(Protocol):
    def start(self, audio_queue: Queue[AudioFrame | None]) -> None: ...

    def stop(self) -> None: ...


class SpeechSource(Protocol):
    def begin(self, on_segment: Callable[[Segment], None]) -> None: ...

    def end(self) -> None: ...


class Summarizer(Protocol):
    def summarize(
        self,
        transcript_window: str,
        prior_summary: str,
        budget_hint: int,
    ) -> SummaryFields: ...


class SessionStore(Protocol):
    def save(self, record: SessionRecord) -> None: ...

    def load(self, session_id: str) -> Optional[SessionRecord]: ...

