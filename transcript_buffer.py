"""Ordered transcript of final segments plus the current interim guess."""

from __future__ import annotations

import bisect
import dataclasses
import logging
import threading
from typing import Callable, Mapping, Optional, Sequence

from models import Segment

logger = logging.getLogger(__name__)

SegmentListener = Callable[[Segment], None]


class TranscriptBuffer:
    """Pure in-memory state, no timers and no I/O.

    Final segments are kept sorted by ``(timestamp_ms, arrival)``. A segment
    re-emitted with a known id keeps its original arrival rank so corrections
    do not reshuffle peers that share a timestamp.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._keys: list[tuple[int, int]] = []
        self._finals: list[Segment] = []
        self._arrival: dict[str, int] = {}
        self._interim: Optional[Segment] = None
        self._next_arrival = 0
        self._revision = 0
        self._listeners: list[SegmentListener] = []

    def add_listener(self, listener: SegmentListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SegmentListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def upsert(self, segment: Segment) -> bool:
        """Insert or replace ``segment``. False if it was ignored."""
        confidence = min(1.0, max(0.0, segment.confidence))
        if confidence != segment.confidence:
            logger.warning(
                "segment %s confidence %s outside [0, 1], clamped to %s",
                segment.id,
                segment.confidence,
                confidence,
            )
        stored = dataclasses.replace(segment, confidence=confidence)
        with self._lock:
            if stored.is_final:
                self._commit_final(stored)
            else:
                if stored.id in self._arrival:
                    # committed finals are never demoted back to interim
                    logger.debug("ignoring interim re-emission of final segment %s", stored.id)
                    return False
                self._interim = stored
            self._revision += 1
        self._notify(stored)
        return True

    def _commit_final(self, segment: Segment) -> None:
        arrival = self._arrival.get(segment.id)
        if arrival is None:
            arrival = self._next_arrival
            self._next_arrival += 1
            self._arrival[segment.id] = arrival
        else:
            self._remove_final(segment.id)
        key = (segment.timestamp_ms, arrival)
        index = bisect.bisect_right(self._keys, key)
        self._keys.insert(index, key)
        self._finals.insert(index, segment)
        if self._interim is not None and self._interim.id == segment.id:
            self._interim = None

    def _remove_final(self, segment_id: str) -> None:
        for index, existing in enumerate(self._finals):
            if existing.id == segment_id:
                del self._finals[index]
                del self._keys[index]
                return

    def final_segments(self) -> tuple[Segment, ...]:
        with self._lock:
            return tuple(self._finals)

    @property
    def interim(self) -> Optional[Segment]:
        return self._interim

    @property
    def revision(self) -> int:
        return self._revision

    def final_count(self) -> int:
        with self._lock:
            return len(self._finals)

    def full_text(self) -> str:
        with self._lock:
            return join_segments(self._finals)

    def text_range(self, start: int, end: Optional[int] = None) -> str:
        """Text of final segments ``[start, end)``."""
        with self._lock:
            return join_segments(self._finals[start:end])

    def window(
        self, summarized: Optional[Mapping[str, str]] = None
    ) -> tuple[tuple[Segment, ...], int]:
        """Final segments still to summarize, in order, and the final count.

        ``summarized`` maps segment id to the text that went into a summary.
        A segment is pending when its id is missing or its text changed since.
        Without a mapping every final segment is returned.
        """
        with self._lock:
            if summarized is None:
                return tuple(self._finals), len(self._finals)
            pending = tuple(seg for seg in self._finals if summarized.get(seg.id) != seg.text)
            return pending, len(self._finals)

    def word_count(self) -> int:
        return len(self.full_text().split())

    def reset(self) -> None:
        with self._lock:
            self._keys.clear()
            self._finals.clear()
            self._arrival.clear()
            self._interim = None
            self._next_arrival = 0
            self._revision += 1

    def _notify(self, segment: Segment) -> None:
        for listener in list(self._listeners):
            try:
                listener(segment)
            except Exception:
                logger.exception("transcript listener failed")


def join_segments(segments: Sequence[Segment]) -> str:
    return " ".join(seg.text.strip() for seg in segments if seg.text.strip())
