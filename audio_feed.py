"""Audio producers feeding the speech source.

Both feeds push ``AudioFrame`` objects stamped with milliseconds since the
feed started (derived from the amount of audio produced, not wall time) and
finish with a ``None`` sentinel.
"""

from __future__ import annotations

import logging
import threading
import wave
from pathlib import Path
from queue import Full, Queue
from typing import Any, Optional

from models import AudioFrame

try:
    import numpy as np
except Exception:  # pragma: no cover
    np = None  # type: ignore

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

logger = logging.getLogger(__name__)


def _put_sentinel(audio_queue: Optional[Queue[AudioFrame | None]]) -> None:
    if audio_queue is None:
        return
    try:
        audio_queue.put_nowait(None)
    except Full:
        logger.warning("audio queue full, sentinel not delivered")


class MicrophoneFeed:
    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        chunk_ms: int = 100,
        device: Optional[str] = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_ms = chunk_ms
        self.device = device
        self.dropped_frames = 0
        self._stream: Any = None
        self._lock = threading.Lock()
        self._audio_queue: Optional[Queue[AudioFrame | None]] = None
        self._samples_seen = 0

    @property
    def running(self) -> bool:
        return self._stream is not None

    def start(self, audio_queue: Queue[AudioFrame | None]) -> None:
        with self._lock:
            if self._stream is not None:
                return
            if sd is None or np is None:
                raise RuntimeError("sounddevice and numpy are required for microphone capture")
            self._audio_queue = audio_queue
            self._samples_seen = 0
            self.dropped_frames = 0
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="int16",
                blocksize=int(self.sample_rate * self.chunk_ms / 1000),
                device=self.device,
                callback=self._on_audio,
            )
            stream.start()
            self._stream = stream
            logger.info("microphone feed started at %d Hz", self.sample_rate)

    def stop(self) -> None:
        with self._lock:
            stream, self._stream = self._stream, None
            if stream is not None:
                stream.stop()
                stream.close()
                if self.dropped_frames:
                    logger.warning("microphone feed dropped %d frames", self.dropped_frames)
            _put_sentinel(self._audio_queue)

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if self._stream is None or self._audio_queue is None:
            return
        if status:
            logger.debug("input stream status: %s", status)
        frame = AudioFrame(
            pcm16_bytes=np.asarray(indata, dtype=np.int16).tobytes(),
            sample_rate=self.sample_rate,
            channels=self.channels,
            timestamp_ms=self._samples_seen * 1000 // self.sample_rate,
        )
        self._samples_seen += frames
        try:
            self._audio_queue.put_nowait(frame)
        except Full:
            self.dropped_frames += 1


class WavFileFeed:
    """Replays a 16-bit PCM WAV file as if it were captured live."""

    def __init__(self, path: str | Path, chunk_ms: int = 100, realtime: bool = True) -> None:
        self.path = Path(path)
        self.chunk_ms = chunk_ms
        self.realtime = realtime
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._audio_queue: Optional[Queue[AudioFrame | None]] = None

    def start(self, audio_queue: Queue[AudioFrame | None]) -> None:
        if self._thread and self._thread.is_alive():
            return
        with wave.open(str(self.path), "rb") as wf:
            if wf.getsampwidth() != 2:
                raise RuntimeError(f"{self.path} is not 16-bit PCM")
        self._audio_queue = audio_queue
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._worker, name="wav-feed", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def _worker(self) -> None:
        if self._audio_queue is None:
            return
        with wave.open(str(self.path), "rb") as wf:
            rate = wf.getframerate()
            channels = wf.getnchannels()
            per_chunk = max(1, rate * self.chunk_ms // 1000)
            position = 0
            while not self._stop_event.is_set():
                data = wf.readframes(per_chunk)
                if not data:
                    break
                frame = AudioFrame(
                    pcm16_bytes=data,
                    sample_rate=rate,
                    channels=channels,
                    timestamp_ms=position * 1000 // rate,
                )
                position += len(data) // (2 * channels)
                if not self._offer(frame):
                    break
                if self.realtime and self._stop_event.wait(self.chunk_ms / 1000.0):
                    break
        _put_sentinel(self._audio_queue)
        logger.info("wav feed finished after %.1f s of audio", position / max(rate, 1))

    def _offer(self, frame: AudioFrame) -> bool:
        """Block until the frame is queued. False if stopped meanwhile."""
        if self._audio_queue is None:
            return False
        while not self._stop_event.is_set():
            try:
                self._audio_queue.put(frame, timeout=0.2)
                return True
            except Full:
                continue
        return False
