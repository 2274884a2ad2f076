"""Speech source using DashScope qwen3-asr-flash.

The qwen3-asr-flash model accepts complete audio and streams back
recognition results via ``stream=True``. Frames from the audio feed are
grouped into utterances of ``utterance_ms``; each utterance is converted to
base64 WAV and recognised on its own. Streamed partial results become
interim segments, the last result of an utterance becomes its final segment.
"""

from __future__ import annotations

import base64
import io
import logging
import os
import threading
import wave
from queue import Empty, Queue
from typing import Callable, Optional

from errors import AUTH_FAILED, SpeechSourceError, map_provider_exception
from interfaces import AudioFeed
from models import AudioFrame, Segment

try:
    import dashscope
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore

logger = logging.getLogger(__name__)


def _pcm_to_wav_base64(
    pcm: bytes,
    sample_rate: int = 16000,
    channels: int = 1,
    sample_width: int = 2,
) -> str:
    """Convert raw PCM bytes to a base64-encoded WAV string."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return base64.b64encode(buf.getvalue()).decode("ascii")


def _pcm_duration_ms(pcm_len: int, sample_rate: int, channels: int) -> int:
    return pcm_len * 1000 // (2 * channels * max(sample_rate, 1))


class DashscopeSpeechSource:
    def __init__(
        self,
        feed: AudioFeed,
        api_key: str,
        model: str = "qwen3-asr-flash",
        utterance_ms: int = 5000,
        request_timeout_s: float = 10.0,
        queue_maxsize: int = 200,
    ) -> None:
        self._feed = feed
        self._api_key = api_key
        self._model = model
        self._utterance_ms = utterance_ms
        self._request_timeout_s = request_timeout_s
        self._queue_maxsize = queue_maxsize
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._audio_queue: Queue[AudioFrame | None] = Queue(maxsize=queue_maxsize)
        self._on_segment: Optional[Callable[[Segment], None]] = None
        self._utterances = 0

    def begin(self, on_segment: Callable[[Segment], None]) -> None:
        if self._thread and self._thread.is_alive():
            raise SpeechSourceError("speech source is already running")
        if dashscope is None:
            raise SpeechSourceError("dashscope is not installed")
        if not (self._api_key or os.getenv("DASHSCOPE_API_KEY", "")):
            raise SpeechSourceError("No API key configured", AUTH_FAILED)

        self._audio_queue = Queue(maxsize=self._queue_maxsize)
        self._on_segment = on_segment
        self._utterances = 0
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._worker, name="asr-worker", daemon=True)
        self._thread.start()
        try:
            self._feed.start(self._audio_queue)
        except Exception as exc:
            self._stop_event.set()
            raise SpeechSourceError(f"audio feed failed: {exc}") from exc

    def end(self) -> None:
        """Stop the feed and wait for the pending utterance to be recognised.

        Blocks for as long as the provider takes; callers bound the wait.
        """
        self._feed.stop()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _worker(self) -> None:
        """Group frames into utterances until the sentinel, recognising each."""
        pcm = bytearray()
        start_ms: Optional[int] = None
        sample_rate = 16000
        channels = 1

        while not self._stop_event.is_set():
            try:
                frame = self._audio_queue.get(timeout=0.2)
            except Empty:
                continue
            if frame is None:  # Sentinel
                break
            if start_ms is None:
                start_ms = frame.timestamp_ms
            pcm.extend(frame.pcm16_bytes)
            sample_rate = frame.sample_rate
            channels = frame.channels
            if _pcm_duration_ms(len(pcm), sample_rate, channels) >= self._utterance_ms:
                self._recognize_utterance(bytes(pcm), start_ms, sample_rate, channels)
                pcm.clear()
                start_ms = None

        if pcm and not self._stop_event.is_set():
            self._recognize_utterance(bytes(pcm), start_ms or 0, sample_rate, channels)

    def _recognize_utterance(
        self,
        pcm: bytes,
        start_ms: int,
        sample_rate: int,
        channels: int,
    ) -> None:
        """Send one utterance to dashscope and stream interim/final segments."""
        segment_id = f"utt-{self._utterances}"
        self._utterances += 1
        duration_ms = _pcm_duration_ms(len(pcm), sample_rate, channels)
        wav_base64 = _pcm_to_wav_base64(pcm, sample_rate, channels)
        api_key = self._api_key or os.getenv("DASHSCOPE_API_KEY", "")

        try:
            response = dashscope.MultiModalConversation.call(
                api_key=api_key,
                model=self._model,
                messages=[
                    {"role": "system", "content": [{"text": ""}]},
                    {"role": "user", "content": [{"audio": wav_base64}]},
                ],
                result_format="message",
                asr_options={"enable_itn": False},
                stream=True,
                timeout=self._request_timeout_s,
            )
            latest_text = ""
            for chunk in response:
                if self._stop_event.is_set():
                    return
                text = _chunk_text(chunk)
                if text:
                    latest_text = text
                    self._emit(Segment(segment_id, text, start_ms, 1.0, False, duration_ms))
        except Exception as exc:
            failure = map_provider_exception(exc)
            logger.warning("recognition of %s failed (%s): %s", segment_id, failure.code, failure)
            return

        if latest_text:
            self._emit(Segment(segment_id, latest_text, start_ms, 1.0, True, duration_ms))

    def _emit(self, segment: Segment) -> None:
        if self._on_segment is None:
            return
        try:
            self._on_segment(segment)
        except Exception:
            logger.exception("segment callback failed")


def _chunk_text(chunk: object) -> str:
    try:
        content = chunk["output"]["choices"][0]["message"]["content"]  # type: ignore[index]
    except (KeyError, IndexError, TypeError):
        return ""
    if content and isinstance(content[0], dict):
        return str(content[0].get("text", ""))
    return ""
