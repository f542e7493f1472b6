"""Background worker that drains the chunk queue through the speech engine."""

from __future__ import annotations

import logging
import re
import threading
import time
from datetime import timedelta
from pathlib import Path

import numpy as np

from ..audio.types import AudioChunk
from ..errors import ChunkProcessingError, InferenceFailure, NotInitialized
from ..metrics import CHUNKS_PROCESSED, INFERENCE_DURATION, SEGMENTS_EMITTED, SEGMENTS_FILTERED
from ..store.chunk_queue import ChunkQueue
from ..store.transcript_store import DEFAULT_CONFIDENCE, TranscriptSink, TranscriptionSegment
from .speech_engine import EngineSegment, SpeechEngine

LOGGER = logging.getLogger("chronicle.transcriber")

# Whisper needs a full second of context (16000 samples) plus rounding slack.
MIN_SAMPLES = 16_100
SEGMENT_TICK_MS = 10

SILENCE_MARKERS = frozenset(
    {
        "[BLANK_AUDIO]",
        "[ Silence ]",
        "[silence]",
        "[SILENCE]",
        "(silence)",
        "[ silence ]",
        "[inaudible]",
        "(inaudible)",
    }
)
SILENCE_PREFIXES = ("[silence", "(silence", "[blank", "[inaudible", "(inaudible")

NON_SPEECH_PATTERN = re.compile(
    r"^\s*[\[(][\s\w]*(?:music|singing|playing|noise|sound|laughter|applause|cheering|cough"
    r"|sneeze|sigh|breath|static|hum|buzz|beep|ring|click|bang|thud|rustle|shuffle|footstep"
    r"|door|phone|alarm|bird|dog|cat|wind|rain|thunder|water|engine|traffic|crowd|chatter"
    r"|murmur|whisper|echo|feedback|distortion|interference|tone|ambient|background|eerie"
    r"|dramatic|soft|loud|faint)[\s\w]*[\])]\s*$",
    re.IGNORECASE,
)


def pcm16_to_float32(data: bytes) -> np.ndarray:
    usable = len(data) - (len(data) % 2)
    if usable <= 0:
        return np.zeros(0, dtype=np.float32)
    return np.frombuffer(data[:usable], dtype="<i2").astype(np.float32) / 32768.0


def pad_to_minimum(samples: np.ndarray, minimum: int = MIN_SAMPLES) -> np.ndarray:
    if samples.size >= minimum:
        return samples
    padded = np.zeros(minimum, dtype=np.float32)
    padded[: samples.size] = samples
    return padded


def is_silence_marker(text: str) -> bool:
    return text in SILENCE_MARKERS or text.lower().startswith(SILENCE_PREFIXES)


def is_non_speech_annotation(text: str) -> bool:
    return NON_SPEECH_PATTERN.match(text) is not None


def should_discard(text: str) -> bool:
    return not text.strip() or is_silence_marker(text) or is_non_speech_annotation(text)


class TranscriptionEngine:
    """Owns the loaded speech engine and the periodic drain task.

    A non-blocking lock guards the drain so at most one runs at a time; a
    tick that fires while a drain is in progress does nothing and leaves the
    backlog to the next tick.
    """

    def __init__(
        self,
        queue: ChunkQueue,
        engine: SpeechEngine,
        sink: TranscriptSink,
        *,
        language: str = "en",
        polling_interval: float = 2.0,
        drain_wait: float = 5.0,
    ) -> None:
        self.queue = queue
        self.engine = engine
        self.sink = sink
        self.language = language
        self.polling_interval = polling_interval
        self.drain_wait = drain_wait
        self._initialized = threading.Event()
        self._processing = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.model_file: Path | None = None

    @property
    def is_initialized(self) -> bool:
        return self._initialized.is_set()

    @property
    def is_processing(self) -> bool:
        return self._processing.locked()

    def initialize(self, model_file: Path) -> None:
        if self._initialized.is_set():
            LOGGER.warning("Transcription engine already initialized")
            return
        self.engine.load(Path(model_file))
        self.model_file = Path(model_file)
        self._initialized.set()
        LOGGER.info("Speech model initialized from: %s", model_file)

    def start_processing(self) -> None:
        if not self._initialized.is_set():
            LOGGER.error("Cannot start processing: transcription engine not initialized")
            raise NotInitialized("Transcription engine not initialized")
        if self._thread and self._thread.is_alive():
            return
        # Per-run event: a ticker orphaned by a timed-out stop stays stopped.
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            args=(self._stop_event,),
            name="chronicle-transcription",
            daemon=True,
        )
        self._thread.start()
        LOGGER.info(
            "Started batch transcription processing (polling interval: %.1fs)",
            self.polling_interval,
        )

    def stop_processing(self) -> None:
        """Cancel the schedule, let an in-flight drain finish, then drain once more."""

        self._stop_event.set()
        thread, self._thread = self._thread, None

        if not self._processing.acquire(timeout=self.drain_wait):
            LOGGER.warning(
                "In-flight drain still running after %.1fs; it will finish the backlog",
                self.drain_wait,
            )
            return
        try:
            if thread is not None:
                thread.join(timeout=self.drain_wait)
            self._drain_locked()
        finally:
            self._processing.release()

    def drain(self) -> int:
        """Process every queued chunk; returns the number handled (0 if busy)."""

        if not self._processing.acquire(blocking=False):
            return 0
        try:
            return self._drain_locked()
        finally:
            self._processing.release()

    def close(self) -> None:
        self.stop_processing()
        self.engine.close()
        self._initialized.clear()
        LOGGER.info("Transcription engine closed")

    def __enter__(self) -> "TranscriptionEngine":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.polling_interval):
            self.drain()

    def _drain_locked(self) -> int:
        if not self._initialized.is_set():
            return 0
        handled = 0
        while True:
            chunk = self.queue.poll()
            if chunk is None:
                break
            self._process_chunk(chunk)
            handled += 1
        return handled

    def _process_chunk(self, chunk: AudioChunk) -> None:
        try:
            samples = pcm16_to_float32(chunk.data)
            if samples.size == 0:
                CHUNKS_PROCESSED.labels(status="empty").inc()
                return
            samples = pad_to_minimum(samples)
            started = time.perf_counter()
            segments = self.engine.transcribe(samples)
            INFERENCE_DURATION.observe(time.perf_counter() - started)
            emitted = self._emit_segments(chunk, segments)
            CHUNKS_PROCESSED.labels(status="ok").inc()
            LOGGER.info(
                "Transcribed chunk from %s: %d segment(s) kept",
                chunk.captured_at.isoformat(),
                emitted,
            )
        except InferenceFailure as exc:
            CHUNKS_PROCESSED.labels(status="inference_failure").inc()
            LOGGER.error("Whisper transcription failed: %s", exc)
        except ChunkProcessingError as exc:
            CHUNKS_PROCESSED.labels(status="error").inc()
            LOGGER.error("Failed to process chunk from %s: %s", chunk.captured_at.isoformat(), exc)
        except Exception:
            CHUNKS_PROCESSED.labels(status="error").inc()
            LOGGER.exception("Failed to transcribe audio chunk")

    def _emit_segments(self, chunk: AudioChunk, segments: list[EngineSegment]) -> int:
        emitted = 0
        for segment in segments:
            text = (segment.text or "").strip()
            if should_discard(text):
                SEGMENTS_FILTERED.inc()
                continue
            start = chunk.captured_at + timedelta(milliseconds=segment.t0 * SEGMENT_TICK_MS)
            duration_ms = (segment.t1 - segment.t0) * SEGMENT_TICK_MS
            confidence = DEFAULT_CONFIDENCE if segment.confidence is None else segment.confidence
            event = TranscriptionSegment(
                text=text,
                timestamp=start,
                duration_ms=duration_ms,
                language=self.language,
                confidence=confidence,
            )
            try:
                self.sink.log(event, allow_backfill=True)
            except Exception as exc:
                raise ChunkProcessingError(f"Transcript sink rejected segment: {exc}") from exc
            SEGMENTS_EMITTED.inc()
            emitted += 1
        return emitted


__all__ = [
    "TranscriptionEngine",
    "MIN_SAMPLES",
    "pcm16_to_float32",
    "pad_to_minimum",
    "is_silence_marker",
    "is_non_speech_annotation",
    "should_discard",
]
