"""Silence-aware splitting of the raw capture stream into utterance chunks."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterator, Optional

import numpy as np

from ..metrics import CHUNKS_BUFFERED
from .types import AudioChunk, ChunkingPolicy, SAMPLE_RATE, SAMPLE_WIDTH

LOGGER = logging.getLogger("chronicle.chunker")

FULL_SCALE = 32768.0


def calculate_rms(buffer: bytes, length: int | None = None) -> float:
    """Root-mean-square amplitude of PCM16LE samples, normalised to [0, 1]."""

    size = len(buffer) if length is None else min(length, len(buffer))
    samples = size // SAMPLE_WIDTH
    if samples <= 0:
        return 0.0
    pcm = np.frombuffer(buffer, dtype="<i2", count=samples).astype(np.float64) / FULL_SCALE
    return float(np.sqrt(np.mean(pcm * pcm)))


def to_instant(epoch_ms: int) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000.0, tz=timezone.utc)


class Chunker:
    """Accumulates capture blocks and decides where chunk boundaries fall.

    A boundary is emitted once the chunk is at least ``min_chunk_ms`` long
    and the input has been continuously silent for ``silence_duration_ms``,
    or unconditionally once the chunk reaches ``max_chunk_ms``. All times
    are wall-clock epoch milliseconds supplied by the caller.
    """

    def __init__(self, policy: ChunkingPolicy, start_ms: int) -> None:
        self.policy = policy
        self._buffer = bytearray()
        self._chunk_start_ms = start_ms
        self._silence_start_ms: Optional[int] = None

    @property
    def buffered_bytes(self) -> int:
        return len(self._buffer)

    @property
    def chunk_start_ms(self) -> int:
        return self._chunk_start_ms

    def reset(self, now_ms: int) -> None:
        self._buffer = bytearray()
        self._chunk_start_ms = now_ms
        self._silence_start_ms = None

    def feed(self, block: bytes, now_ms: int) -> Optional[AudioChunk]:
        if not block:
            return None
        self._buffer.extend(block)

        elapsed_ms = now_ms - self._chunk_start_ms
        if calculate_rms(block) < self.policy.silence_threshold_rms:
            if self._silence_start_ms is None:
                self._silence_start_ms = now_ms
        else:
            self._silence_start_ms = None

        silence_ms = 0 if self._silence_start_ms is None else now_ms - self._silence_start_ms
        on_silence = (
            elapsed_ms >= self.policy.min_chunk_ms
            and silence_ms >= self.policy.silence_duration_ms
        )
        on_max_duration = elapsed_ms >= self.policy.max_chunk_ms
        if not (on_silence or on_max_duration):
            return None

        reason = "silence" if on_silence else "max_duration"
        chunk = self._emit(now_ms, reason)
        self.reset(now_ms)
        return chunk

    def flush(self, now_ms: int) -> Optional[AudioChunk]:
        """Emit whatever is buffered, however short, and start over."""

        if not self._buffer:
            self.reset(now_ms)
            return None
        chunk = self._emit(now_ms, "final")
        self.reset(now_ms)
        return chunk

    def _emit(self, now_ms: int, reason: str) -> AudioChunk:
        duration_ms = max(0, now_ms - self._chunk_start_ms)
        chunk = AudioChunk(
            data=bytes(self._buffer),
            captured_at=to_instant(self._chunk_start_ms),
            duration_ms=duration_ms,
        )
        CHUNKS_BUFFERED.labels(reason=reason).inc()
        LOGGER.info(
            "Buffered audio chunk (%s): %d bytes, %dms", reason, len(chunk.data), duration_ms
        )
        return chunk


def split_pcm(
    pcm: bytes, policy: ChunkingPolicy, start_ms: int, block_bytes: int = 4096
) -> Iterator[AudioChunk]:
    """Chunk a pre-recorded PCM16LE buffer, using its sample position as the clock."""

    chunker = Chunker(policy, start_ms)
    block_bytes = max(SAMPLE_WIDTH, block_bytes - block_bytes % SAMPLE_WIDTH)
    for offset in range(0, len(pcm), block_bytes):
        block = pcm[offset : offset + block_bytes]
        consumed = (offset + len(block)) // SAMPLE_WIDTH
        chunk = chunker.feed(block, start_ms + consumed * 1000 // SAMPLE_RATE)
        if chunk is not None:
            yield chunk
    final = chunker.flush(start_ms + (len(pcm) // SAMPLE_WIDTH) * 1000 // SAMPLE_RATE)
    if final is not None:
        yield final


__all__ = ["Chunker", "calculate_rms", "split_pcm", "to_instant"]
