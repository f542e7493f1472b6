"""Dataclasses shared across audio helpers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

SAMPLE_RATE = 16_000
SAMPLE_WIDTH = 2
CHANNELS = 1


@dataclass(frozen=True, slots=True)
class AudioChunk:
    """Captured PCM16LE mono audio waiting for transcription.

    ``data`` is a ``bytes`` object, so equality and hashing compare the
    buffer contents rather than identity.
    """

    data: bytes
    captured_at: datetime
    duration_ms: int

    @property
    def sample_count(self) -> int:
        return len(self.data) // SAMPLE_WIDTH


@dataclass(frozen=True, slots=True)
class AudioDevice:
    index: int
    name: str
    description: str = ""
    vendor: str = ""
    max_input_channels: int = 1


@dataclass(frozen=True, slots=True)
class ChunkingPolicy:
    """Silence/duration rules used to split the capture stream."""

    min_chunk_ms: int = 30_000
    max_chunk_ms: int = 5 * 60 * 1000
    silence_threshold_rms: float = 0.015
    silence_duration_ms: int = 1500
