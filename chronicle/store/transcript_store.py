"""Chronological activity log receiving transcribed speech segments."""

from __future__ import annotations

import bisect
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Protocol

LOGGER = logging.getLogger("chronicle.transcript")

DEFAULT_CONFIDENCE = 0.9


@dataclass(frozen=True, slots=True)
class TranscriptionSegment:
    """Speech segment with an absolute wall-clock start."""

    text: str
    timestamp: datetime
    duration_ms: int
    language: str = "en"
    confidence: float = DEFAULT_CONFIDENCE
    type: str = field(default="audio_transcription", init=False)

    def summary(self) -> str:
        preview = self.text[:100]
        suffix = "..." if len(self.text) > 100 else ""
        return f'Said: "{preview}{suffix}"'


class TranscriptSink(Protocol):
    def log(self, event: TranscriptionSegment, allow_backfill: bool = False) -> None:
        ...


class ActivityTranscript:
    """In-memory event log kept in timestamp order.

    Transcribed segments arrive late (transcription lags capture), so they
    are merged into place by timestamp rather than appended. Events logged
    while logging is stopped are dropped unless ``allow_backfill`` is set.
    """

    def __init__(self, *, logging_enabled: bool = True) -> None:
        self._lock = threading.Lock()
        self._events: List[TranscriptionSegment] = []
        self._keys: List[datetime] = []
        self._logging = logging_enabled
        self.session_start = datetime.now(timezone.utc)

    @property
    def is_logging(self) -> bool:
        return self._logging

    def start_logging(self) -> None:
        self._logging = True

    def stop_logging(self) -> None:
        self._logging = False

    def log(self, event: TranscriptionSegment, allow_backfill: bool = False) -> None:
        if not self._logging and not allow_backfill:
            LOGGER.debug("Dropped %s event while logging is stopped", event.type)
            return
        with self._lock:
            idx = bisect.bisect_right(self._keys, event.timestamp)
            self._keys.insert(idx, event.timestamp)
            self._events.insert(idx, event)
        LOGGER.debug("Logged event: %s at %s", event.type, event.timestamp.isoformat())

    def events(self) -> List[TranscriptionSegment]:
        with self._lock:
            return list(self._events)

    def reset_session(self) -> None:
        with self._lock:
            self._events.clear()
            self._keys.clear()
            self.session_start = datetime.now(timezone.utc)
        LOGGER.info("Transcript session reset")

    def __len__(self) -> int:
        return len(self._events)


__all__ = ["ActivityTranscript", "TranscriptSink", "TranscriptionSegment", "DEFAULT_CONFIDENCE"]
