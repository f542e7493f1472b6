"""Speech-to-text engine seam plus the whisper.cpp binding."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import numpy as np

from ..errors import InferenceFailure

LOGGER = logging.getLogger("chronicle.whisper")


@dataclass(frozen=True, slots=True)
class EngineSegment:
    """Raw segment as reported by the engine.

    ``t0``/``t1`` are offsets from the start of the submitted buffer in
    ten-millisecond units (whisper.cpp's native resolution).
    """

    text: str
    t0: int
    t1: int
    confidence: Optional[float] = None


class SpeechEngine(ABC):
    """Contract for any batch speech-to-text backend used by the pipeline."""

    @abstractmethod
    def load(self, model_file: Path) -> None:
        """Load the inference context once."""

    @abstractmethod
    def transcribe(self, samples: np.ndarray) -> List[EngineSegment]:
        """Run inference over 16 kHz mono float32 samples.

        Raises :class:`InferenceFailure` when the engine reports an error.
        """

    @abstractmethod
    def close(self) -> None:
        pass


class WhisperCppEngine(SpeechEngine):
    """whisper.cpp through the ``pywhispercpp`` native binding.

    Language is pinned (no auto-detect, no translation), output is
    segment-level and progress/realtime printing is disabled.
    """

    def __init__(self, language: str = "en", n_threads: int = 4) -> None:
        self.language = language
        self.n_threads = n_threads
        self._model = None
        self._lock = threading.Lock()

    def load(self, model_file: Path) -> None:
        from pywhispercpp.model import Model  # type: ignore

        with self._lock:
            if self._model is not None:
                return
            try:
                self._model = Model(
                    str(model_file),
                    n_threads=self.n_threads,
                    language=self.language,
                    translate=False,
                    single_segment=False,
                    print_progress=False,
                    print_realtime=False,
                    print_timestamps=False,
                    redirect_whispercpp_logs_to=None,
                )
            except Exception as exc:
                LOGGER.error("Failed to load Whisper model '%s': %s", model_file, exc)
                raise
        LOGGER.info("Whisper model loaded from: %s", model_file)

    def transcribe(self, samples: np.ndarray) -> List[EngineSegment]:
        if self._model is None:
            raise InferenceFailure("Whisper model is not loaded")
        with self._lock:
            try:
                segments = self._model.transcribe(samples.astype(np.float32, copy=False))
            except Exception as exc:
                raise InferenceFailure(f"Whisper transcription failed: {exc}") from exc
        return [
            EngineSegment(text=str(seg.text), t0=int(seg.t0), t1=int(seg.t1))
            for seg in segments
        ]

    def close(self) -> None:
        with self._lock:
            self._model = None


__all__ = ["EngineSegment", "SpeechEngine", "WhisperCppEngine"]
