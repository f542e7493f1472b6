"""Pytest configuration helpers."""

from __future__ import annotations

import itertools
import math
import sys
import threading
from pathlib import Path
from typing import List, Optional

import numpy as np
import pytest


def _ensure_repo_on_path() -> None:
    """Allow tests to import from repo modules without setting PYTHONPATH."""
    repo_root = Path(__file__).resolve().parents[1]
    path_str = str(repo_root)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)


_ensure_repo_on_path()

from chronicle.audio.devices import DeviceBackend, InputLine  # noqa: E402
from chronicle.audio.types import AudioDevice  # noqa: E402
from chronicle.errors import DeviceUnavailable, InferenceFailure  # noqa: E402
from chronicle.services.speech_engine import EngineSegment, SpeechEngine  # noqa: E402

T0 = 1_700_000_000_000


def tone(duration_ms: int, amplitude: int = 12000, sample_rate: int = 16_000) -> bytes:
    length = sample_rate * duration_ms // 1000
    t = np.arange(length)
    waveform = np.sin(2 * math.pi * 220 * t / sample_rate)
    return (waveform * amplitude).astype("<i2").tobytes()


def silence(duration_ms: int, sample_rate: int = 16_000) -> bytes:
    return bytes(2 * (sample_rate * duration_ms // 1000))


class SteppingClock:
    """Returns T0 on the first call and advances 100 ms on each later call."""

    def __init__(self):
        self._ticks = itertools.count()
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            return T0 + 100 * next(self._ticks)


class FakeLine(InputLine):
    """Serves scripted blocks, then empty reads until closed."""

    def __init__(self, blocks: Optional[List[bytes]] = None, fail_after: Optional[int] = None):
        self.blocks = list(blocks or [])
        self.fail_after = fail_after
        self.reads = 0
        self.closed = threading.Event()
        self.drained = threading.Event()

    def read(self, frames: int) -> bytes:
        if self.closed.is_set():
            raise OSError("line closed")
        if self.fail_after is not None and self.reads >= self.fail_after:
            raise OSError("device unplugged")
        self.reads += 1
        if self.blocks:
            return self.blocks.pop(0)
        self.drained.set()
        return b""

    def close(self) -> None:
        self.closed.set()


class FakeBackend(DeviceBackend):
    def __init__(self, line: Optional[FakeLine] = None, devices=None, fail: bool = False):
        self.line = line or FakeLine()
        self.devices = devices if devices is not None else [AudioDevice(0, "Built-in Mic")]
        self.fail = fail
        self.opened: List[Optional[int]] = []

    def list_input_devices(self) -> List[AudioDevice]:
        return list(self.devices)

    def open_input(self, device, frames_per_block):
        if self.fail:
            raise DeviceUnavailable("no microphone")
        self.opened.append(device)
        return self.line


class FakeSpeechEngine(SpeechEngine):
    """Returns scripted segments; ``fail_on`` lists call indices that raise."""

    def __init__(self, segments=None, fail_on=(), load_error: Optional[Exception] = None):
        self.segments = list(segments or [])
        self.fail_on = set(fail_on)
        self.load_error = load_error
        self.loaded: Optional[Path] = None
        self.calls: List[np.ndarray] = []
        self.closed = False
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()

    def load(self, model_file: Path) -> None:
        if self.load_error is not None:
            raise self.load_error
        self.loaded = model_file

    def transcribe(self, samples: np.ndarray) -> List[EngineSegment]:
        index = len(self.calls)
        self.calls.append(samples)
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if index in self.fail_on:
            raise InferenceFailure("whisper_full returned -1")
        return list(self.segments)

    def close(self) -> None:
        self.closed = True


class RecordingSink:
    def __init__(self):
        self.events = []

    def log(self, event, allow_backfill: bool = False) -> None:
        self.events.append((event, allow_backfill))


@pytest.fixture
def fake_engine():
    return FakeSpeechEngine(segments=[EngineSegment("Hello there.", 250, 400)])


@pytest.fixture
def sink():
    return RecordingSink()
