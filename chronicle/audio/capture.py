"""Microphone capture loop feeding the transcription queue."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional

from ..errors import DeviceUnavailable
from ..store.chunk_queue import ChunkQueue
from .chunker import Chunker
from .devices import DeviceBackend, DeviceId, InputLine
from .types import AudioDevice, ChunkingPolicy, SAMPLE_WIDTH

LOGGER = logging.getLogger("chronicle.capture")


def epoch_ms() -> int:
    return int(time.time() * 1000)


class AudioCaptureEngine:
    """Owns the capture line and the dedicated thread that reads from it.

    The loop never blocks on the queue; chunk boundaries come from
    :class:`Chunker`. Stopping is cooperative: the loop checks an event each
    iteration, is joined with a bounded timeout, and flushes the partial
    chunk on its way out.
    """

    def __init__(
        self,
        queue: ChunkQueue,
        backend: DeviceBackend,
        policy: ChunkingPolicy | None = None,
        *,
        block_bytes: int = 4096,
        join_timeout: float = 5.0,
        clock: Callable[[], int] = epoch_ms,
    ) -> None:
        self.queue = queue
        self.backend = backend
        self.policy = policy or ChunkingPolicy()
        self.frames_per_block = max(1, block_bytes // SAMPLE_WIDTH)
        self.join_timeout = join_timeout
        self.clock = clock
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._line: InputLine | None = None

    @property
    def is_recording(self) -> bool:
        return bool(self._thread and self._thread.is_alive() and not self._stop.is_set())

    def start_recording(self, device_id: Optional[DeviceId] = None) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                LOGGER.warning("Recording already in progress")
                return
            if self._line is not None:
                # Left over from a loop that died on a read error.
                self._close_line(self._line)
                self._line = None
            device = self.backend.resolve(device_id)
            try:
                line = self.backend.open_input(device, self.frames_per_block)
            except DeviceUnavailable:
                LOGGER.error("Failed to start audio recording: audio line unavailable")
                raise
            except Exception as exc:
                LOGGER.error("Failed to start audio recording: %s", exc)
                raise DeviceUnavailable(str(exc)) from exc

            self._line = line
            self._stop.clear()
            chunker = Chunker(self.policy, self.clock())
            self._thread = threading.Thread(
                target=self._loop,
                args=(line, chunker),
                name="chronicle-audio-capture",
                daemon=True,
            )
            self._thread.start()
            LOGGER.info(
                "Started audio recording from device: %s",
                "default" if device is None else device,
            )

    def stop_recording(self) -> None:
        with self._lock:
            thread, line = self._thread, self._line
            if thread is None:
                return
            self._stop.set()
            thread.join(self.join_timeout)
            if line is not None:
                self._close_line(line)
            if thread.is_alive():
                # A blocked read returns once the line is closed.
                thread.join(self.join_timeout)
                if thread.is_alive():
                    LOGGER.warning("Capture thread did not exit within %.1fs", self.join_timeout)
            self._thread = None
            self._line = None
            LOGGER.info("Stopped audio recording")

    def list_available_devices(self) -> List[AudioDevice]:
        try:
            return self.backend.list_input_devices()
        except Exception as exc:
            LOGGER.warning("Device enumeration failed: %s", exc)
            return []

    def close(self) -> None:
        self.stop_recording()

    def __enter__(self) -> "AudioCaptureEngine":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @staticmethod
    def _close_line(line: InputLine) -> None:
        try:
            line.close()
        except Exception as exc:
            LOGGER.warning("Error closing audio line: %s", exc)

    def _loop(self, line: InputLine, chunker: Chunker) -> None:
        try:
            while not self._stop.is_set():
                block = line.read(self.frames_per_block)
                if not block:
                    self._stop.wait(0.01)
                    continue
                chunk = chunker.feed(block, self.clock())
                if chunk is not None:
                    self.queue.push(chunk)
                    LOGGER.info("Queue size: %d", len(self.queue))
        except Exception:
            if not self._stop.is_set():
                LOGGER.exception("Capture loop failed")
        finally:
            LOGGER.info(
                "Capture loop ended. Final buffer size: %d bytes", chunker.buffered_bytes
            )
            final = chunker.flush(self.clock())
            if final is not None:
                self.queue.push(final)


__all__ = ["AudioCaptureEngine", "epoch_ms"]
