"""In-memory queue for audio chunks awaiting transcription."""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Optional

from ..audio.types import AudioChunk

LOGGER = logging.getLogger("chronicle.queue")


class ChunkQueue:
    """Unbounded FIFO shared by the capture loop and the transcription task.

    ``deque.append`` and ``deque.popleft`` are atomic, so producers and the
    consumer never need an external lock and ``push`` never blocks.
    """

    def __init__(self) -> None:
        self._data: Deque[AudioChunk] = deque()

    def push(self, chunk: AudioChunk) -> None:
        self._data.append(chunk)
        LOGGER.debug("Chunk queued (%d bytes), queue size: %d", len(chunk.data), len(self._data))

    def poll(self) -> Optional[AudioChunk]:
        try:
            return self._data.popleft()
        except IndexError:
            return None

    def has_chunks(self) -> bool:
        return bool(self._data)

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


__all__ = ["ChunkQueue"]
