"""Error taxonomy shared across the capture/transcription pipeline."""

from __future__ import annotations


class ChronicleError(Exception):
    pass


class DeviceUnavailable(ChronicleError):
    """The capture line could not be opened."""


class DownloadFailed(ChronicleError):
    """Model fetch failed, was cancelled, or another download is running."""


class NotInitialized(ChronicleError):
    """Processing was requested before a model was loaded."""


class InferenceFailure(ChronicleError):
    """The speech engine rejected a single chunk."""


class ChunkProcessingError(ChronicleError):
    pass


__all__ = [
    "ChronicleError",
    "DeviceUnavailable",
    "DownloadFailed",
    "NotInitialized",
    "InferenceFailure",
    "ChunkProcessingError",
]
