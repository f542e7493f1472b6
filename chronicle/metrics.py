"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import Counter, Summary

CHUNKS_BUFFERED = Counter(
    "chronicle_chunks_buffered_total",
    "Audio chunks handed from capture to the transcription queue",
    labelnames=("reason",),
)

CHUNKS_PROCESSED = Counter(
    "chronicle_chunks_processed_total",
    "Audio chunks drained by the transcription engine",
    labelnames=("status",),
)

SEGMENTS_EMITTED = Counter(
    "chronicle_segments_emitted_total",
    "Transcript segments delivered to the sink",
)

SEGMENTS_FILTERED = Counter(
    "chronicle_segments_filtered_total",
    "Transcript segments discarded as blank, silence or non-speech",
)

INFERENCE_DURATION = Summary(
    "chronicle_inference_seconds",
    "Time spent running speech inference on one chunk",
)

MODEL_DOWNLOADS = Counter(
    "chronicle_model_downloads_total",
    "Whisper model download attempts",
    labelnames=("status",),
)
