"""Pipeline settings resolved from the environment."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

from .audio.types import ChunkingPolicy

DEFAULT_MODEL_BASE_URL = "https://huggingface.co/ggerganov/whisper.cpp/resolve/main/"
DEFAULT_MODELS_DIR = str(Path.home() / ".chronicle" / "models")


def _env(name: str, default: str, cast=str):
    return lambda: cast(os.getenv(name, default))


class ChronicleSettings(BaseModel):
    """Everything the capture/transcription pipeline needs to be constructed.

    Defaults are read from ``CHRONICLE_*`` variables when the settings object
    is built, so tests can monkeypatch the environment and construct a fresh
    instance.
    """

    models_dir: str = Field(default_factory=_env("CHRONICLE_MODELS_DIR", DEFAULT_MODELS_DIR))
    model_variant: str = Field(default_factory=_env("CHRONICLE_MODEL", "medium.en"))
    model_base_url: str = Field(
        default_factory=_env("CHRONICLE_MODEL_BASE_URL", DEFAULT_MODEL_BASE_URL)
    )
    min_chunk_ms: int = Field(default_factory=_env("CHRONICLE_MIN_CHUNK_MS", "30000", int))
    max_chunk_ms: int = Field(default_factory=_env("CHRONICLE_MAX_CHUNK_MS", "300000", int))
    silence_threshold_rms: float = Field(
        default_factory=_env("CHRONICLE_SILENCE_THRESHOLD", "0.015", float)
    )
    silence_duration_ms: int = Field(
        default_factory=_env("CHRONICLE_SILENCE_DURATION_MS", "1500", int)
    )
    block_bytes: int = Field(default_factory=_env("CHRONICLE_BLOCK_BYTES", "4096", int))
    capture_join_timeout_s: float = Field(
        default_factory=_env("CHRONICLE_CAPTURE_JOIN_TIMEOUT", "5.0", float)
    )
    polling_interval_s: float = Field(
        default_factory=_env("CHRONICLE_POLLING_INTERVAL", "2.0", float)
    )
    drain_wait_s: float = Field(default_factory=_env("CHRONICLE_DRAIN_WAIT", "5.0", float))
    language: str = Field(default_factory=_env("CHRONICLE_LANGUAGE", "en"))
    whisper_threads: int = Field(default_factory=_env("CHRONICLE_WHISPER_THREADS", "4", int))
    download_timeout_s: float = Field(
        default_factory=_env("CHRONICLE_DOWNLOAD_TIMEOUT", "30.0", float)
    )
    download_connect_retries: int = Field(
        default_factory=_env("CHRONICLE_DOWNLOAD_RETRIES", "2", int)
    )

    def chunking_policy(self) -> ChunkingPolicy:
        return ChunkingPolicy(
            min_chunk_ms=self.min_chunk_ms,
            max_chunk_ms=self.max_chunk_ms,
            silence_threshold_rms=self.silence_threshold_rms,
            silence_duration_ms=self.silence_duration_ms,
        )

    def models_path(self) -> Path:
        return Path(self.models_dir).expanduser()


@lru_cache()
def get_settings() -> ChronicleSettings:
    return ChronicleSettings()
