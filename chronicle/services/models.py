"""Whisper model catalogue and on-disk lifecycle (resolve, download, readiness)."""

from __future__ import annotations

import logging
import os
import threading
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Union

import httpx

from ..config import ChronicleSettings, DEFAULT_MODEL_BASE_URL
from ..errors import DownloadFailed
from ..metrics import MODEL_DOWNLOADS

LOGGER = logging.getLogger("chronicle.models")

USER_AGENT = "Chronicle-Transcriber"
READY_FRACTION = 0.9
DOWNLOAD_CHUNK_BYTES = 8192

ProgressCallback = Callable[[int, int], None]


class WhisperModel(Enum):
    TINY_EN = ("tiny.en", "ggml-tiny.en.bin", 75_000_000, "Tiny English (75MB, fastest)")
    BASE_EN = ("base.en", "ggml-base.en.bin", 142_000_000, "Base English (142MB, fast)")
    SMALL_EN = ("small.en", "ggml-small.en.bin", 466_000_000, "Small English (466MB, balanced)")
    MEDIUM_EN = (
        "medium.en",
        "ggml-medium.en.bin",
        1_500_000_000,
        "Medium English (1.5GB, accurate)",
    )
    LARGE = ("large-v3", "ggml-large-v3.bin", 3_100_000_000, "Large v3 (3.1GB, most accurate)")

    def __init__(self, variant: str, file_name: str, size_bytes: int, description: str) -> None:
        self.variant = variant
        self.file_name = file_name
        self.size_bytes = size_bytes
        self.description = description

    @classmethod
    def lookup(cls, value: Union["WhisperModel", str]) -> "WhisperModel":
        """Accept a member, its variant id, its member name or its file name."""

        if isinstance(value, cls):
            return value
        key = str(value).strip()
        for model in cls:
            if key in (model.variant, model.file_name) or key.upper() == model.name:
                return model
        raise ValueError(f"Unknown Whisper model: {value!r}")


def format_bytes(count: int) -> str:
    if count >= 1_000_000_000:
        return f"{count / 1_000_000_000:.1f} GB"
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f} MB"
    if count >= 1_000:
        return f"{count / 1_000:.1f} KB"
    return f"{count} B"


class ModelManager:
    """Maps catalogue entries to local files and downloads missing ones.

    Only one download runs at a time; a concurrent request is rejected with
    :class:`DownloadFailed` instead of being queued. Bytes are streamed into a
    ``.part`` file that is removed on any failure or cancellation.
    """

    def __init__(
        self,
        models_dir: Path,
        *,
        base_url: str = DEFAULT_MODEL_BASE_URL,
        timeout: float = 30.0,
        connect_retries: int = 2,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.models_dir = Path(models_dir)
        self.base_url = base_url
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=timeout,
            transport=httpx.HTTPTransport(retries=connect_retries),
            headers={"User-Agent": USER_AGENT},
            follow_redirects=False,
        )
        self._download_lock = threading.Lock()
        self._cancel_event = threading.Event()

    @classmethod
    def from_settings(cls, settings: ChronicleSettings, **kwargs) -> "ModelManager":
        return cls(
            settings.models_path(),
            base_url=settings.model_base_url,
            timeout=settings.download_timeout_s,
            connect_retries=settings.download_connect_retries,
            **kwargs,
        )

    @property
    def download_in_progress(self) -> bool:
        return self._download_lock.locked()

    def model_path(self, model: Union[WhisperModel, str]) -> Path:
        return self.models_dir / WhisperModel.lookup(model).file_name

    def model_url(self, model: Union[WhisperModel, str]) -> str:
        return self.base_url + WhisperModel.lookup(model).file_name

    def is_model_ready(self, model: Union[WhisperModel, str]) -> bool:
        entry = WhisperModel.lookup(model)
        path = self.model_path(entry)
        try:
            return path.is_file() and path.stat().st_size >= entry.size_bytes * READY_FRACTION
        except OSError:
            return False

    def list_downloaded_models(self) -> List[WhisperModel]:
        return [model for model in WhisperModel if self.is_model_ready(model)]

    def resolve_model(
        self,
        model: Union[WhisperModel, str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        entry = WhisperModel.lookup(model)
        if self.is_model_ready(entry):
            return self.model_path(entry)
        return self.download_model(entry, on_progress)

    def download_model(
        self,
        model: Union[WhisperModel, str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        entry = WhisperModel.lookup(model)
        if not self._download_lock.acquire(blocking=False):
            LOGGER.warning("Model download already in progress")
            MODEL_DOWNLOADS.labels(status="rejected").inc()
            raise DownloadFailed("Model download already in progress")
        try:
            target = self.model_path(entry)
            if self.is_model_ready(entry):
                return target
            self._cancel_event.clear()
            self.models_dir.mkdir(parents=True, exist_ok=True)
            partial = target.with_name(target.name + ".part")
            LOGGER.info("Downloading %s from %s", entry.file_name, self.model_url(entry))
            completed = False
            try:
                self._fetch(self.model_url(entry), partial, entry.size_bytes, on_progress)
                os.replace(partial, target)
                completed = True
            except Exception as exc:
                cancelled = self._cancel_event.is_set()
                MODEL_DOWNLOADS.labels(status="cancelled" if cancelled else "failed").inc()
                LOGGER.error("Failed to download model %s: %s", entry.file_name, exc)
                if isinstance(exc, DownloadFailed):
                    raise
                raise DownloadFailed(f"Model download failed: {exc}") from exc
            finally:
                if not completed:
                    partial.unlink(missing_ok=True)
            MODEL_DOWNLOADS.labels(status="success").inc()
            LOGGER.info("Model downloaded successfully: %s", target)
            return target
        finally:
            self._download_lock.release()

    def cancel_download(self) -> None:
        if self.download_in_progress:
            LOGGER.info("Cancelling model download")
        self._cancel_event.set()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _fetch(
        self,
        url: str,
        target: Path,
        expected_size: int,
        on_progress: Optional[ProgressCallback],
    ) -> int:
        with self._client.stream("GET", url) as response:
            if response.status_code not in (301, 302):
                return self._write_body(response, target, expected_size, on_progress)
            location = response.headers.get("Location")
            if not location:
                raise DownloadFailed(f"Redirect from {url} without Location header")
            redirect_url = str(response.url.join(location))
        LOGGER.info("Following redirect to %s", redirect_url)
        with self._client.stream("GET", redirect_url) as response:
            if response.is_redirect:
                raise DownloadFailed(f"Too many redirects while fetching {url}")
            return self._write_body(response, target, expected_size, on_progress)

    def _write_body(
        self,
        response: httpx.Response,
        target: Path,
        expected_size: int,
        on_progress: Optional[ProgressCallback],
    ) -> int:
        response.raise_for_status()
        total = 0
        with target.open("wb") as handle:
            for data in response.iter_bytes(chunk_size=DOWNLOAD_CHUNK_BYTES):
                if self._cancel_event.is_set():
                    raise DownloadFailed("Download cancelled")
                handle.write(data)
                total += len(data)
                if on_progress:
                    on_progress(total, expected_size)
        return total


__all__ = ["WhisperModel", "ModelManager", "format_bytes", "READY_FRACTION"]
