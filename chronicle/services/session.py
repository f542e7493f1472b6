"""Recording session state machine coordinating capture, model and transcription."""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, List, Optional, Union

from ..audio.capture import AudioCaptureEngine
from ..audio.devices import DeviceBackend, DeviceId, SoundDeviceBackend
from ..audio.types import AudioDevice
from ..config import ChronicleSettings, get_settings
from ..errors import DownloadFailed
from ..store.chunk_queue import ChunkQueue
from ..store.transcript_store import ActivityTranscript, TranscriptSink
from .models import ModelManager, ProgressCallback, WhisperModel
from .speech_engine import SpeechEngine, WhisperCppEngine
from .transcriber import TranscriptionEngine

LOGGER = logging.getLogger("chronicle.session")


class RecordingState(str, Enum):
    STOPPED = "stopped"
    INITIALIZING = "initializing"
    RECORDING = "recording"
    PROCESSING = "processing"
    ERROR = "error"


StateListener = Callable[[RecordingState], None]


class RecordingSession:
    """Drives initialize -> start -> stop across the pipeline components.

    ``state`` and ``last_error`` are the only failure signals exposed to
    callers; exceptions raised by components while initializing, starting or
    stopping are converted into the ``ERROR`` state. Listeners are notified
    once per actual transition.
    """

    def __init__(
        self,
        capture: AudioCaptureEngine,
        transcriber: TranscriptionEngine,
        models: ModelManager,
        *,
        model: Union[WhisperModel, str] = WhisperModel.MEDIUM_EN,
    ) -> None:
        self.capture = capture
        self.transcriber = transcriber
        self.models = models
        self.selected_model = WhisperModel.lookup(model)
        self._state = RecordingState.STOPPED
        self._state_lock = threading.Lock()
        self._control_lock = threading.RLock()
        self._listeners: List[StateListener] = []
        self._last_error: Optional[str] = None

    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def is_recording(self) -> bool:
        return self._state is RecordingState.RECORDING

    @property
    def is_initialized(self) -> bool:
        return self.transcriber.is_initialized

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def available_models(self) -> List[WhisperModel]:
        return list(WhisperModel)

    def is_model_downloaded(self, model: Union[WhisperModel, str]) -> bool:
        return self.models.is_model_ready(model)

    def list_available_devices(self) -> List[AudioDevice]:
        return self.capture.list_available_devices()

    def initialize(
        self,
        model: Union[WhisperModel, str, None] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> bool:
        """Resolve (downloading if needed) and load the model; True when ready."""

        with self._control_lock:
            if self._state not in (RecordingState.STOPPED, RecordingState.ERROR):
                LOGGER.warning("Cannot initialize while %s", self._state.value)
                return False
            requested = self.selected_model if model is None else WhisperModel.lookup(model)
            if self.transcriber.is_initialized:
                if requested is self.selected_model:
                    LOGGER.info("Session already initialized with %s", requested.variant)
                    self._set_state(RecordingState.STOPPED)
                    return True
                self.transcriber.close()

            self.selected_model = requested
            self._set_state(RecordingState.INITIALIZING)
            try:
                model_file = self.models.resolve_model(requested, on_progress)
            except DownloadFailed as exc:
                return self._fail(f"Model download failed or was cancelled: {exc}")
            except Exception as exc:
                LOGGER.exception("Failed to resolve model %s", requested.variant)
                return self._fail(f"Model download failed or was cancelled: {exc}")
            try:
                self.transcriber.initialize(model_file)
            except Exception as exc:
                LOGGER.exception("Failed to initialize speech engine")
                return self._fail(f"Failed to initialize Whisper: {exc}")
            self._set_state(RecordingState.STOPPED)
            LOGGER.info("Session initialized with model: %s", model_file.name)
            return True

    def start(self, device_id: Optional[DeviceId] = None) -> bool:
        with self._control_lock:
            if self._state is RecordingState.RECORDING:
                LOGGER.warning("Already recording")
                return False
            if not self.transcriber.is_initialized and not self.initialize():
                return False
            try:
                self.capture.start_recording(device_id)
                self.transcriber.start_processing()
            except Exception as exc:
                LOGGER.exception("Failed to start recording")
                if self.capture.is_recording:
                    self.capture.stop_recording()
                return self._fail(f"Failed to start recording: {exc}")
            self._set_state(RecordingState.RECORDING)
            LOGGER.info("Started audio recording")
            return True

    def stop(self) -> None:
        with self._control_lock:
            if self._state is not RecordingState.RECORDING:
                return
            self._set_state(RecordingState.PROCESSING)
            try:
                self.capture.stop_recording()
                self.transcriber.stop_processing()
            except Exception as exc:
                LOGGER.exception("Error while stopping recording")
                self._fail(f"Error while stopping recording: {exc}")
                return
            self._set_state(RecordingState.STOPPED)
            LOGGER.info("Stopped audio recording")

    def close(self) -> None:
        with self._control_lock:
            if self._state is RecordingState.RECORDING:
                self.stop()
            self.capture.close()
            self.transcriber.close()
            self.models.close()
            self._listeners.clear()
        LOGGER.info("Recording session closed")

    def __enter__(self) -> "RecordingSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _fail(self, message: str) -> bool:
        self._last_error = message
        self._set_state(RecordingState.ERROR)
        return False

    def _set_state(self, new_state: RecordingState) -> None:
        with self._state_lock:
            old_state, self._state = self._state, new_state
        if old_state is new_state:
            return
        LOGGER.debug("State %s -> %s", old_state.value, new_state.value)
        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception:
                LOGGER.exception("State listener failed")


def build_session(
    settings: ChronicleSettings | None = None,
    *,
    sink: TranscriptSink | None = None,
    backend: DeviceBackend | None = None,
    engine: SpeechEngine | None = None,
    models: ModelManager | None = None,
) -> RecordingSession:
    """Wire a session from settings, defaulting to the real device and engine."""

    settings = settings or get_settings()
    queue = ChunkQueue()
    capture = AudioCaptureEngine(
        queue,
        backend or SoundDeviceBackend(),
        settings.chunking_policy(),
        block_bytes=settings.block_bytes,
        join_timeout=settings.capture_join_timeout_s,
    )
    transcriber = TranscriptionEngine(
        queue,
        engine or WhisperCppEngine(settings.language, settings.whisper_threads),
        sink if sink is not None else ActivityTranscript(),
        language=settings.language,
        polling_interval=settings.polling_interval_s,
        drain_wait=settings.drain_wait_s,
    )
    return RecordingSession(
        capture,
        transcriber,
        models or ModelManager.from_settings(settings),
        model=settings.model_variant,
    )


__all__ = ["RecordingSession", "RecordingState", "build_session", "StateListener"]
