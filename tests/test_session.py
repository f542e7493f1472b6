from pathlib import Path

import pytest

from chronicle.audio.capture import AudioCaptureEngine
from chronicle.audio.types import ChunkingPolicy
from chronicle.config import ChronicleSettings
from chronicle.errors import DownloadFailed
from chronicle.services.models import WhisperModel
from chronicle.services.session import RecordingSession, RecordingState, build_session
from chronicle.services.speech_engine import EngineSegment
from chronicle.services.transcriber import TranscriptionEngine
from chronicle.store.chunk_queue import ChunkQueue

from conftest import (
    FakeBackend,
    FakeLine,
    FakeSpeechEngine,
    RecordingSink,
    SteppingClock,
    silence,
    tone,
)


class FakeModels:
    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.requests = []
        self.closed = False

    def resolve_model(self, model, on_progress=None):
        self.requests.append(model)
        if len(self.requests) <= self.fail_times:
            raise DownloadFailed("connection reset")
        return Path("/models") / WhisperModel.lookup(model).file_name

    def is_model_ready(self, model):
        return len(self.requests) > self.fail_times

    def close(self):
        self.closed = True


def _settings(**overrides):
    values = dict(
        model_variant="tiny.en",
        polling_interval_s=0.05,
        capture_join_timeout_s=1.0,
        drain_wait_s=2.0,
    )
    values.update(overrides)
    return ChronicleSettings(**values)


def make_session(line=None, engine=None, models=None, backend=None, sink=None):
    states = []
    session = build_session(
        _settings(),
        sink=sink if sink is not None else RecordingSink(),
        backend=backend or FakeBackend(line or FakeLine()),
        engine=engine or FakeSpeechEngine(),
        models=models or FakeModels(),
    )
    session.add_state_listener(states.append)
    return session, states


def test_initialize_loads_selected_model():
    engine = FakeSpeechEngine()
    session, states = make_session(engine=engine)

    assert session.state is RecordingState.STOPPED
    assert session.initialize() is True
    assert states == [RecordingState.INITIALIZING, RecordingState.STOPPED]
    assert engine.loaded == Path("/models/ggml-tiny.en.bin")
    assert session.is_initialized
    assert session.last_error is None


def test_start_initializes_then_records_once():
    session, states = make_session()

    assert session.start() is True
    assert session.is_recording
    assert session.start() is False
    assert states == [
        RecordingState.INITIALIZING,
        RecordingState.STOPPED,
        RecordingState.RECORDING,
    ]
    session.stop()
    assert states[-2:] == [RecordingState.PROCESSING, RecordingState.STOPPED]
    session.close()


def test_stop_transcribes_buffered_audio():
    line = FakeLine([tone(100)] * 5)
    sink = RecordingSink()
    engine = FakeSpeechEngine(segments=[EngineSegment("final words", 0, 50)])
    session, _ = make_session(line=line, engine=engine, sink=sink)
    assert session.start()
    assert line.drained.wait(2)
    session.stop()

    assert session.state is RecordingState.STOPPED
    assert [event.text for event, _ in sink.events] == ["final words"]
    assert len(engine.calls) == 1


def test_download_failure_enters_error_and_recovers():
    models = FakeModels(fail_times=1)
    session, states = make_session(models=models)

    assert session.initialize() is False
    assert session.state is RecordingState.ERROR
    assert "Model download failed" in session.last_error
    assert session.is_model_downloaded("tiny.en") is False

    assert session.initialize() is True
    assert states == [
        RecordingState.INITIALIZING,
        RecordingState.ERROR,
        RecordingState.INITIALIZING,
        RecordingState.STOPPED,
    ]


def test_engine_load_failure_enters_error():
    engine = FakeSpeechEngine(load_error=RuntimeError("bad magic"))
    session, _ = make_session(engine=engine)

    assert session.start() is False
    assert session.state is RecordingState.ERROR
    assert session.last_error.startswith("Failed to initialize Whisper")


def test_unavailable_device_enters_error():
    session, states = make_session(backend=FakeBackend(fail=True))

    assert session.start() is False
    assert session.state is RecordingState.ERROR
    assert session.last_error.startswith("Failed to start recording")
    assert not session.capture.is_recording
    assert RecordingState.RECORDING not in states


def test_stop_without_recording_is_a_no_op():
    session, states = make_session()
    session.stop()
    assert states == []


def test_initialize_rejected_while_recording():
    session, _ = make_session()
    assert session.start()
    assert session.initialize("base.en") is False
    assert session.selected_model is WhisperModel.TINY_EN
    session.close()
    assert session.state is RecordingState.STOPPED


def test_switching_model_reloads_engine():
    engine = FakeSpeechEngine()
    session, _ = make_session(engine=engine)
    assert session.initialize()
    assert session.initialize("base.en")
    assert engine.closed
    assert engine.loaded == Path("/models/ggml-base.en.bin")
    assert session.selected_model is WhisperModel.BASE_EN


def test_failing_listener_does_not_break_transitions():
    session, states = make_session()

    def broken(state):
        raise RuntimeError("listener bug")

    session.add_state_listener(broken)
    assert session.initialize()
    session.remove_state_listener(broken)
    session.remove_state_listener(broken)
    assert states == [RecordingState.INITIALIZING, RecordingState.STOPPED]


def test_close_releases_components():
    models = FakeModels()
    engine = FakeSpeechEngine()
    with make_session(engine=engine, models=models)[0] as session:
        assert session.start()
    assert models.closed
    assert engine.closed


@pytest.mark.parametrize("state", list(RecordingState))
def test_state_values_are_lowercase(state):
    assert state.value == state.name.lower()


def test_every_captured_chunk_is_transcribed_exactly_once():
    # 100 ms blocks: a silence boundary at 1.6 s, a max-length boundary at
    # 3.6 s, and a 0.5 s remainder flushed on stop.
    blocks = [tone(100)] * 12 + [silence(100)] * 4 + [tone(100)] * 25
    line = FakeLine(blocks)
    queue = ChunkQueue()
    engine = FakeSpeechEngine(segments=[EngineSegment("words", 0, 10)])
    sink = RecordingSink()
    capture = AudioCaptureEngine(
        queue,
        FakeBackend(line),
        ChunkingPolicy(min_chunk_ms=1000, max_chunk_ms=2000, silence_duration_ms=300),
        join_timeout=1.0,
        clock=SteppingClock(),
    )
    transcriber = TranscriptionEngine(queue, engine, sink, polling_interval=0.05, drain_wait=2.0)
    session = RecordingSession(capture, transcriber, FakeModels(), model="tiny.en")

    assert session.start()
    assert line.drained.wait(5)
    session.stop()

    assert session.state is RecordingState.STOPPED
    assert len(queue) == 0
    assert [samples.size for samples in engine.calls] == [16 * 1600, 20 * 1600, 16_100]
    assert len(sink.events) == 3
    session.close()
