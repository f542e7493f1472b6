"""Command-line entry point for the capture and transcription pipeline."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import List, Optional, Sequence

from .audio.chunker import split_pcm
from .audio.devices import SoundDeviceBackend
from .audio.types import SAMPLE_RATE
from .config import ChronicleSettings, get_settings
from .errors import ChronicleError
from .services.models import ModelManager, WhisperModel, format_bytes
from .services.session import RecordingState, build_session
from .services.speech_engine import WhisperCppEngine
from .services.transcriber import TranscriptionEngine
from .store.chunk_queue import ChunkQueue
from .store.transcript_store import ActivityTranscript, TranscriptionSegment

LOGGER = logging.getLogger("chronicle.cli")


def _print_progress(done: int, total: int) -> None:
    percent = 100.0 * done / total if total else 0.0
    sys.stderr.write(f"\r{format_bytes(done)} / {format_bytes(total)} ({percent:.0f}%)")
    sys.stderr.flush()


def _print_events(events: List[TranscriptionSegment]) -> None:
    for event in events:
        print(f"[{event.timestamp.isoformat()}] {event.text}")


def cmd_devices(args: argparse.Namespace, settings: ChronicleSettings) -> int:
    devices = SoundDeviceBackend().list_input_devices()
    if not devices:
        print("No input devices found")
        return 1
    for device in devices:
        print(f"{device.index:>3}  {device.name}  ({device.description})")
    return 0


def cmd_models(args: argparse.Namespace, settings: ChronicleSettings) -> int:
    manager = ModelManager.from_settings(settings)
    try:
        for model in WhisperModel:
            marker = "*" if manager.is_model_ready(model) else " "
            print(f"{marker} {model.variant:<10} {model.description}")
    finally:
        manager.close()
    return 0


def cmd_download(args: argparse.Namespace, settings: ChronicleSettings) -> int:
    manager = ModelManager.from_settings(settings)
    try:
        path = manager.download_model(args.variant, _print_progress)
    except KeyboardInterrupt:
        manager.cancel_download()
        return 130
    finally:
        sys.stderr.write("\n")
        manager.close()
    print(path)
    return 0


def cmd_record(args: argparse.Namespace, settings: ChronicleSettings) -> int:
    if args.model:
        settings = settings.model_copy(update={"model_variant": args.model})
    transcript = ActivityTranscript()
    session = build_session(settings, sink=transcript)
    session.add_state_listener(lambda state: LOGGER.info("Session state: %s", state.value))
    try:
        if not session.initialize(on_progress=_print_progress):
            print(f"Initialization failed: {session.last_error}", file=sys.stderr)
            return 1
        if not session.start(args.device):
            print(f"Could not start recording: {session.last_error}", file=sys.stderr)
            return 1
        print("Recording. Press Ctrl-C to stop.", file=sys.stderr)
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            pass
        session.stop()
        _print_events(transcript.events())
        return 0 if session.state is RecordingState.STOPPED else 1
    finally:
        session.close()


def cmd_transcribe(args: argparse.Namespace, settings: ChronicleSettings) -> int:
    import soundfile as sf

    data, rate = sf.read(str(args.file), dtype="int16", always_2d=True)
    if rate != SAMPLE_RATE:
        print(f"Expected {SAMPLE_RATE} Hz audio, got {rate} Hz", file=sys.stderr)
        return 2
    pcm = data[:, 0].astype("<i2").tobytes()

    manager = ModelManager.from_settings(settings)
    try:
        model_file = manager.resolve_model(args.model or settings.model_variant, _print_progress)
    finally:
        manager.close()

    queue = ChunkQueue()
    transcript = ActivityTranscript()
    start_ms = int(Path(args.file).stat().st_mtime * 1000)
    for chunk in split_pcm(pcm, settings.chunking_policy(), start_ms, settings.block_bytes):
        queue.push(chunk)

    engine = TranscriptionEngine(
        queue,
        WhisperCppEngine(settings.language, settings.whisper_threads),
        transcript,
        language=settings.language,
    )
    with engine:
        engine.initialize(model_file)
        engine.drain()
    _print_events(transcript.events())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chronicle", description="Capture audio and transcribe it locally with whisper.cpp."
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("devices", help="List audio input devices.").set_defaults(func=cmd_devices)
    sub.add_parser("models", help="List Whisper models (* = downloaded).").set_defaults(
        func=cmd_models
    )

    download = sub.add_parser("download", help="Download a Whisper model.")
    download.add_argument("variant", choices=[model.variant for model in WhisperModel])
    download.set_defaults(func=cmd_download)

    record = sub.add_parser("record", help="Record from a microphone until Ctrl-C.")
    record.add_argument("--device", help="Input device index or exact name.")
    record.add_argument("--model", help="Model variant (default: CHRONICLE_MODEL).")
    record.set_defaults(func=cmd_record)

    transcribe = sub.add_parser("transcribe", help="Transcribe a 16 kHz audio file.")
    transcribe.add_argument("file", type=Path)
    transcribe.add_argument("--model", help="Model variant (default: CHRONICLE_MODEL).")
    transcribe.set_defaults(func=cmd_transcribe)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return args.func(args, get_settings())
    except (ChronicleError, ValueError) as exc:
        LOGGER.error("%s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
