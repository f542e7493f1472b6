"""Chronicle audio capture and batch transcription pipeline."""

__version__ = "0.1.0"
