import numpy as np
import pytest

from chronicle.audio.chunker import Chunker, calculate_rms, split_pcm, to_instant
from chronicle.audio.types import ChunkingPolicy

from conftest import silence, tone

T0 = 1_700_000_000_000
BLOCK_MS = 100


def _feed(chunker, blocks, start=T0):
    chunks = []
    now = start
    for block in blocks:
        now += BLOCK_MS
        chunk = chunker.feed(block, now)
        if chunk is not None:
            chunks.append((now, chunk))
    return chunks, now


def test_rms_of_silence_and_full_scale():
    assert calculate_rms(b"") == 0.0
    assert calculate_rms(b"\x01") == 0.0
    assert calculate_rms(silence(100)) == 0.0
    full = np.full(100, 32767, dtype="<i2").tobytes()
    assert calculate_rms(full) == pytest.approx(32767 / 32768)
    assert calculate_rms(full + silence(100), length=len(full)) == pytest.approx(32767 / 32768)


def test_rms_of_sine_is_amplitude_over_root_two():
    value = calculate_rms(tone(1000, amplitude=16384))
    assert value == pytest.approx(0.5 / np.sqrt(2), rel=1e-3)


def test_short_silence_never_splits_before_minimum():
    chunker = Chunker(ChunkingPolicy(), T0)
    blocks = [silence(BLOCK_MS)] * 290
    chunks, _ = _feed(chunker, blocks)
    assert chunks == []
    assert chunker.buffered_bytes == 290 * 3200


def test_silence_after_minimum_emits_one_chunk():
    chunker = Chunker(ChunkingPolicy(), T0)
    blocks = [tone(BLOCK_MS)] * 310 + [silence(BLOCK_MS)] * 16
    chunks, _ = _feed(chunker, blocks)

    assert len(chunks) == 1
    now, chunk = chunks[0]
    # Silence started at T0 + 31100 and lasted 1500 ms by T0 + 32600.
    assert now == T0 + 32_600
    assert chunk.captured_at == to_instant(T0)
    assert chunk.duration_ms == 32_600
    assert len(chunk.data) == 326 * 3200
    assert chunker.buffered_bytes == 0
    assert chunker.chunk_start_ms == now


def test_speech_resets_silence_timer():
    chunker = Chunker(ChunkingPolicy(), T0)
    blocks = (
        [tone(BLOCK_MS)] * 310
        + [silence(BLOCK_MS)] * 10
        + [tone(BLOCK_MS)]
        + [silence(BLOCK_MS)] * 10
    )
    chunks, _ = _feed(chunker, blocks)
    assert chunks == []


def test_continuous_speech_splits_at_maximum():
    chunker = Chunker(ChunkingPolicy(), T0)
    blocks = [tone(BLOCK_MS)] * 3010
    chunks, now = _feed(chunker, blocks)

    assert len(chunks) == 1
    boundary, chunk = chunks[0]
    assert boundary == T0 + 300_000
    assert chunk.duration_ms == 300_000

    rest = chunker.flush(now)
    assert rest is not None
    assert rest.captured_at == to_instant(boundary)
    assert rest.duration_ms == 1_000
    assert chunker.flush(now) is None


def test_empty_block_is_ignored():
    chunker = Chunker(ChunkingPolicy(), T0)
    assert chunker.feed(b"", T0 + 400_000) is None
    assert chunker.buffered_bytes == 0


def test_split_pcm_uses_sample_clock():
    policy = ChunkingPolicy(min_chunk_ms=1000, max_chunk_ms=5000, silence_duration_ms=500)
    pcm = tone(1200) + silence(600) + tone(300)
    chunks = list(split_pcm(pcm, policy, T0, block_bytes=3200))

    assert len(chunks) == 2
    first, last = chunks
    assert first.captured_at == to_instant(T0)
    assert first.duration_ms == 1800
    assert last.captured_at == to_instant(T0 + 1800)
    assert last.duration_ms == 300
    assert b"".join(chunk.data for chunk in chunks) == pcm
