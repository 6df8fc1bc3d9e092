"""Minimal PCM WAV framing for recorder, player and AI audio files."""

from __future__ import annotations

import math
import struct
from typing import Final

import numpy as np

WAV_HEADER_BYTES: Final[int] = 44
# Used when a buffer cannot be parsed; matches the old fixed greeting window.
FALLBACK_DURATION_MS: Final[int] = 3000


def build_wav_header(
    data_length: int,
    sample_rate: int = 16000,
    channels: int = 1,
    bits_per_sample: int = 16,
) -> bytes:
    """Build a 44-byte RIFF/WAVE header for uncompressed PCM data."""

    if data_length < 0:
        raise ValueError("data_length must be non-negative")

    block_align = channels * bits_per_sample // 8
    byte_rate = sample_rate * block_align

    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_length,
        b"WAVE",
        b"fmt ",
        16,  # fmt chunk size
        1,  # PCM
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bits_per_sample,
        b"data",
        data_length,
    )


def wav_bytes(pcm: bytes, sample_rate: int = 16000, channels: int = 1, bits_per_sample: int = 16) -> bytes:
    return build_wav_header(len(pcm), sample_rate, channels, bits_per_sample) + pcm


def read_wav_duration(buffer: bytes) -> int:
    """Return the playback duration of a WAV buffer in milliseconds (rounded up).

    Walks the RIFF chunk list looking for ``fmt `` and ``data``. Anything that
    cannot be parsed yields ``FALLBACK_DURATION_MS`` instead of an error.
    """

    if len(buffer) < 12 or buffer[0:4] != b"RIFF" or buffer[8:12] != b"WAVE":
        return FALLBACK_DURATION_MS

    byte_rate: int | None = None
    data_bytes: int | None = None
    offset = 12
    while offset + 8 <= len(buffer):
        chunk_id = buffer[offset : offset + 4]
        (chunk_size,) = struct.unpack_from("<I", buffer, offset + 4)
        body = offset + 8

        if chunk_id == b"fmt " and body + 16 <= len(buffer):
            _fmt, channels, sample_rate, _rate, _align, bits = struct.unpack_from("<HHIIHH", buffer, body)
            byte_rate = sample_rate * channels * bits // 8
        elif chunk_id == b"data":
            # Recorders may leave the size field stale; trust the bytes present.
            data_bytes = min(chunk_size, len(buffer) - body)
            break

        offset = body + chunk_size + (chunk_size & 1)

    if not byte_rate or data_bytes is None:
        return FALLBACK_DURATION_MS

    return math.ceil(data_bytes * 1000 / byte_rate)


def pcm16_resample(pcm: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    if src_rate == dst_rate:
        return pcm
    if pcm.size == 0:
        return pcm.astype(np.int16)

    x_old = np.arange(pcm.size, dtype=np.float32)
    x_new = np.linspace(0, pcm.size - 1, int(pcm.size * dst_rate / src_rate), dtype=np.float32)

    y_new = np.interp(x_new, x_old, pcm.astype(np.float32))

    return np.clip(y_new, -32768, 32767).astype(np.int16)


def resample_pcm16_bytes(data: bytes, src_rate: int, dst_rate: int) -> bytes:
    """Resample little-endian PCM16 bytes; a trailing odd byte is dropped."""

    if src_rate == dst_rate:
        return data
    pcm = np.frombuffer(data[: len(data) - (len(data) % 2)], dtype="<i2")
    return pcm16_resample(pcm, src_rate, dst_rate).astype("<i2").tobytes()


def tone_pcm16(freq_hz: float, duration_ms: int, sample_rate: int = 16000, amplitude: float = 0.7) -> bytes:
    """Generate a mono sine tone as PCM16 bytes."""

    samples = int(sample_rate * duration_ms / 1000)
    t = np.arange(samples, dtype=np.float64) / sample_rate
    wave = np.sin(2 * np.pi * freq_hz * t) * amplitude * 32767
    return np.round(wave).astype("<i2").tobytes()


def silence_pcm16(duration_ms: int, sample_rate: int = 16000) -> bytes:
    return bytes(int(sample_rate * duration_ms / 1000) * 2)
