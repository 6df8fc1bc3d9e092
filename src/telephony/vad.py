from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(slots=True)
class VADConfig:
    threshold: int = 1000  # of 32767 full scale
    silence_ms: int = 500


def peak_amplitude(chunk: bytes) -> int:
    """Return the largest absolute sample value of a little-endian PCM16 chunk."""

    usable = len(chunk) - (len(chunk) % 2)
    if usable <= 0:
        return 0

    samples = np.frombuffer(chunk[:usable], dtype="<i2")
    # int32 so that abs(-32768) does not wrap.
    return int(np.max(np.abs(samples.astype(np.int32))))


def has_voice(chunk: bytes, threshold: int = 1000) -> bool:
    """A tiny peak-based VAD suitable for telephone audio.

    Any sample louder than ``threshold`` counts as speech. Short transients
    pass as speech and very soft speech passes as silence.
    """

    return peak_amplitude(chunk) > threshold
