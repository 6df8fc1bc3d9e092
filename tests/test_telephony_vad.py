from __future__ import annotations

import numpy as np
import pytest

from telephony.vad import VADConfig, has_voice, peak_amplitude


def _pcm(*samples: int) -> bytes:
    return np.array(samples, dtype="<i2").tobytes()


def test_silence_is_not_voice() -> None:
    assert has_voice(bytes(2000), 1000) is False


def test_loud_frame_is_voice() -> None:
    voice = (np.ones(160, dtype=np.int16) * 2000).astype("<i2").tobytes()
    assert has_voice(voice, 1000) is True


def test_peak_uses_absolute_value() -> None:
    assert peak_amplitude(_pcm(10, -32768, 5)) == 32768
    assert has_voice(_pcm(0, -1500, 0), 1000) is True


def test_peak_must_exceed_threshold() -> None:
    assert has_voice(_pcm(1000, -1000), 1000) is False
    assert has_voice(_pcm(1001), 1000) is True


@pytest.mark.parametrize("threshold", [0, 100, 999, 1499])
def test_true_for_every_threshold_below_peak(threshold: int) -> None:
    assert has_voice(_pcm(200, -1500, 700), threshold) is True


@pytest.mark.parametrize("threshold", [1500, 1501, 20000, 32767])
def test_false_for_every_threshold_at_or_above_peak(threshold: int) -> None:
    assert has_voice(_pcm(200, -1500, 700), threshold) is False


def test_empty_and_odd_chunks() -> None:
    assert has_voice(b"", 0) is False
    assert has_voice(b"\xff", 0) is False
    # The trailing odd byte is not a sample.
    assert peak_amplitude(_pcm(300) + b"\x7f") == 300


def test_defaults() -> None:
    cfg = VADConfig()
    assert cfg.threshold == 1000
    assert cfg.silence_ms == 500
