"""Sequential playback of prepared WAV files into a call."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from bridge.registry import CallSession
from config.settings import Settings
from telephony.media import MediaFactory
from telephony.wav import read_wav_duration, tone_pcm16, wav_bytes

LOGGER = logging.getLogger(__name__)

_sequence_ids = itertools.count(1)


@dataclass(frozen=True, slots=True)
class PlaybackStep:
    path: Path
    duration_ms: int


async def load_step(path: Path) -> PlaybackStep:
    data = await asyncio.to_thread(path.read_bytes)
    return PlaybackStep(path=path, duration_ms=read_wav_duration(data))


def ensure_connection_tone(settings: Settings) -> Path:
    """Write the connection beep into the scratch directory once and return its path."""

    hz = int(settings.connection_tone_hz)
    path = settings.scratch_dir / f"connection_tone_{hz}hz_{settings.connection_tone_ms}ms.wav"
    if not path.exists():
        rate = settings.telephony_sample_rate
        pcm = tone_pcm16(settings.connection_tone_hz, settings.connection_tone_ms, rate)
        tmp = path.with_suffix(".tmp")
        tmp.write_bytes(wav_bytes(pcm, rate))
        tmp.replace(path)
        LOGGER.info("Created connection tone %s", path)
    return path


class PlaybackSequence:
    """Plays a finite list of files one after another.

    ``index`` points at the step being played. Each step is followed by a
    timer (file duration plus ``grace_ms``) that stops the player and starts
    the next step; after the last one ``on_complete`` runs. ``invalidate``
    retires the sequence id so any timer still pending becomes a no-op.
    """

    def __init__(
        self,
        session: CallSession,
        media_factory: MediaFactory,
        steps: Sequence[PlaybackStep],
        on_complete: Callable[[], None],
        *,
        grace_ms: int = 500,
        is_alive: Callable[[], bool] = lambda: True,
    ) -> None:
        self._session = session
        self._factory = media_factory
        self._steps = list(steps)
        self._on_complete = on_complete
        self._grace_ms = grace_ms
        self._is_alive = is_alive
        self._active_id: int | None = None
        self._player = None

        self.sequence_id = next(_sequence_ids)
        self.index = 0
        self.completed = False

    @property
    def active(self) -> bool:
        return self._active_id == self.sequence_id

    def start(self) -> None:
        self._active_id = self.sequence_id
        self.index = 0
        LOGGER.info(
            "Playback sequence %d started call=%s (%d steps)",
            self.sequence_id,
            self._session.call_id,
            len(self._steps),
        )
        self._guarded(self.sequence_id, self._play_current)

    def invalidate(self) -> None:
        if not self.active:
            return
        self._active_id = None
        self._stop_player()
        LOGGER.debug("Playback sequence %d invalidated call=%s", self.sequence_id, self._session.call_id)

    def _guarded(self, sequence_id: int, fn: Callable[[], None]) -> None:
        if sequence_id != self._active_id or not self._is_alive():
            return
        try:
            fn()
        except Exception:
            LOGGER.exception("Playback sequence %d failed call=%s", self.sequence_id, self._session.call_id)
            self.invalidate()

    def _play_current(self) -> None:
        if self.index >= len(self._steps):
            self._finish()
            return

        step = self._steps[self.index]
        media = self._session.media
        try:
            player = self._factory.create_player(str(step.path))
            player.start_transmit_to(media)
        except Exception as exc:
            LOGGER.warning("Skipping playback of %s call=%s: %s", step.path, self._session.call_id, exc)
            self._advance()
            return

        self._player = player
        self._session.playback_handles.append(player)
        LOGGER.info("Playing %s (%dms) call=%s", step.path.name, step.duration_ms, self._session.call_id)

        delay = (step.duration_ms + self._grace_ms) / 1000
        asyncio.get_running_loop().call_later(delay, self._guarded, self.sequence_id, self._advance)

    def _advance(self) -> None:
        self._stop_player()
        self.index += 1
        self._play_current()

    def _stop_player(self) -> None:
        player, self._player = self._player, None
        if player is None:
            return
        try:
            player.stop()
        except Exception as exc:
            LOGGER.debug("Player stop failed call=%s: %s", self._session.call_id, exc)
        if player in self._session.playback_handles:
            self._session.playback_handles.remove(player)

    def _finish(self) -> None:
        self._active_id = None
        self.completed = True
        LOGGER.info("Playback sequence %d complete call=%s", self.sequence_id, self._session.call_id)
        try:
            self._on_complete()
        except Exception:
            LOGGER.exception("Playback completion handler failed call=%s", self._session.call_id)
