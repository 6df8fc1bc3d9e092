"""Streams newly recorded caller audio to the realtime backend."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from telephony.vad import VADConfig, has_voice
from telephony.wav import WAV_HEADER_BYTES, resample_pcm16_bytes

if TYPE_CHECKING:
    from realtime.client import RealtimeClient

LOGGER = logging.getLogger(__name__)


class CaptureSource(Protocol):
    """Anything that yields caller PCM16 appended since the previous read."""

    async def read_new(self) -> bytes: ...


class FileCaptureSource:
    """Reads the growing recording file written by the telephony recorder.

    ``cursor`` is the absolute file offset of the next unread byte. It starts
    just past the WAV header and only ever advances by whole samples.
    """

    def __init__(self, path: Path | str, *, cursor: int = WAV_HEADER_BYTES) -> None:
        self.path = Path(path)
        self.cursor = cursor

    async def read_new(self) -> bytes:
        return await asyncio.to_thread(self._read_new)

    def _read_new(self) -> bytes:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return b""
        if size <= self.cursor:
            return b""

        with self.path.open("rb") as fh:
            fh.seek(self.cursor)
            data = fh.read(size - self.cursor)

        usable = len(data) - (len(data) % 2)
        self.cursor += usable
        return data[:usable]


class AudioCapturePoller:
    """Periodic task: read new caller audio, gate it with VAD, forward speech.

    Silence is not streamed, except for the tail of an utterance while the
    silence window is still open so the backend can observe the pause. Turn
    boundaries belong to the backend unless ``local_commit`` is set.
    """

    def __init__(
        self,
        source: CaptureSource,
        client_getter: Callable[[], RealtimeClient | None],
        vad: VADConfig | None = None,
        *,
        interval_ms: int = 100,
        source_rate: int = 16000,
        target_rate: int = 24000,
        local_commit: bool = False,
        is_alive: Callable[[], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
        call_id: str = "-",
    ) -> None:
        self._source = source
        self._client_getter = client_getter
        self._vad = vad or VADConfig()
        self._interval = interval_ms / 1000
        self._source_rate = source_rate
        self._target_rate = target_rate
        self._local_commit = local_commit
        self._is_alive = is_alive
        self._clock = clock
        self._call_id = call_id
        self._task: asyncio.Task | None = None

        self.speaking = False
        self.last_voice_at: float | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run())
        LOGGER.info("Audio capture polling started call=%s every %.0fms", self._call_id, self._interval * 1000)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        LOGGER.info("Audio capture polling stopped call=%s", self._call_id)

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Audio capture tick failed call=%s", self._call_id)
            await asyncio.sleep(self._interval)

    async def tick(self) -> bool:
        """Run one poll. Returns True if audio was forwarded."""

        data = await self._source.read_new()
        if not data:
            return False
        if self._is_alive is not None and not self._is_alive():
            # Session went away while we were reading.
            return False

        now = self._clock()
        if has_voice(data, self._vad.threshold):
            self.last_voice_at = now
            if not self.speaking:
                self.speaking = True
                LOGGER.info("Local VAD: speech start call=%s", self._call_id)
            return self._forward(data)

        if not self.speaking:
            return False

        silent_ms = (now - (self.last_voice_at or now)) * 1000
        if silent_ms < self._vad.silence_ms:
            return self._forward(data)

        self.speaking = False
        LOGGER.info("Local VAD: speech stop after %.0fms silence call=%s", silent_ms, self._call_id)
        if self._local_commit:
            client = self._client_getter()
            if client is not None and client.commit_audio():
                client.create_response()
        return False

    def _forward(self, data: bytes) -> bool:
        client = self._client_getter()
        if client is None:
            return False
        pcm = resample_pcm16_bytes(data, self._source_rate, self._target_rate)
        return client.send_audio(pcm)
