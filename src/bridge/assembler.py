"""Turns streamed AI audio deltas into playable WAV files."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from bridge.registry import CallSession
from config.settings import Settings
from telephony.media import MediaFactory
from telephony.wav import read_wav_duration, wav_bytes

LOGGER = logging.getLogger(__name__)


def _transcript_from_response(response: dict[str, Any]) -> str:
    parts: list[str] = []
    for item in response.get("output") or []:
        if not isinstance(item, dict):
            continue
        for content in item.get("content") or []:
            if isinstance(content, dict):
                text = content.get("transcript") or content.get("text")
                if text:
                    parts.append(str(text))
    return " ".join(parts)


class ResponseAudioAssembler:
    """Collects one AI turn in ``session.response_buffer`` and plays it when the turn ends."""

    def __init__(
        self,
        session: CallSession,
        media_factory: MediaFactory,
        settings: Settings,
        *,
        is_alive: Callable[[], bool] = lambda: True,
    ) -> None:
        self._session = session
        self._factory = media_factory
        self._settings = settings
        self._is_alive = is_alive

    def on_response_started(self) -> None:
        self._session.response_started_at = time.monotonic()
        self._session.first_audio_at = None

    def on_audio_delta(self, chunk: bytes) -> None:
        session = self._session
        if session.first_audio_at is None:
            session.first_audio_at = time.monotonic()
            if session.response_started_at is not None:
                LOGGER.info(
                    "First AI audio after %.0fms call=%s",
                    (session.first_audio_at - session.response_started_at) * 1000,
                    session.call_id,
                )
        session.response_buffer.extend(chunk)

    def on_text_delta(self, text: str) -> None:
        self._session.text_buffer.append(text)

    async def on_response_done(self, response: dict[str, Any] | None = None) -> Path | None:
        """Frame and play the finished turn. Returns the written file, if any."""

        session = self._session
        # Take the turn's state before the first await so that deltas of a
        # following turn start from an empty buffer.
        pcm = bytes(session.response_buffer)
        session.response_buffer.clear()
        text = "".join(session.text_buffer) or _transcript_from_response(response or {})
        session.text_buffer.clear()
        session.first_audio_at = None
        capture_greeting, session.capturing_greeting = session.capturing_greeting, False

        session.add_turn("assistant", text)

        if not pcm:
            LOGGER.info("AI turn produced no audio call=%s", session.call_id)
            return None

        rate = self._settings.ai_sample_rate
        wav = wav_bytes(pcm, rate)
        path = self._settings.scratch_dir / f"ai_response_{session.call_id}_{time.time_ns()}.wav"
        try:
            await asyncio.to_thread(path.write_bytes, wav)
        except OSError:
            LOGGER.exception("Could not write AI response audio call=%s", session.call_id)
            return None

        if capture_greeting:
            await self._save_greeting_cache(wav)

        if not self._is_alive() or session.media is None:
            _unlink_quietly(path)
            return None

        try:
            player = self._factory.create_player(str(path))
            player.start_transmit_to(session.media)
        except Exception:
            LOGGER.exception("Could not play AI response call=%s", session.call_id)
            _unlink_quietly(path)
            return None

        session.playback_handles.append(player)
        duration_ms = read_wav_duration(wav)
        delay = (duration_ms + self._settings.playback_grace_ms) / 1000
        asyncio.get_running_loop().call_later(delay, self._release, player, path)
        LOGGER.info(
            "Playing AI response (%d bytes, %dms) call=%s",
            len(pcm),
            duration_ms,
            session.call_id,
        )
        return path

    def _release(self, player: Any, path: Path) -> None:
        session = self._session
        if player in session.playback_handles:
            session.playback_handles.remove(player)
            try:
                player.stop()
            except Exception as exc:
                LOGGER.debug("Player stop failed call=%s: %s", session.call_id, exc)
        _unlink_quietly(path)

    async def _save_greeting_cache(self, wav: bytes) -> None:
        cache = self._settings.greeting_cache_path
        tmp = cache.with_suffix(".tmp")
        try:
            await asyncio.to_thread(tmp.write_bytes, wav)
            await asyncio.to_thread(tmp.replace, cache)
        except OSError as exc:
            LOGGER.warning("Could not cache greeting audio: %s", exc)
            return
        LOGGER.info("Greeting audio cached at %s", cache)


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        LOGGER.debug("Could not remove %s: %s", path, exc)
