"""Per-call session state and its owner."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from telephony.media import CallState, MediaHandle, MediaPort

if TYPE_CHECKING:
    from bridge.playback import PlaybackSequence
    from bridge.poller import AudioCapturePoller
    from realtime.client import RealtimeClient

LOGGER = logging.getLogger(__name__)

_ORDER = {
    CallState.RINGING: 0,
    CallState.EARLY: 0,
    CallState.CONFIRMED: 1,
    CallState.DISCONNECTED: 2,
}


@dataclass
class CallSession:
    """Everything the bridge owns for one active call."""

    call_id: str
    state: CallState = CallState.RINGING
    media: MediaHandle | None = None
    recording_handle: MediaPort | None = None
    recording_path: Path | None = None
    playback_handles: list[Any] = field(default_factory=list)
    ai_client: RealtimeClient | None = None
    conversation_history: list[tuple[str, str]] = field(default_factory=list)
    poller_handle: AudioCapturePoller | None = None
    response_buffer: bytearray = field(default_factory=bytearray)
    greeting_sequence: PlaybackSequence | None = None
    capturing_greeting: bool = False
    response_started_at: float | None = None
    first_audio_at: float | None = None
    text_buffer: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.monotonic)
    torn_down: bool = False

    def advance(self, new_state: CallState) -> bool:
        """Move the session forward; backwards moves and anything after DISCONNECTED are refused."""

        if self.state is CallState.DISCONNECTED:
            return False
        if _ORDER[new_state] < _ORDER[self.state]:
            return False
        self.state = new_state
        return True

    def add_turn(self, role: str, text: str) -> None:
        text = text.strip()
        if text:
            self.conversation_history.append((role, text))


class SessionRegistry:
    """Maps call ids to their sessions and releases them exactly once."""

    def __init__(self) -> None:
        self._sessions: dict[str, CallSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._sessions

    def get(self, call_id: str) -> CallSession | None:
        return self._sessions.get(call_id)

    def get_or_create(self, call_id: str) -> CallSession:
        session = self._sessions.get(call_id)
        if session is None:
            session = CallSession(call_id=call_id)
            self._sessions[call_id] = session
            LOGGER.info("Session created call=%s (active=%d)", call_id, len(self._sessions))
        return session

    def is_alive(self, call_id: str, session: CallSession | None = None) -> bool:
        """True while ``call_id`` is registered (as ``session``, when given) and not being torn down."""

        current = self._sessions.get(call_id)
        if current is None or current.torn_down:
            return False
        return session is None or current is session

    async def teardown(self, call_id: str) -> None:
        """Release every resource of a call. Safe to call repeatedly; never raises."""

        session = self._sessions.get(call_id)
        if session is None or session.torn_down:
            LOGGER.debug("Teardown for unknown or released call=%s ignored", call_id)
            return
        session.torn_down = True
        session.state = CallState.DISCONNECTED

        if session.greeting_sequence is not None:
            session.greeting_sequence.invalidate()

        poller, session.poller_handle = session.poller_handle, None
        if poller is not None:
            try:
                await poller.stop()
            except Exception:
                LOGGER.exception("Failed to stop capture poller call=%s", call_id)

        recorder, session.recording_handle = session.recording_handle, None
        if recorder is not None:
            try:
                recorder.stop()
            except Exception:
                LOGGER.exception("Failed to stop recorder call=%s", call_id)

        client, session.ai_client = session.ai_client, None
        if client is not None:
            try:
                await client.disconnect()
            except Exception:
                LOGGER.exception("Failed to disconnect realtime client call=%s", call_id)

        players, session.playback_handles = session.playback_handles, []
        for player in players:
            try:
                player.stop()
            except Exception:
                LOGGER.exception("Failed to stop player call=%s", call_id)

        session.response_buffer.clear()
        _remove_quietly(session.recording_path)
        self._log_summary(session)

        if self._sessions.get(call_id) is session:
            del self._sessions[call_id]
        LOGGER.info("Session released call=%s (active=%d)", call_id, len(self._sessions))

    async def teardown_all(self) -> None:
        for call_id in list(self._sessions):
            await self.teardown(call_id)

    @staticmethod
    def _log_summary(session: CallSession) -> None:
        elapsed = time.monotonic() - session.created_at
        LOGGER.info(
            "Call %s summary: %.1fs, %d turns",
            session.call_id,
            elapsed,
            len(session.conversation_history),
        )
        for role, text in session.conversation_history:
            LOGGER.info("  [%s] %s", role, text)


def _remove_quietly(path: Path | None) -> None:
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        LOGGER.debug("Could not remove %s: %s", path, exc)
