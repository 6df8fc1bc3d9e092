"""Streaming client for the realtime speech-to-speech backend."""

from __future__ import annotations

import asyncio
import base64
import binascii
import enum
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urlencode

import websockets

from bridge.errors import RealtimeConnectionError, RealtimeTimeoutError
from config.settings import Settings

LOGGER = logging.getLogger(__name__)

SESSION_CREATED = "session_created"
RESPONSE_STARTED = "response_started"
AUDIO_DELTA = "audio_delta"
TEXT_DELTA = "text_delta"
SPEECH_STARTED = "speech_started"
SPEECH_STOPPED = "speech_stopped"
RESPONSE_DONE = "response_done"
API_ERROR = "api_error"
DISCONNECTED = "disconnected"

_AUDIO_DELTA_TYPES = frozenset({"response.audio.delta", "response.output_audio.delta"})
# Audio appends waiting for the writer. Further chunks are dropped, not queued.
MAX_PENDING_AUDIO = 4

_TEXT_DELTA_TYPES = frozenset(
    {
        "response.text.delta",
        "response.output_text.delta",
        "response.audio_transcript.delta",
        "response.output_audio_transcript.delta",
    }
)


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


@dataclass(frozen=True, slots=True)
class RealtimeEvent:
    type: str
    data: Any = None


class RealtimeConnection(Protocol):
    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self): ...


Connector = Callable[[str, dict[str, str]], Awaitable[RealtimeConnection]]
EventHandler = Callable[[RealtimeEvent], Awaitable[None] | None]


async def websocket_connector(url: str, headers: dict[str, str]) -> RealtimeConnection:
    return await websockets.connect(
        url,
        additional_headers=headers,
        ping_interval=20,
        ping_timeout=20,
        max_size=None,
    )


class RealtimeClient:
    """One persistent session with the realtime backend.

    The instance is single use: DISCONNECTED -> CONNECTING -> CONNECTED ->
    DISCONNECTED. Outbound messages go through a queue drained by a writer
    task, so the send helpers never block the caller. Audio is not buffered:
    while ``MAX_PENDING_AUDIO`` appends are still unsent, new chunks are
    dropped, and a chunk whose write fails is lost. Inbound messages are reduced to a handful of
    ``RealtimeEvent`` types and passed to ``on_event`` in receipt order.
    Reconnecting is the owner's job.
    """

    def __init__(
        self,
        settings: Settings,
        on_event: EventHandler | None = None,
        *,
        connector: Connector | None = None,
    ) -> None:
        self._settings = settings
        self._on_event = on_event
        self._connector = connector or websocket_connector
        self._ws: RealtimeConnection | None = None
        self._outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._pending_audio = 0
        self._reader: asyncio.Task | None = None
        self._writer: asyncio.Task | None = None
        self._used = False
        self._closed = False

        self.state = ConnectionState.DISCONNECTED
        self.session_id: str | None = None
        self.bytes_since_commit = 0

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    async def connect(self) -> None:
        """Open the connection and send the session configuration.

        Raises:
            RealtimeTimeoutError: if the connection is not open within the configured timeout.
            RealtimeConnectionError: if the transport fails or the backend rejects it.
        """

        if self._used:
            raise RealtimeConnectionError("Realtime client instances cannot be reconnected.")
        self._used = True

        url = self._url()
        timeout = self._settings.realtime_connect_timeout_s
        self.state = ConnectionState.CONNECTING
        LOGGER.info("Connecting to realtime backend %s", url.split("?")[0])

        try:
            await asyncio.wait_for(self._open(url), timeout=timeout)
        except asyncio.TimeoutError as exc:
            self.state = ConnectionState.DISCONNECTED
            await self._close_transport()
            raise RealtimeTimeoutError(f"No connection after {timeout:.1f}s") from exc
        except asyncio.CancelledError:
            self.state = ConnectionState.DISCONNECTED
            await self._close_transport()
            raise
        except Exception as exc:
            self.state = ConnectionState.DISCONNECTED
            await self._close_transport()
            raise RealtimeConnectionError(f"Realtime connect failed: {exc}") from exc

        if self._closed:
            # disconnect() ran while the handshake was in flight.
            self.state = ConnectionState.DISCONNECTED
            await self._close_transport()
            raise RealtimeConnectionError("Realtime client closed during connect.")

        self.state = ConnectionState.CONNECTED
        self._reader = asyncio.create_task(self._receive_loop())
        self._writer = asyncio.create_task(self._send_loop())
        LOGGER.info("Realtime backend connected; session configured")

    def send_audio(self, pcm: bytes) -> bool:
        """Append PCM16 audio to the backend input buffer."""

        if not pcm:
            return False
        if self.is_connected and self._pending_audio >= MAX_PENDING_AUDIO:
            LOGGER.debug("Realtime writer busy; dropping %d bytes of audio", len(pcm))
            return False
        if not self._enqueue(
            {"type": "input_audio_buffer.append", "audio": base64.b64encode(pcm).decode("ascii")}
        ):
            return False
        self._pending_audio += 1
        self.bytes_since_commit += len(pcm)
        return True

    def commit_audio(self) -> bool:
        """Mark the appended audio as one complete utterance."""

        if not self._enqueue({"type": "input_audio_buffer.commit"}):
            return False
        LOGGER.debug("Committing %d bytes of input audio", self.bytes_since_commit)
        self.bytes_since_commit = 0
        return True

    def create_response(self, instructions: str | None = None) -> bool:
        response: dict[str, Any] = {"modalities": ["text", "audio"]}
        if instructions:
            response["instructions"] = instructions
        return self._enqueue({"type": "response.create", "response": response})

    def send_text_message(self, text: str, *, instructions: str | None = None) -> bool:
        """Add a user text turn and ask the backend to answer it."""

        item = {
            "type": "message",
            "role": "user",
            "content": [{"type": "input_text", "text": text}],
        }
        if not self._enqueue({"type": "conversation.item.create", "item": item}):
            return False
        return self.create_response(instructions)

    async def disconnect(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.state = ConnectionState.DISCONNECTED

        current = asyncio.current_task()
        for task in (self._writer, self._reader):
            if task is not None and task is not current and not task.done():
                task.cancel()
        await self._close_transport()
        LOGGER.info("Realtime session %s disconnected", self.session_id or "-")

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "connected": self.is_connected,
            "session_id": self.session_id,
            "bytes_since_commit": self.bytes_since_commit,
        }

    # internals

    def _url(self) -> str:
        sep = "&" if "?" in self._settings.realtime_url else "?"
        return f"{self._settings.realtime_url}{sep}{urlencode({'model': self._settings.realtime_model})}"

    async def _open(self, url: str) -> None:
        self._ws = await self._connector(url, self._headers())
        await self._ws.send(json.dumps(self._session_update()))

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.openai_api_key or ''}",
            "OpenAI-Beta": "realtime=v1",
        }

    def _session_update(self) -> dict[str, Any]:
        s = self._settings
        session: dict[str, Any] = {
            "modalities": ["text", "audio"],
            "instructions": s.realtime_instructions,
            "voice": s.realtime_voice,
            "input_audio_format": "pcm16",
            "output_audio_format": "pcm16",
            "turn_detection": None,
        }
        if s.realtime_server_vad:
            session["turn_detection"] = {
                "type": "server_vad",
                "threshold": s.realtime_vad_threshold,
                "prefix_padding_ms": s.realtime_prefix_padding_ms,
                "silence_duration_ms": s.realtime_silence_duration_ms,
            }
        if s.realtime_transcription_model:
            session["input_audio_transcription"] = {"model": s.realtime_transcription_model}
        return {"type": "session.update", "session": session}

    def _enqueue(self, message: dict[str, Any]) -> bool:
        if not self.is_connected:
            LOGGER.debug("Realtime backend not connected; dropping %s", message["type"])
            return False
        self._outbox.put_nowait(message)
        return True

    async def _send_loop(self) -> None:
        while True:
            message = await self._outbox.get()
            ws = self._ws
            if ws is None:
                return
            try:
                await ws.send(json.dumps(message))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.warning("Dropping realtime %s: %s", message.get("type"), exc)
            finally:
                if message["type"] == "input_audio_buffer.append":
                    self._pending_audio -= 1

    async def _receive_loop(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            async for raw in ws:
                await self._handle_message(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Realtime connection lost: %s", exc)

        if self._closed:
            return
        self.state = ConnectionState.DISCONNECTED
        if self._writer is not None:
            self._writer.cancel()
        await self._close_transport()
        LOGGER.info("Realtime backend closed the connection")
        await self._emit(DISCONNECTED)

    async def _handle_message(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            LOGGER.debug("Ignoring non-JSON realtime frame")
            return
        if not isinstance(message, dict):
            return

        msg_type = str(message.get("type") or "")

        if msg_type == "session.created":
            session = message.get("session") or {}
            if self.session_id is None:
                self.session_id = session.get("id")
            LOGGER.info("Realtime session created: %s", self.session_id)
            await self._emit(SESSION_CREATED, message)
        elif msg_type in ("response.created", "response.started"):
            await self._emit(RESPONSE_STARTED, message.get("response") or {})
        elif msg_type in _AUDIO_DELTA_TYPES:
            delta = message.get("delta")
            if not delta:
                LOGGER.debug("Audio delta without data")
                return
            try:
                audio = base64.b64decode(delta)
            except (binascii.Error, ValueError):
                LOGGER.warning("Undecodable audio delta dropped")
                return
            await self._emit(AUDIO_DELTA, audio)
        elif msg_type in _TEXT_DELTA_TYPES:
            if message.get("delta"):
                await self._emit(TEXT_DELTA, str(message["delta"]))
        elif msg_type == "input_audio_buffer.speech_started":
            await self._emit(SPEECH_STARTED)
        elif msg_type == "input_audio_buffer.speech_stopped":
            await self._emit(SPEECH_STOPPED)
        elif msg_type == "response.done":
            await self._emit(RESPONSE_DONE, message.get("response") or {})
        elif msg_type == "error":
            detail = message.get("error")
            LOGGER.error("Realtime API error: %s", detail)
            await self._emit(API_ERROR, detail)
        else:
            LOGGER.debug("Realtime message %s", msg_type or "<untyped>")

    async def _emit(self, event_type: str, data: Any = None) -> None:
        if self._on_event is None:
            return
        try:
            result = self._on_event(RealtimeEvent(event_type, data))
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.exception("Realtime event handler failed for %s", event_type)

    async def _close_transport(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as exc:
            LOGGER.debug("Error closing realtime transport: %s", exc)
