"""Drives the bridge from telephony call events."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine, Sequence
from pathlib import Path
from typing import Any

from bridge.assembler import ResponseAudioAssembler
from bridge.errors import RealtimeConnectionError
from bridge.playback import PlaybackSequence, PlaybackStep, ensure_connection_tone, load_step
from bridge.poller import AudioCapturePoller, FileCaptureSource
from bridge.registry import CallSession, SessionRegistry
from config.settings import Settings
from realtime import client as rt
from realtime.client import RealtimeClient, RealtimeEvent
from telephony.media import Call, CallState, MediaFactory, MediaHandle, wire_call
from telephony.vad import VADConfig

LOGGER = logging.getLogger(__name__)

ClientFactory = Callable[[Settings, Callable[[RealtimeEvent], Awaitable[None]]], RealtimeClient]


def _default_client_factory(settings: Settings, on_event: Callable[[RealtimeEvent], Awaitable[None]]) -> RealtimeClient:
    return RealtimeClient(settings, on_event)


class CallLifecycleController:
    """Reacts to call state and media events for every active call.

    Media availability starts the greeting sequence and the caller recorder;
    the realtime session and the capture poller only start once the greeting
    has finished. DISCONNECTED hands the call to the registry for teardown.
    Sessions are only created for calls seen by ``handle_incoming_call``;
    events for unknown or ended calls are ignored, so nothing outlives a call.
    Telephony callbacks are synchronous, so asynchronous work is spawned as
    tracked tasks whose failures are logged and never reach the event loop.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        media_factory: MediaFactory,
        settings: Settings,
        *,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._registry = registry
        self._media = media_factory
        self._settings = settings
        self._client_factory = client_factory or _default_client_factory
        self._tasks: set[asyncio.Task] = set()

    def handle_incoming_call(self, call: Call) -> None:
        call_id = call.call_id
        LOGGER.info("Incoming call=%s", call_id)
        self._registry.get_or_create(call_id)
        wire_call(call, self)
        try:
            call.answer()
        except Exception:
            LOGGER.exception("Failed to answer call=%s", call_id)

    # CallEventConsumer

    def on_state(self, call_id: str, state: CallState) -> None:
        LOGGER.info("Call state call=%s %s", call_id, state.value)
        session = self._session(call_id)
        if session is None:
            return

        if state is CallState.DISCONNECTED:
            if session.advance(state):
                self._spawn(call_id, self._registry.teardown(call_id))
            return

        if not session.advance(state):
            LOGGER.debug("Ignoring state %s after %s call=%s", state.value, session.state.value, call_id)

    def on_media(self, call_id: str, medias: Sequence[MediaHandle]) -> None:
        LOGGER.info("Media available call=%s streams=%d", call_id, len(medias))
        session = self._session(call_id)
        if not medias or session is None:
            return
        if session.media is not None:
            LOGGER.info("Media renegotiated call=%s; bridge already attached", call_id)
            return

        session.media = medias[0]
        self._spawn(call_id, self._attach_media(session))

    def on_dtmf(self, call_id: str, digit: str) -> None:
        LOGGER.info("DTMF call=%s digit=%s", call_id, digit)

    async def shutdown(self) -> None:
        """Tear down every session and wait for outstanding work."""

        await self._registry.teardown_all()
        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # internals

    def _session(self, call_id: str) -> CallSession | None:
        session = self._registry.get(call_id)
        if session is None or session.torn_down or session.state is CallState.DISCONNECTED:
            LOGGER.debug("Ignoring event for unknown or ended call=%s", call_id)
            return None
        return session

    def _alive(self, session: CallSession) -> Callable[[], bool]:
        return lambda: self._registry.is_alive(session.call_id, session)

    def _spawn(self, call_id: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(self._guard(call_id, coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _guard(call_id: str, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("Call step failed call=%s", call_id)

    async def _attach_media(self, session: CallSession) -> None:
        steps, has_greeting = await self._greeting_steps()
        if not self._registry.is_alive(session.call_id, session):
            return

        sequence = PlaybackSequence(
            session,
            self._media,
            steps,
            lambda: self._spawn(session.call_id, self._start_ai(session, request_greeting=not has_greeting)),
            grace_ms=self._settings.playback_grace_ms,
            is_alive=self._alive(session),
        )
        session.greeting_sequence = sequence
        sequence.start()

        self._attach_recorder(session)

    async def _greeting_steps(self) -> tuple[list[PlaybackStep], bool]:
        steps: list[PlaybackStep] = []
        try:
            tone = await asyncio.to_thread(ensure_connection_tone, self._settings)
            steps.append(PlaybackStep(tone, self._settings.connection_tone_ms))
        except OSError as exc:
            LOGGER.warning("Connection tone unavailable: %s", exc)

        greeting = self._greeting_file()
        if greeting is None:
            return steps, False
        try:
            steps.append(await load_step(greeting))
        except OSError as exc:
            LOGGER.warning("Greeting %s unreadable: %s", greeting, exc)
            return steps, False
        return steps, True

    def _greeting_file(self) -> Path | None:
        configured = self._settings.greeting_path
        if configured is not None and configured.exists():
            return configured
        cache = self._settings.greeting_cache_path
        if self._settings.greeting_cache_enabled and cache.exists():
            return cache
        return None

    def _attach_recorder(self, session: CallSession) -> None:
        path = self._settings.scratch_dir / f"caller_{session.call_id}_{time.time_ns()}.wav"
        try:
            recorder = self._media.create_recorder(str(path))
            session.media.start_transmit_to(recorder)
        except Exception:
            LOGGER.exception("Could not record caller audio call=%s", session.call_id)
            return
        session.recording_handle = recorder
        session.recording_path = path
        LOGGER.info("Recording caller audio to %s call=%s", path, session.call_id)

    async def _start_ai(self, session: CallSession, *, request_greeting: bool) -> None:
        alive = self._alive(session)
        if not alive():
            return

        assembler = ResponseAudioAssembler(session, self._media, self._settings, is_alive=alive)

        async def on_event(event: RealtimeEvent) -> None:
            if alive():
                await self._on_ai_event(session, assembler, event)

        client = self._client_factory(self._settings, on_event)
        session.ai_client = client
        try:
            await client.connect()
        except RealtimeConnectionError as exc:
            LOGGER.error("Realtime backend unavailable call=%s: %s; continuing without AI", session.call_id, exc.detail)
            if session.ai_client is client:
                session.ai_client = None
            await client.disconnect()
            return

        if not alive():
            await client.disconnect()
            return

        self._start_poller(session)

        if request_greeting and self._settings.greeting_cache_enabled:
            session.capturing_greeting = True
            session.add_turn("user", self._settings.greeting_prompt)
            client.send_text_message(self._settings.greeting_prompt, instructions="Audio greeting.")
            LOGGER.info("Requested AI greeting call=%s", session.call_id)

    def _start_poller(self, session: CallSession) -> None:
        if session.recording_path is None or session.poller_handle is not None:
            return
        s = self._settings
        poller = AudioCapturePoller(
            FileCaptureSource(session.recording_path),
            lambda: session.ai_client,
            VADConfig(threshold=s.vad_threshold, silence_ms=s.vad_silence_ms),
            interval_ms=s.poll_interval_ms,
            source_rate=s.telephony_sample_rate,
            target_rate=s.ai_sample_rate,
            local_commit=s.local_commit_on_silence,
            is_alive=self._alive(session),
            call_id=session.call_id,
        )
        session.poller_handle = poller
        poller.start()

    async def _on_ai_event(self, session: CallSession, assembler: ResponseAudioAssembler, event: RealtimeEvent) -> None:
        kind = event.type
        if kind == rt.AUDIO_DELTA:
            assembler.on_audio_delta(event.data)
        elif kind == rt.TEXT_DELTA:
            assembler.on_text_delta(event.data)
        elif kind == rt.RESPONSE_STARTED:
            assembler.on_response_started()
        elif kind == rt.RESPONSE_DONE:
            await assembler.on_response_done(event.data)
        elif kind == rt.SPEECH_STARTED:
            LOGGER.info("Caller started speaking (backend VAD) call=%s", session.call_id)
        elif kind == rt.SPEECH_STOPPED:
            LOGGER.info("Caller stopped speaking (backend VAD) call=%s", session.call_id)
        elif kind == rt.SESSION_CREATED:
            LOGGER.info("AI session ready call=%s", session.call_id)
        elif kind == rt.API_ERROR:
            LOGGER.warning("AI backend error call=%s: %s", session.call_id, event.data)
        elif kind == rt.DISCONNECTED:
            LOGGER.warning("AI connection closed call=%s; call continues without AI", session.call_id)
