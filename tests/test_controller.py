from __future__ import annotations

import asyncio
import base64

import pytest

from bridge.controller import CallLifecycleController
from bridge.registry import SessionRegistry
from conftest import FakeCall, FakeConnection, FakeMedia, wait_until
from realtime.client import RealtimeClient
from telephony.media import CallState
from telephony.wav import wav_bytes


class ClientFactory:
    def __init__(self, conn: FakeConnection | None = None, *, stall: bool = False) -> None:
        self.conn = conn or FakeConnection()
        self.stall = stall
        self.clients: list[RealtimeClient] = []

    def __call__(self, settings, on_event) -> RealtimeClient:
        async def connector(url: str, headers: dict[str, str]) -> FakeConnection:
            if self.stall:
                await asyncio.sleep(10)
            return self.conn

        client = RealtimeClient(settings, on_event, connector=connector)
        self.clients.append(client)
        return client


@pytest.fixture()
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture()
def factory() -> ClientFactory:
    return ClientFactory()


@pytest.fixture()
async def controller(registry, media_factory, settings, factory):
    ctrl = CallLifecycleController(registry, media_factory, settings, client_factory=factory)
    yield ctrl
    await ctrl.shutdown()


async def test_incoming_call_is_wired_and_answered(controller, registry) -> None:
    call = FakeCall("c1")
    controller.handle_incoming_call(call)

    assert call.answered == 1
    assert set(call.handlers) == {"state", "media", "dtmf"}
    call.emit("state", "confirmed")
    call.emit("dtmf", "5")
    assert registry.get("c1").state is CallState.CONFIRMED


async def test_full_call_flow(controller, registry, media_factory, factory) -> None:
    call = FakeCall("c1")
    controller.handle_incoming_call(call)
    call.emit("state", "EARLY")
    call.emit("state", "CONFIRMED")
    media = FakeMedia()
    call.emit("media", [media])

    session = registry.get("c1")
    await wait_until(lambda: session.poller_handle is not None)

    # Greeting tone first, recorder fed from the first media stream.
    assert media_factory.players[0].path.endswith(".wav")
    assert "connection_tone" in media_factory.players[0].path
    assert media.sinks == [media_factory.recorders[0]]
    assert session.recording_handle is media_factory.recorders[0]

    # No greeting file yet, so the AI is asked for one.
    await wait_until(lambda: "response.create" in factory.conn.sent_types())
    assert factory.conn.sent_types()[:2] == ["session.update", "conversation.item.create"]
    assert session.capturing_greeting is True

    call.emit("state", "DISCONNECTED")
    await wait_until(lambda: "c1" not in registry)

    assert media_factory.recorders[0].stopped == 1
    assert factory.conn.closed == 1
    assert not session.poller_handle


async def test_media_twice_starts_one_greeting_and_one_recorder(controller, registry, media_factory) -> None:
    controller.handle_incoming_call(FakeCall("c1"))
    controller.on_state("c1", CallState.CONFIRMED)
    first, second = FakeMedia("m1"), FakeMedia("m2")
    controller.on_media("c1", [first])
    controller.on_media("c1", [second])

    session = registry.get("c1")
    await wait_until(lambda: session.poller_handle is not None)

    assert len(media_factory.recorders) == 1
    assert len([p for p in media_factory.players if "connection_tone" in p.path]) == 1
    assert session.media is first
    assert second.sinks == []


async def test_disconnect_without_media_tears_down_cleanly(controller, registry, media_factory, factory) -> None:
    controller.handle_incoming_call(FakeCall("c1"))
    controller.on_state("c1", CallState.CONFIRMED)
    controller.on_state("c1", CallState.DISCONNECTED)

    await wait_until(lambda: "c1" not in registry)
    assert media_factory.recorders == []
    assert factory.clients == []

    # A late duplicate is a no-op.
    controller.on_state("c1", CallState.DISCONNECTED)
    controller.on_media("c1", [FakeMedia()])
    await asyncio.sleep(0.05)
    assert "c1" not in registry
    assert media_factory.recorders == []


async def test_connect_timeout_keeps_call_alive(registry, media_factory, settings) -> None:
    settings.realtime_connect_timeout_s = 0.05
    factory = ClientFactory(stall=True)
    controller = CallLifecycleController(registry, media_factory, settings, client_factory=factory)

    controller.handle_incoming_call(FakeCall("c1"))
    controller.on_media("c1", [FakeMedia()])
    await wait_until(lambda: factory.clients)
    session = registry.get("c1")
    await wait_until(lambda: session.ai_client is None)

    assert "c1" in registry
    assert session.recording_handle is not None
    assert session.poller_handle is None

    await controller.shutdown()
    assert len(registry) == 0


async def test_hangup_during_greeting_never_connects(registry, media_factory, settings, factory) -> None:
    settings.connection_tone_ms = 200
    controller = CallLifecycleController(registry, media_factory, settings, client_factory=factory)

    controller.handle_incoming_call(FakeCall("c1"))
    controller.on_media("c1", [FakeMedia()])
    await wait_until(lambda: media_factory.players)
    controller.on_state("c1", CallState.DISCONNECTED)
    await asyncio.sleep(0.3)

    assert "c1" not in registry
    assert factory.clients == []
    assert media_factory.players[0].stopped >= 1
    await controller.shutdown()


async def test_ai_audio_is_played_to_the_caller(controller, registry, media_factory, factory) -> None:
    media = FakeMedia()
    controller.handle_incoming_call(FakeCall("c1"))
    controller.on_media("c1", [media])
    session = registry.get("c1")
    await wait_until(lambda: session.poller_handle is not None)
    players_before = len(media_factory.players)

    chunk = base64.b64encode(b"\x01\x00" * 1600).decode()
    factory.conn.feed({"type": "response.created", "response": {}})
    factory.conn.feed({"type": "response.audio.delta", "delta": chunk})
    factory.conn.feed({"type": "response.audio.delta", "delta": chunk})
    factory.conn.feed({"type": "response.done", "response": {}})

    await wait_until(lambda: len(media_factory.players) == players_before + 1)
    player = media_factory.players[-1]
    assert "ai_response_c1" in player.path
    assert player.targets == [media]
    assert session.response_buffer == bytearray()


async def test_configured_greeting_is_played_instead_of_asking_ai(registry, media_factory, settings, factory) -> None:
    greeting = settings.scratch_dir / "greeting.wav"
    greeting.write_bytes(wav_bytes(bytes(320), 16000))
    settings.greeting_path = greeting
    controller = CallLifecycleController(registry, media_factory, settings, client_factory=factory)

    controller.handle_incoming_call(FakeCall("c1"))
    controller.on_media("c1", [FakeMedia()])
    session = registry.get("c1")
    await wait_until(lambda: session.poller_handle is not None)
    await asyncio.sleep(0.05)

    assert [p.path for p in media_factory.players][-1] == str(greeting)
    assert "conversation.item.create" not in factory.conn.sent_types()
    assert session.capturing_greeting is False
    await controller.shutdown()


async def test_shutdown_releases_every_call(controller, registry) -> None:
    for call_id in ("a", "b"):
        controller.handle_incoming_call(FakeCall(call_id))
        controller.on_media(call_id, [FakeMedia()])
    await wait_until(lambda: all(registry.get(c).poller_handle for c in ("a", "b")))

    await controller.shutdown()

    assert len(registry) == 0


async def test_finished_calls_leave_no_state_behind(controller, registry, media_factory) -> None:
    for n in range(200):
        call = FakeCall(f"call-{n}")
        controller.handle_incoming_call(call)
        call.emit("state", "CONFIRMED")
        call.emit("state", "DISCONNECTED")
    await wait_until(lambda: len(registry) == 0)
    await asyncio.sleep(0.01)

    assert not controller._tasks

    # Late events for a released call do not bring it back.
    controller.on_state("call-0", CallState.CONFIRMED)
    controller.on_media("call-0", [FakeMedia()])
    controller.on_state("call-0", CallState.DISCONNECTED)
    await asyncio.sleep(0.01)
    assert len(registry) == 0
    assert media_factory.recorders == []


async def test_events_for_unknown_calls_are_ignored(controller, registry, media_factory) -> None:
    controller.on_state("stray", CallState.CONFIRMED)
    controller.on_media("stray", [FakeMedia()])
    await asyncio.sleep(0.01)

    assert "stray" not in registry
    assert media_factory.players == []
