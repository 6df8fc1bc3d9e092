from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from config.settings import Settings  # noqa: E402


class FakePort:
    def __init__(self, path: str, *, fail_stop: bool = False) -> None:
        self.path = path
        self.fail_stop = fail_stop
        self.stopped = 0
        self.targets: list[Any] = []

    def start_transmit_to(self, sink: Any) -> None:
        self.targets.append(sink)

    def stop(self) -> None:
        self.stopped += 1
        if self.fail_stop:
            raise RuntimeError("stop failed")


class FakeMedia:
    def __init__(self, name: str = "media0") -> None:
        self.name = name
        self.sinks: list[Any] = []

    def start_transmit_to(self, sink: Any) -> None:
        self.sinks.append(sink)


class FakeMediaFactory:
    def __init__(self) -> None:
        self.recorders: list[FakePort] = []
        self.players: list[FakePort] = []
        self.fail_paths: set[str] = set()

    def create_recorder(self, path: str) -> FakePort:
        recorder = FakePort(path)
        self.recorders.append(recorder)
        return recorder

    def create_player(self, path: str, loop: bool = False) -> FakePort:
        if any(path.endswith(p) for p in self.fail_paths):
            raise RuntimeError(f"cannot open {path}")
        player = FakePort(path)
        self.players.append(player)
        return player


class FakeCall:
    def __init__(self, call_id: str = "call-1") -> None:
        self.call_id = call_id
        self.answered = 0
        self.handlers: dict[str, Any] = {}

    def answer(self) -> None:
        self.answered += 1

    def on(self, event: str, callback: Any) -> None:
        self.handlers[event] = callback

    def emit(self, event: str, *args: Any) -> None:
        self.handlers[event](*args)


class FakeConnection:
    """In-memory stand-in for the realtime websocket."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = 0
        self._incoming: asyncio.Queue[str | None] = asyncio.Queue()

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    async def close(self) -> None:
        self.closed += 1
        self._incoming.put_nowait(None)

    def feed(self, message: dict[str, Any] | str) -> None:
        self._incoming.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def finish(self) -> None:
        self._incoming.put_nowait(None)

    def sent_types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def __aiter__(self) -> FakeConnection:
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        scratch_dir=tmp_path / "scratch",
        openai_api_key="test-key",
        connection_tone_ms=10,
        playback_grace_ms=0,
        poll_interval_ms=20,
        realtime_connect_timeout_s=0.2,
    )


@pytest.fixture()
def media_factory() -> FakeMediaFactory:
    return FakeMediaFactory()
