"""Contract of the telephony collaborator.

The SIP stack answers calls, reports call state, exposes media handles and
creates file-backed recorders and players. Anything implementing these
protocols (a real SIP binding or a test double) can drive the bridge.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Sequence
from typing import Any, Protocol

LOGGER = logging.getLogger(__name__)


class CallState(str, enum.Enum):
    RINGING = "RINGING"
    EARLY = "EARLY"
    CONFIRMED = "CONFIRMED"
    DISCONNECTED = "DISCONNECTED"

    @classmethod
    def parse(cls, raw: str) -> CallState | None:
        value = str(raw or "").strip().upper()
        value = _STATE_ALIASES.get(value, value)
        try:
            return cls(value)
        except ValueError:
            return None


_STATE_ALIASES = {
    "INCOMING": "RINGING",
    "CALLING": "RINGING",
    "CONNECTING": "EARLY",
}


class MediaPort(Protocol):
    def stop(self) -> None: ...


class MediaHandle(Protocol):
    """One audio stream of an active call (or any port that can transmit)."""

    def start_transmit_to(self, sink: Any) -> None: ...


class Player(MediaPort, MediaHandle, Protocol):
    pass


class MediaFactory(Protocol):
    def create_recorder(self, path: str) -> MediaPort: ...

    def create_player(self, path: str, loop: bool = False) -> Player: ...


class Call(Protocol):
    call_id: str

    def answer(self) -> None: ...

    def on(self, event: str, callback: Callable[..., None]) -> None: ...


class TelephonyStack(Protocol):
    """A running SIP user agent registered with the configured account."""

    media: MediaFactory

    def start(self, on_call: Callable[[Call], None]) -> None: ...

    def shutdown(self) -> None: ...


class CallEventConsumer(Protocol):
    def on_state(self, call_id: str, state: CallState) -> None: ...

    def on_media(self, call_id: str, medias: Sequence[MediaHandle]) -> None: ...

    def on_dtmf(self, call_id: str, digit: str) -> None: ...


def wire_call(call: Call, consumer: CallEventConsumer) -> None:
    """Route the collaborator's callbacks for ``call`` to ``consumer``."""

    call_id = call.call_id

    def _on_state(raw: str) -> None:
        state = CallState.parse(raw)
        if state is None:
            LOGGER.debug("Ignoring unknown call state %r call=%s", raw, call_id)
            return
        consumer.on_state(call_id, state)

    def _on_media(medias: Sequence[MediaHandle]) -> None:
        consumer.on_media(call_id, list(medias or []))

    def _on_dtmf(digit: str) -> None:
        consumer.on_dtmf(call_id, str(digit))

    call.on("state", _on_state)
    call.on("media", _on_media)
    call.on("dtmf", _on_dtmf)
