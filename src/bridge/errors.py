"""Domain-specific exceptions for the call bridge.

These exceptions are safe to import from any layer without pulling in the
websocket or telephony dependencies.
"""

from __future__ import annotations


class BridgeError(Exception):
    default_detail: str = "Bridge error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class RealtimeConnectionError(BridgeError):
    default_detail = "Realtime backend connection failed."


class RealtimeTimeoutError(RealtimeConnectionError):
    default_detail = "Realtime backend did not open the connection in time."


class ConfigurationError(BridgeError):
    default_detail = "Required configuration is missing."
