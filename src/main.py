"""Entry point for the SIP call to realtime AI bridge."""

from __future__ import annotations

import asyncio
import contextlib
import importlib
import logging
import signal
from collections.abc import Callable

from bridge.controller import CallLifecycleController
from bridge.errors import ConfigurationError
from bridge.registry import SessionRegistry
from config.settings import Settings, get_settings
from telephony.media import TelephonyStack

LOGGER = logging.getLogger(__name__)


def load_telephony_backend(path: str) -> Callable[[Settings], TelephonyStack]:
    """Resolve a ``module:attribute`` import path to a telephony stack factory."""

    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"TELEPHONY_BACKEND must look like 'module:factory', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"Cannot import telephony backend {module_name!r}: {exc}") from exc
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigurationError(f"{path!r} is not a callable telephony factory")
    return factory


async def run(settings: Settings, stop: asyncio.Event | None = None) -> None:
    factory = load_telephony_backend(settings.telephony_backend or "")
    stop = stop or asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)

    stack = factory(settings)
    controller = CallLifecycleController(SessionRegistry(), stack.media, settings)
    stack.start(controller.handle_incoming_call)
    LOGGER.info("SIP client running for %s@%s", settings.sip_user, settings.sip_domain)

    try:
        await stop.wait()
    finally:
        LOGGER.info("Shutting down...")
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)
        await controller.shutdown()
        try:
            stack.shutdown()
        except Exception:
            LOGGER.exception("Telephony shutdown failed")


def main() -> None:
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    missing = settings.missing_credentials()
    if missing:
        LOGGER.error("Set %s", ", ".join(missing))
        raise SystemExit(1)

    try:
        asyncio.run(run(settings))
    except ConfigurationError as exc:
        LOGGER.error("%s", exc.detail)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
