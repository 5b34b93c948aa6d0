from __future__ import annotations

import asyncio
import signal

from .config import Settings, get_settings
from .controller import build_controller
from .invoker import load_invoker
from .logging_utils import get_logger, setup_logging

logger = get_logger(__name__)


async def run(settings: Settings) -> None:
    invoker = load_invoker(settings.invoker_factory)
    controller = await build_controller(settings, invoker=invoker)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await controller.start()
    logger.info("controller running", data={"env": settings.env, "database": settings.database_url.split("://")[0]})
    try:
        await stop.wait()
    finally:
        await controller.stop()


def main() -> None:
    settings = get_settings()
    setup_logging(level=settings.log_level, json_output=settings.log_json, log_file=settings.log_file)
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
