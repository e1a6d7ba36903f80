"""
Headless monitor entrypoint: runs trigger detection, CI polling and
maintenance without the HTTP dashboard.

Run with: python worker.py
"""

import asyncio
import logging
import signal

from pipewatch.config import settings
from pipewatch.exceptions import ConfigurationError
from pipewatch.middleware.logging_config import configure_logging
from pipewatch.startup import MonitoringSystem

configure_logging(settings.log_level, settings.log_json)
logger = logging.getLogger("worker")


async def main() -> int:
    try:
        settings.require_secrets()
    except ConfigurationError as exc:
        logger.error("Cannot start monitor: %s", exc)
        return 1

    system = MonitoringSystem(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await system.start()
    logger.info("Monitor running; waiting for SIGINT/SIGTERM")
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down monitor")
        await system.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
