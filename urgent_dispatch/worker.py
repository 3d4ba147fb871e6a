# urgent_dispatch/worker.py
"""
Long-running dispatch worker.

    python -m urgent_dispatch.worker            # run queued dispatches + sweeps
    python -m urgent_dispatch.worker --migrate  # apply SQL migrations first

Stops cleanly on SIGINT / SIGTERM.
"""
from __future__ import annotations

import argparse
import asyncio
import signal

from urgent_dispatch.bootstrap import build_dispatch_app
from urgent_dispatch.config import settings
from urgent_dispatch.infra.logging_config import get_logger, setup_logging

logger = get_logger(__name__)


async def run(*, migrate: bool = False) -> None:
    app = build_dispatch_app(settings, with_worker=True)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass

    await app.startup(migrate=migrate)
    try:
        await stop.wait()
        logger.info("Shutdown signal received")
    finally:
        await app.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(description="Urgent dispatch worker")
    parser.add_argument("--migrate", action="store_true", help="apply SQL migrations before starting")
    args = parser.parse_args()

    setup_logging(level=settings.log_level, use_json=settings.log_json)
    asyncio.run(run(migrate=args.migrate))


if __name__ == "__main__":
    main()
