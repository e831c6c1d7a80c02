"""Headless worker process.

Runs the worker pool against the shared database without the HTTP surface, so
generation capacity can be scaled separately from the API.  Set
``WORKER_ENABLED=false`` on the API processes when running dedicated workers.

Usage::

    sketchworks-worker
"""

from __future__ import annotations

import asyncio
import logging
import signal

from sketchworks.core.config import SketchworksConfig, config
from sketchworks.core.runtime import build_runtime

logger = logging.getLogger(__name__)


async def run_worker(cfg: SketchworksConfig, stop: asyncio.Event | None = None) -> None:
    """Run the worker pool until ``stop`` is set or a termination signal arrives."""
    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform or outside the main thread.
            pass

    runtime = build_runtime(cfg)
    await runtime.start(start_workers=True)
    logger.info(f"Worker process running with {cfg.worker_concurrency} worker(s)")
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down worker process")
        await runtime.stop()


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(run_worker(config))


if __name__ == "__main__":
    main()
