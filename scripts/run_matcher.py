"""Run the order matcher headless (no HTTP server).

Opens the configured DuckDB file, starts the matching loop and runs until
interrupted.

Run: python scripts/run_matcher.py
"""

from __future__ import annotations

import asyncio
import signal

from tradearena.runtime import TradingRuntime
from tradearena.utils.logger import logger


async def main() -> None:
    runtime = TradingRuntime()
    runtime.start(schedule=True)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows: fall back to KeyboardInterrupt

    logger.info("[Matcher] Running @ %d ms, Ctrl+C to stop", runtime.scheduler.interval_ms)
    try:
        await stop.wait()
    finally:
        runtime.shutdown()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
