#!/usr/bin/env python3
"""LimitWatch collector — schema setup, one-shot sweep, or the scheduler loop.

Usage:
    python scripts/run_collector.py init-db
    python scripts/run_collector.py sweep
    python scripts/run_collector.py run --interval 60
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.app import build_app
from src.core.exceptions import ConfigurationError
from src.core.logging import get_logger, setup_logging
from src.data.db import close_engine, get_engine, init_schema

log = get_logger(__name__)


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description="LimitWatch usage collector")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("init-db", help="Create tables (and hypertable if available)")
    sub.add_parser("sweep", help="Run one collection sweep and exit")
    run = sub.add_parser("run", help="Run the recurring scheduler until stopped")
    run.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Minutes between sweeps (default: SWEEP_INTERVAL_MINUTES)",
    )
    return parser.parse_args()


async def _run_scheduler(interval: float | None) -> None:
    app = build_app(engine=await get_engine())
    stop = asyncio.Event()

    # Handle graceful shutdown
    loop = asyncio.get_running_loop()
    for sig_name in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig_name, stop.set)

    await app.scheduler.start(interval)
    await stop.wait()
    log.info("shutdown_requested")
    await app.scheduler.stop()


async def main() -> None:
    """Entry point."""
    args = parse_args()
    setup_logging()

    try:
        if args.command == "init-db":
            await init_schema()
        elif args.command == "sweep":
            app = build_app(engine=await get_engine())
            result = await app.scheduler.trigger_now()
            print(json.dumps(result.to_dict(), indent=2))
        else:
            await _run_scheduler(args.interval)
    except ConfigurationError as exc:
        log.error("configuration_invalid", error=str(exc))
        raise SystemExit(2) from exc
    finally:
        await close_engine()


if __name__ == "__main__":
    asyncio.run(main())
