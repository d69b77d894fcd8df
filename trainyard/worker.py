"""Long-running worker process.

Runs the durable scheduler with the orchestrator, instance monitor and
cost tracker handlers registered. Tasks left running by a previous crash
are picked up again on start.

Usage:
    python -m trainyard.worker --config /etc/trainyard --log-level INFO
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from collections.abc import Sequence
from contextlib import suppress
from dataclasses import replace
from pathlib import Path

from injector import Injector
from loguru import logger

from trainyard.config import Settings, load_settings
from trainyard.cost_tracker import TRACK_COST, CostTracker
from trainyard.errors import ConfigError
from trainyard.marketplace import VastMarketplace
from trainyard.module import TrainyardModule
from trainyard.monitor import MONITOR_INSTANCE, InstanceMonitor
from trainyard.observability.logging import setup_logging, teardown_logging
from trainyard.orchestrator import PROCESS_JOB, Orchestrator
from trainyard.retry import RetryPolicy, always, transient
from trainyard.scheduler import Scheduler


def register_handlers(injector: Injector) -> Scheduler:
    """Register the three task handlers with their retry policies."""
    settings = injector.get(Settings)
    policy = settings.policy
    scheduler = injector.get(Scheduler)

    scheduler.register(
        PROCESS_JOB,
        injector.get(Orchestrator).process_task,
        retry=RetryPolicy(
            max_attempts=policy.process_attempts,
            base_delay=policy.process_backoff,
            retry_on=transient,
        ),
    )
    scheduler.register(
        MONITOR_INSTANCE,
        injector.get(InstanceMonitor).tick_task,
        retry=RetryPolicy(max_attempts=policy.monitor_attempts, base_delay=5.0, retry_on=always),
    )
    scheduler.register(
        TRACK_COST,
        injector.get(CostTracker).tick_task,
        retry=RetryPolicy(max_attempts=policy.cost_attempts, base_delay=10.0, retry_on=always),
    )
    return scheduler


async def run(settings: Settings, stop: asyncio.Event | None = None) -> None:
    injector = Injector([TrainyardModule(settings)])
    scheduler = register_handlers(injector)
    marketplace = injector.get(VastMarketplace)
    stop = stop or asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    logger.bind(component="worker").info("Worker started (db={db})", db=settings.db_path)
    try:
        await scheduler.run_forever(stop)
    finally:
        await marketplace.close()
        logger.bind(component="worker").info("Worker stopped")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="trainyard training-job worker")
    parser.add_argument(
        "--config", type=Path, default=None,
        help="Directory containing trainyard.toml (default: current directory)",
    )
    parser.add_argument(
        "--log-level", type=str, default=None,
        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"],
    )
    parser.add_argument("--db", type=str, default=None, help="Override the SQLite database path")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        settings = load_settings(project_dir=args.config)
    except ConfigError as e:
        print(f"trainyard: {e}", file=sys.stderr)
        return 2

    if args.log_level:
        settings = replace(settings, log=replace(settings.log, level=args.log_level))
    if args.db:
        settings = replace(settings, db_path=args.db)

    handler_ids = setup_logging(settings.log)
    try:
        asyncio.run(run(settings))
    except ConfigError as e:
        logger.error("Configuration error: {error}", error=e)
        return 2
    finally:
        teardown_logging(handler_ids)
    return 0


if __name__ == "__main__":
    sys.exit(main())
