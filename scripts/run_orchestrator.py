#!/usr/bin/env python3
"""
Run the fetch/broadcast orchestrator as a standalone process.

Usage:
    # Defaults from config/settings.yaml (or $APPLYPACE_CONFIG):
    python scripts/run_orchestrator.py

    # Serve a fixed job list and register two users:
    python scripts/run_orchestrator.py --jobs-file jobs.json \\
        --schedule u1:python --schedule u2:golang

Stops cleanly on SIGINT / SIGTERM.
"""
import asyncio
import json
import os
import signal
import sys
import argparse
from datetime import timedelta

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog

logger = structlog.get_logger()


async def _prune_loop(rate_limiter, idle_ttl: timedelta, interval_s: float) -> None:
    """Hourly housekeeping: forget rate-limit buckets nobody has touched."""
    while True:
        await asyncio.sleep(interval_s)
        try:
            await rate_limiter.prune_idle(idle_ttl)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("rate_limit_prune_error", error=str(e))


def _parse_schedule(value: str) -> tuple[str, dict]:
    user_id, _, text = value.partition(":")
    if not user_id:
        raise argparse.ArgumentTypeError(f"expected USER[:TEXT], got {value!r}")
    return user_id, ({"text": text} if text else {})


async def run(args) -> None:
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    from core.services import build_services
    from jobs.sources import StaticJobSource

    settings = load_settings(args.config)

    jobs = []
    if args.jobs_file:
        with open(args.jobs_file) as f:
            jobs = json.load(f)

    services = build_services(settings, source=StaticJobSource(jobs))
    await services.startup()

    for user_id, params in args.schedule:
        await services.job_orchestrator.schedule(user_id, params)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    prune_task = asyncio.create_task(_prune_loop(
        services.rate_limiter,
        timedelta(hours=settings.rate_limit.idle_ttl_hours),
        interval_s=3600,
    ))

    logger.info("orchestrator_process_running",
                schedules=len(args.schedule), jobs=len(jobs),
                tick_interval_s=settings.orchestrator.tick_interval_s)
    try:
        await stop.wait()
    finally:
        prune_task.cancel()
        try:
            await prune_task
        except asyncio.CancelledError:
            pass
        await services.shutdown()


def main():
    parser = argparse.ArgumentParser(description="Periodic job fetch/broadcast orchestrator")
    parser.add_argument("--config", default=None, help="Path to settings YAML")
    parser.add_argument("--jobs-file", default=None, help="JSON list of jobs for the static source")
    parser.add_argument("--schedule", action="append", default=[], type=_parse_schedule,
                        metavar="USER[:TEXT]", help="Register a user's recurring fetch")
    args = parser.parse_args()

    asyncio.run(run(args))


if __name__ == "__main__":
    main()
