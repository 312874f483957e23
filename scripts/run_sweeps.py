#!/usr/bin/env python3
"""
Run the daily gateway sweeps once (for cron).

Verifies domains, expires vanity codes and prunes security logs and rate
limit windows. Exits non-zero when any job failed.

Usage:
    python3 scripts/run_sweeps.py
    python3 scripts/run_sweeps.py --verification-delay 0 --verbose
"""

import argparse
import asyncio
import dataclasses
import json
import sys

from structlog import get_logger

from app.config import settings
from app.db.session import close_engines, get_write_session
from app.observability import setup_logging
from app.services.container import ServiceContainer

logger = get_logger(__name__)


async def run(verification_delay: float | None) -> int:
    container = ServiceContainer.build(settings, get_write_session)
    try:
        runner = container.sweeps()
        runner.verification_delay = verification_delay
        report = await runner.run_once()
    finally:
        await container.close()
        await close_engines()

    print(json.dumps(dataclasses.asdict(report), indent=2))
    return 1 if report.errors else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run gateway maintenance sweeps once")
    parser.add_argument(
        "--verification-delay",
        type=float,
        default=None,
        help="Seconds between domain verification probes (default: from settings)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args()

    if args.verbose:
        settings.log_level = "DEBUG"
    setup_logging()
    logger.info("sweep_script_started")
    sys.exit(asyncio.run(run(args.verification_delay)))


if __name__ == "__main__":
    main()
