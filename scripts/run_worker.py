#!/usr/bin/env python3
"""
PDF Worker Entry Point

Starts the single-concurrency PDF worker: claims jobs from the Redis queue,
renders them with headless Chromium and uploads the result to S3.

Run in the worker container:
    python scripts/run_worker.py

Or manually:
    python scripts/run_worker.py --queue pdf-generation --log-level DEBUG
    python scripts/run_worker.py --maintenance   # recover stalled jobs and exit
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

# Load environment before other imports
load_dotenv()

from generator_service.config import get_settings, validate_config_on_startup
from generator_service.context import ServiceContext
from generator_service.worker import run_worker


logger = logging.getLogger("pdf_worker")


async def run_maintenance(settings) -> None:
    """Recover stalled jobs and prune the completed index once."""
    context = ServiceContext.build(settings)
    await context.start()
    try:
        recovered = await context.queue.recover_stalled()
        pruned = await context.queue.prune_completed()
        counts = await context.queue.get_counts()
        logger.info(f"Recovered {len(recovered)} stalled job(s), pruned {pruned} completed")
        logger.info(f"Queue counts: {counts}")
    finally:
        await context.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the PDF generation worker")
    parser.add_argument("--queue", help="Queue name (overrides QUEUE_NAME)")
    parser.add_argument(
        "--maintenance",
        action="store_true",
        help="Recover stalled jobs, prune completed jobs and exit",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    settings = get_settings()
    if args.queue:
        settings = settings.model_copy(update={"queue_name": args.queue})

    try:
        if args.maintenance:
            asyncio.run(run_maintenance(validate_config_on_startup(settings)))
        else:
            asyncio.run(run_worker(settings))
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
