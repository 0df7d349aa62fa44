"""
Script to run jobs once from a definitions file
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, engine, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.exceptions import SchedulerError
from core.logging import setup_logging
from engine.runtime import EngineRuntime
from models.base import RunStatus

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run query relay jobs once")
    parser.add_argument(
        "--definitions",
        default=settings.DEFINITIONS_FILE,
        help="JSON file with connections and jobs (default: DEFINITIONS_FILE)"
    )
    parser.add_argument("--job-id", action="append", dest="job_ids", help="Job to run (repeatable; default: all enabled jobs)")
    parser.add_argument("--resume", action="store_true", default=None, help="Resume from checkpoints")
    return parser.parse_args(argv)


async def run_jobs(args) -> int:
    """Run the selected jobs one after another; returns the number of failed runs"""
    if not args.definitions:
        logger.error("No definitions file given (use --definitions or DEFINITIONS_FILE)")
        return 1

    runtime = EngineRuntime.from_settings(settings)
    definitions = runtime.load_definitions(args.definitions)

    if args.job_ids:
        job_ids = args.job_ids
    else:
        job_ids = [job.id for job in definitions.jobs if job.enabled]

    if not job_ids:
        logger.warning("No jobs to run.")
        return 0

    failed = 0
    try:
        for job_id in job_ids:
            try:
                run = await runtime.scheduler.fire(job_id, resume=args.resume)
            except SchedulerError as e:
                logger.error(f"Job {job_id} could not be run: {e.message}")
                failed += 1
                continue

            summary = run.summary()
            logger.info(
                f"Job {job_id} {summary['status']}: "
                f"completed={summary['completedConnections']}, "
                f"failed={summary['failedConnections']}, "
                f"skipped={summary['skippedConnections']}, "
                f"rows={summary['rowsProcessed']}"
            )
            for error in summary["errors"]:
                logger.warning(f"  {error}")
            if run.status != RunStatus.COMPLETED:
                failed += 1
    finally:
        await runtime.shutdown()

    # Keeps lastRun, lastHash and connectionHashes for the next invocation
    definitions.to_file(args.definitions)
    logger.info(f"All jobs finished ({failed} failed)")
    return failed


def main(argv=None):
    setup_logging()
    failed = asyncio.run(run_jobs(parse_args(argv)))
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
