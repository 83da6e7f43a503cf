#!/usr/bin/env python3
"""dora-sync service - container entrypoint.

Runs every enabled sync job on its own fixed-delay schedule until SIGTERM or
SIGINT. Writes a health file after each job run in which every source
succeeded, for Docker liveness checks.

Usage (Docker):
    CMD ["python3", "scripts/dora_sync_service.py"]

Usage (manual):
    python3 scripts/dora_sync_service.py

Environment:
    ENABLED_JOBS=commits,deployments        - Jobs to schedule (default: all scheduled jobs)
    COMMIT_SYNC_INTERVAL=3600               - Seconds between commit sync runs
    See config.py for all variables.
"""

import asyncio
import logging
import os
import signal
import sys
import time
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dora_sync.config import get_config
from dora_sync.scheduler import JobScheduler
from dora_sync.service import SyncService

logger = logging.getLogger("dora_sync.service.main")

HEALTH_FILE = Path("/tmp/dora_sync.health")
SHUTDOWN_REQUESTED = False
SCHEDULER = None


def handle_signal(signum, frame):
    """Handle SIGTERM/SIGINT for graceful shutdown."""
    global SHUTDOWN_REQUESTED
    logger.info("Shutdown signal received (signal=%d), stopping scheduler...", signum)
    SHUTDOWN_REQUESTED = True
    if SCHEDULER is not None:
        SCHEDULER.stop()


def write_health_file():
    """Write health file for Docker healthcheck."""
    try:
        HEALTH_FILE.write_text(str(int(time.time())))
    except OSError as e:
        logger.warning("Failed to write health file: %s", e)


def on_job_complete(name, result):
    """Scheduler hook: refresh the health file after a fully successful run."""
    if result is not None and result.ok:
        write_health_file()
    elif result is not None:
        logger.warning("Job %s finished with errors: %s", name, result.to_dict()["errors"])


async def run_service(config) -> None:
    global SCHEDULER

    async with SyncService.from_config(config) as service:
        scheduler = JobScheduler(on_complete=on_job_complete)
        for trigger in service.scheduled_triggers():
            scheduler.add(trigger)
        SCHEDULER = scheduler

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, handle_signal, sig, None)

        if SHUTDOWN_REQUESTED:
            return
        await scheduler.run_forever()


def main():
    """Main service entry point."""
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    # Load and validate config
    try:
        config = get_config()
    except Exception as e:
        logger.error("Failed to load config: %s", e)
        sys.exit(1)

    global HEALTH_FILE
    HEALTH_FILE = Path(config.health_file)

    if not config.github_enabled and not config.datadog_enabled:
        logger.error("Neither GITHUB_TOKEN nor DATADOG_API_KEY/DATADOG_APP_KEY is set - exiting")
        sys.exit(1)

    logger.info(
        "dora-sync service starting (jobs=%s, database=%s)",
        ",".join(config.enabled_jobs),
        config.database_url_masked,
    )

    asyncio.run(run_service(config))
    logger.info("dora-sync service shutting down gracefully")


if __name__ == "__main__":
    main()
