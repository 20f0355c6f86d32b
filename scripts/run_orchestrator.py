"""
Script to run the pipeline orchestrator without the HTTP API
"""

import asyncio
import os
import signal
import sys
import logging

# Add current directory to path to allow imports from core, pipeline, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.logging import setup_logging
from pipeline.orchestrator import PipelineOrchestrator
from pipeline.stores.sql import SQLAlchemyDataStore

logger = logging.getLogger(__name__)


async def run_orchestrator():
    """Run the scheduler and worker pool until SIGINT/SIGTERM"""
    setup_logging()

    orchestrator = PipelineOrchestrator(
        SQLAlchemyDataStore.from_url(settings.DATABASE_URL),
        scheduler_enabled=True
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops lack signal handler support
            pass

    try:
        await orchestrator.initialize()
        logger.info(
            f"Orchestrator running: {len(orchestrator.registry)} jobs, "
            f"{orchestrator.engine.max_workers} workers, tick every {orchestrator.scheduler.tick_seconds}s"
        )
        await stop.wait()
    except Exception as e:
        logger.error(f"Orchestrator error: {str(e)}")
        sys.exit(1)
    finally:
        logger.info("Stopping orchestrator, draining in-flight jobs")
        await orchestrator.shutdown()


if __name__ == "__main__":
    asyncio.run(run_orchestrator())
