#!/usr/bin/env python3
"""
Main entry point for the chainlink registry supervisor.

This script runs the supervisor until it is interrupted, including:
- Starting the flags indexer and waiting for its historical sync
- Aggregator discovery
- Aggregators indexer config generation and startup
- Health checks, re-discovery and status reports
"""

import asyncio
import logging
import signal
import sys

from registry_supervisor.config import load_supervisor_config, setup_logging
from registry_supervisor.errors import PhaseAbortError
from registry_supervisor.init_db import init_db
from registry_supervisor.orchestrator import Orchestrator

# Configure logging
setup_logging()
logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGQUIT)


async def run_supervisor(orchestrator: Orchestrator):
    loop = asyncio.get_running_loop()
    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, orchestrator.request_shutdown)

    try:
        await orchestrator.run()
    finally:
        for sig in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)


def main():
    """
    Main function to run the registry supervisor.
    """

    try:
        config = load_supervisor_config()
        init_db(config.database_url)  # Local SQLite discovery store for development
        asyncio.run(run_supervisor(Orchestrator(config)))

    except PhaseAbortError as e:
        logger.error(f"Supervisor aborted: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Error in main process: {str(e)}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
