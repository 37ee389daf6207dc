"""
Command-line entry point for the appliance updater.

Usage:
    appliance-updater [--config PATH] [--yes] [--check] [--debug]
    python -m appliance_updater ...

Exit status: 0 when there was nothing to do or every update applied, 2 when
an update applied but left something needing attention, 1 on failure.
"""

from __future__ import annotations

import asyncio
import signal
import sys

import yaml
from pydantic import ValidationError

from appliance_updater.config import AppConfig, load_config
from appliance_updater.logging import get_logger, setup_logging
from appliance_updater.orchestrator import Orchestrator, PassResult

logger = get_logger(__name__)

EXIT_FAILURE = 1


async def run_update_pass(config: AppConfig) -> PassResult:
    """
    Run one pass, cancelling it cleanly on SIGTERM or SIGHUP.

    Cancellation unwinds through the pass so the run lock is released.
    """
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()

    def signal_handler() -> None:
        logger.warning("Received termination signal, aborting update pass")
        if task is not None:
            task.cancel()

    try:
        for sig in (signal.SIGTERM, signal.SIGHUP):
            loop.add_signal_handler(sig, signal_handler)
    except (ValueError, NotImplementedError):
        # Signal handling not supported on this platform
        pass

    orchestrator = Orchestrator(config)
    return await orchestrator.run_pass()


def main(argv: list[str] | None = None) -> int:
    """Load configuration, run a pass and return the process exit status."""
    try:
        config = load_config(cli_args=argv)
    except (FileNotFoundError, ValidationError, ValueError, yaml.YAMLError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    setup_logging(config.logging)
    logger.info("Starting update check")

    try:
        result = asyncio.run(run_update_pass(config))
    except asyncio.CancelledError:
        logger.error("Update pass cancelled")
        return EXIT_FAILURE
    except Exception:
        logger.exception("Unexpected error during update pass")
        return EXIT_FAILURE

    if result.message:
        logger.info(result.message, extra={"status": result.status.value})
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
