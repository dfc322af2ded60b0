"""
Command line entry point of the StreamLens indexer.
"""

import argparse
import asyncio
import contextlib
import dataclasses
import logging
import signal
import sys
from typing import List, Optional

from streamlens.core.config import IndexerConfig
from streamlens.core.indexer_service import IndexerService
from streamlens.utils.async_utils import run_blocking
from streamlens.utils.error_utils import ConfigurationError
from streamlens.utils.log import get_default_logger, set_package_log_level

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="streamlens",
        description="Index schema registrations of a streams registry contract.",
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Path to a .env file with the indexer settings.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Scan, enrich, and verify once, then exit.",
    )
    parser.add_argument(
        "--no-realtime",
        action="store_true",
        help="Do not start the real-time monitor.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level; overrides STREAMLENS_LOG_LEVEL.",
    )
    return parser.parse_args(argv)


async def run_indexer(config: IndexerConfig, once: bool = False) -> int:
    """
    Run the indexer until a signal arrives or startup fails.

    :param config: The indexer configuration.
    :param once: Exit after the startup sequence.
    :return: The process exit code.
    """
    try:
        service = await run_blocking(IndexerService.create_instance_from_config, config)
    except Exception as e:  # pylint: disable=broad-except
        _LOG.error("Failed to initialize indexer: %s", e)
        return 1

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Signal handlers are not available on every platform.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    exit_code = 0
    start_task = loop.create_task(service.start())
    stop_task = loop.create_task(stop_event.wait())
    try:
        done, _ = await asyncio.wait(
            {start_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if start_task in done:
            start_task.result()
            await service.log_sample_schemas(10)
            if not once:
                await stop_task
        else:
            _LOG.info("Signal received during startup")
            start_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await start_task
    except Exception as e:  # pylint: disable=broad-except
        _LOG.error("Fatal error: %s", e, exc_info=True)
        exit_code = 1
    finally:
        stop_task.cancel()
        await service.shutdown()
    return exit_code


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        set_package_log_level(args.log_level)
    except ValueError as e:
        _LOG.error("%s", e)
        return 1

    try:
        config = IndexerConfig.create_instance_from_env(args.env_file)
    except ConfigurationError as e:
        _LOG.error("Invalid configuration: %s", e)
        return 1
    if args.no_realtime or args.once:
        config = dataclasses.replace(config, realtime_enabled=False)
    if args.once:
        config = dataclasses.replace(config, catchup_interval=0)

    return asyncio.run(run_indexer(config, once=args.once))


if __name__ == "__main__":
    sys.exit(main())
