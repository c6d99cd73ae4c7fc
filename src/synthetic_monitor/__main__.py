#!/usr/bin/env python3
"""
Synthetic Monitor Entry Point

Serve the HTTP API or run one-shot commands (for cron and operators).
"""

import argparse
import asyncio
import json
import logging
import os
import sys

from src.synthetic_monitor.api import SyntheticMonitorAPI
from src.synthetic_monitor.catalog_loader import import_catalog, load_catalog_file
from src.synthetic_monitor.config import SyntheticConfig
from src.synthetic_monitor.errors import HistoryPersistenceError, SyntheticMonitorError
from src.synthetic_monitor.runner import SyntheticTestRunner


def setup_logging():
    """Configure logging for the synthetic monitor."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    return logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Synthetic test execution and alerting service")
    parser.add_argument("--config", help="YAML configuration file (default: $SYNTHETIC_CONFIG)")
    parser.add_argument("--db-path", help="SQLite database path")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_cmd = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_cmd.add_argument("--host", help="Bind address")
    serve_cmd.add_argument("--port", type=int, help="API server port")

    subparsers.add_parser("run", help="Execute every enabled test once")

    execute = subparsers.add_parser("execute", help="Execute one test")
    execute.add_argument("test_id", type=int)

    subparsers.add_parser("prune", help="Delete history older than the retention period")

    import_cmd = subparsers.add_parser("import-catalog", help="Import nodes, groups, APIs and tests from YAML")
    import_cmd.add_argument("file")

    return parser


async def serve(runner: SyntheticTestRunner, config: SyntheticConfig, args) -> None:
    api = SyntheticMonitorAPI(runner, config)
    app_runner = await api.start_server(args.host, args.port)
    try:
        await asyncio.Event().wait()
    finally:
        await app_runner.cleanup()


async def run_enabled(runner: SyntheticTestRunner, logger) -> int:
    results = await runner.execute_enabled_tests()
    failed = [test_id for test_id, result in results.items()
              if isinstance(result, Exception) or not result.success]
    logger.info(f"Executed {len(results)} tests, {len(failed)} did not fully succeed")
    return 1 if failed else 0


async def execute_one(runner: SyntheticTestRunner, test_id: int) -> int:
    try:
        run = await runner.execute_test(test_id)
    except HistoryPersistenceError as e:
        print(json.dumps(e.run.to_dict(), indent=2))
        raise
    print(json.dumps(run.to_dict(), indent=2))
    return 0 if run.success else 1


async def main(argv=None) -> int:
    """Main entry point for the synthetic monitor."""
    args = build_parser().parse_args(argv)
    logger = setup_logging()

    try:
        config = SyntheticConfig.from_env(args.config)
        if args.db_path:
            config.db_path = args.db_path
        runner = SyntheticTestRunner.from_config(config)

        if args.command == "serve":
            logger.info("Starting synthetic monitor API")
            await serve(runner, config, args)
            return 0
        if args.command == "run":
            return await run_enabled(runner, logger)
        if args.command == "execute":
            return await execute_one(runner, args.test_id)
        if args.command == "prune":
            removed = runner.prune_history()
            logger.info(f"Removed {removed} history records")
            return 0
        if args.command == "import-catalog":
            created = import_catalog(runner.catalog, load_catalog_file(args.file))
            print(json.dumps(created))
            return 0
    except SyntheticMonitorError as e:
        logger.error(f"{e.error_code.value}: {e.message}")
        return 1
    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
        return 0
    return 2


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
