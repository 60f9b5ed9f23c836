"""
herowatch - On-chain hero reveal / death announcer
==================================================

Usage:
    herowatch run                              # live monitor (default)
    herowatch init-metadata                    # repair the store over the token range
    herowatch uniques                          # list ids whose Type is Unique
    herowatch reprocess --token-id 42 --owner 0xAA
"""

import argparse
import asyncio
import os
import sys
from typing import Optional

from loguru import logger

from .application.bulk_reconcile import BulkReconciler, find_uniques
from .application.monitor import HeroMonitor, build_fetcher, build_notifier, build_store
from .application.reveal_engine import RevealEngine
from .application.scheduler import DelayedTaskScheduler
from .config.settings import AppConfig
from .domain.errors import ConfigError, StoreError
from .utils.shutdown import install_signal_handlers, reset


def configure_logging(level: str = "INFO", directory: str = "logs") -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level.upper(),
    )
    logger.add(
        os.path.join(directory, "herowatch_{time:YYYY-MM-DD}.log"),
        rotation="1 day",
        retention="30 days",
        level="DEBUG",
    )


async def _run_monitor(config: AppConfig) -> int:
    monitor = HeroMonitor.from_config(config)
    await monitor.run()
    return 0


async def _run_init_metadata(config: AppConfig) -> int:
    store = build_store(config)
    fetcher = build_fetcher(config)
    b = config.bulk
    try:
        await store.ping()
        report = await BulkReconciler(
            store,
            fetcher,
            start_token_id=b.start_token_id,
            end_token_id=b.end_token_id,
            concurrency=b.concurrency,
            max_retries_per_token=b.max_retries_per_token,
            max_full_loops=b.max_full_loops,
        ).run()
    finally:
        await fetcher.close()
        await store.close()
    return 1 if report.failed else 0


async def _run_uniques(config: AppConfig) -> int:
    store = build_store(config)
    try:
        ids = await find_uniques(store)
    finally:
        await store.close()
    print(ids)
    logger.info(f"UNIQUES | count={len(ids)}")
    return 0


async def _run_reprocess(config: AppConfig, token_id: int, owner: str) -> int:
    store = build_store(config)
    fetcher = build_fetcher(config)
    notifier = build_notifier(config)
    scheduler = DelayedTaskScheduler("reprocess")
    engine = RevealEngine(store, fetcher, notifier, scheduler, level_trait=config.metadata.level_trait)
    try:
        await store.ping()
        outcome = await engine.reprocess(token_id, owner)
    finally:
        await fetcher.close()
        await notifier.close()
        await store.close()
    print(f"token {token_id}: {outcome}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="herowatch",
        description="Watch hero staking / death events and announce reveals and deaths",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", default=None, help="TOML settings file")
    parser.add_argument("--log-level", default=None, help="Override logging.level (DEBUG, INFO, ...)")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", help="Run the live monitor")
    subparsers.add_parser("init-metadata", help="Fetch metadata for missing / unrevealed tokens")
    subparsers.add_parser("uniques", help="Print token ids with Type == Unique")
    parser_reprocess = subparsers.add_parser("reprocess", help="Run one immediate reveal check")
    parser_reprocess.add_argument("--token-id", type=int, required=True)
    parser_reprocess.add_argument("--owner", default="", help="Owner address used in the announcement")
    return parser


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = AppConfig.load(args.config)
    except ConfigError as exc:
        configure_logging()
        logger.error(f"CONFIG_INVALID | err={exc}")
        return 2

    configure_logging(args.log_level or config.logging.level, config.logging.directory)
    config.log_summary()

    command = args.command or "run"
    if command == "run":
        reset()
        install_signal_handlers()
        runner = _run_monitor(config)
    elif command == "init-metadata":
        runner = _run_init_metadata(config)
    elif command == "uniques":
        runner = _run_uniques(config)
    elif command == "reprocess":
        runner = _run_reprocess(config, args.token_id, args.owner)
    else:  # pragma: no cover
        build_parser().print_help()
        return 2

    try:
        return asyncio.run(runner)
    except StoreError as exc:
        logger.error(f"STORE_FAILED | command={command} | err={exc}")
        return 1
    except KeyboardInterrupt:
        logger.info("INTERRUPTED")
        return 130


if __name__ == "__main__":
    sys.exit(main())
