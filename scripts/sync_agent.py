"""CLI entrypoint that runs the sync engine against a remote service."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from collections.abc import Sequence
from pathlib import Path

from aiohttp import ClientSession

from fieldsync import HttpTransport, OfflineManager, SQLiteStorage, SyncConfig, SystemEnvironment, load_config

_LOGGER = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the fieldsync offline sync agent")
    parser.add_argument("--db", type=Path, default=Path(".fieldsync.db"), help="SQLite path for the operation log")
    parser.add_argument("--base-url", required=True, help="Remote service base URL")
    parser.add_argument("--token", default=None, help="Bearer token sent with every batch")
    parser.add_argument("--config", type=Path, default=None, help="YAML file with sync options")
    parser.add_argument("--interval", type=int, default=None, help="Sync interval in seconds")
    parser.add_argument("--once", action="store_true", help="Run a single sync cycle and exit")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> SyncConfig:
    config = load_config(args.config) if args.config else SyncConfig()
    if args.interval is not None:
        options = config.as_dict()
        options["sync_interval_ms"] = args.interval * 1000
        config = SyncConfig.from_options(options)
    return config


async def main_async(args: argparse.Namespace) -> None:
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))
    config = build_config(args)
    storage = SQLiteStorage(args.db)
    async with ClientSession() as session:
        manager = OfflineManager(
            storage,
            lambda device_id: HttpTransport(session, args.base_url, device_id, token=args.token),
            environment=SystemEnvironment(online=True),
            config=config,
        )
        _LOGGER.info("Device %s syncing to %s", manager.device_id, args.base_url)
        if args.once:
            manager.queue.reclaim_abandoned(manager.environment.now_ms())
            report = await manager.trigger_sync()
            print(json.dumps(manager.status(), indent=2, default=str))
            if report is not None and not report.ok:
                _LOGGER.warning("Sync cycle ended with a transport failure: %s", report.transport_error)
            return
        await manager.async_start()
        try:
            await asyncio.Event().wait()
        finally:
            await manager.async_stop()


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    try:
        asyncio.run(main_async(args))
    except KeyboardInterrupt:  # pragma: no cover - manual interruption
        _LOGGER.info("Sync agent stopped")


if __name__ == "__main__":
    main()
