"""
Seat Fulfillment — Operator CLI

Usage:
    # One sweep cycle, then exit (prints the report as JSON)
    python -m fulfillment.cli run-once

    # Run the periodic sweeper until interrupted
    python -m fulfillment.cli serve

    # Show one order's fulfillment state
    python -m fulfillment.cli show <order_no>

    # Create the tables in the configured database
    python -m fulfillment.cli init-db
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Any

from fulfillment.account_sync import AccountSyncClient, HttpAccountSyncClient
from fulfillment.alerts import AlertNotifier, build_notifier
from fulfillment.config import SweeperSettings, get_config_value, load_config
from fulfillment.db import DatabaseBackend, create_backend
from fulfillment.errors import ConfigError
from fulfillment.flags import FeatureFlags
from fulfillment.locks import LockManager
from fulfillment.logging import configure_logging
from fulfillment.retry import RetryPolicy
from fulfillment.state_machine import OrderFulfiller
from fulfillment.store import OrderStore
from fulfillment.sweeper import Sweeper

logger = logging.getLogger("seat_fulfillment.cli")


@dataclass
class Engine:
    """Everything one process needs, wired from config."""
    db: DatabaseBackend
    store: OrderStore
    sync: AccountSyncClient
    notifier: AlertNotifier
    flags: FeatureFlags
    settings: SweeperSettings
    fulfiller: OrderFulfiller
    sweeper: Sweeper

    async def aclose(self):
        await self.notifier.drain()
        await self.sync.aclose()
        self.db.close()


def build_engine(cfg: dict[str, Any], db_path: str = "") -> Engine:
    settings = SweeperSettings.from_config(cfg)
    db = create_backend(
        get_config_value("database.backend", cfg),
        path=db_path or str(get_config_value("database.path", cfg, "fulfillment.db")),
        dsn=str(get_config_value("database.dsn", cfg, "") or ""),
    )
    store = OrderStore(db, storage_tz=settings.storage_tz)
    store.ensure_schema()

    sync = HttpAccountSyncClient.from_config(cfg)
    notifier = build_notifier(cfg)
    flags = FeatureFlags.from_config(cfg)
    fulfiller = OrderFulfiller(store, sync, notifier, RetryPolicy.from_settings(settings), settings)
    sweeper = Sweeper(store, fulfiller, LockManager(), flags, settings, notifier)
    return Engine(db, store, sync, notifier, flags, settings, fulfiller, sweeper)


# ═══════════════════════════════════════════════════════════════════
# Commands
# ═══════════════════════════════════════════════════════════════════

async def cmd_run_once(args, engine: Engine) -> int:
    report = await engine.sweeper.run_once()
    print(json.dumps(report.to_dict(), indent=2))
    return 0


async def cmd_serve(args, engine: Engine) -> int:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    dispose = engine.sweeper.start()
    print(
        f"Sweeper running (interval={engine.settings.interval_seconds}s, "
        f"concurrency={engine.settings.concurrency}). Ctrl-C to stop.",
        file=sys.stderr,
    )
    try:
        await stop_event.wait()
    finally:
        await dispose()
    return 0


async def cmd_show(args, engine: Engine) -> int:
    order = engine.store.load_order(args.order_no)
    if order is None:
        print(f"Error: order {args.order_no} not found", file=sys.stderr)
        return 1

    print(f"\n{'═' * 70}")
    print(f"  ORDER {order.order_no}")
    print(f"{'─' * 70}")
    print(f"  uid:          {order.uid} ({order.username or '—'})")
    print(f"  status:       {order.status}")
    print(f"  fulfillment:  {order.fulfillment_status.value}")
    print(f"  message:      {order.action_message or '—'}")
    print(f"  account:      {order.target_account_id}")
    print(f"  attempts:     {order.payload.attempts}")
    if order.payload.next_retry_at:
        print(f"  next retry:   {order.payload.next_retry_at.isoformat()}")
    if order.payload.last_error:
        print(f"  last error:   {order.payload.last_error}")
    print(f"{'═' * 70}")

    if args.verbose:
        print(json.dumps({
            "payload": order.payload.to_dict(),
            "result": engine.store.load_action_result(order.order_no),
        }, indent=2, ensure_ascii=False, default=str))
    return 0


async def cmd_init_db(args, engine: Engine) -> int:
    # build_engine already ran ensure_schema
    print(f"Schema ready ({engine.db.backend_type})", file=sys.stderr)
    return 0


COMMANDS = {
    "run-once": cmd_run_once,
    "serve": cmd_serve,
    "show": cmd_show,
    "init-db": cmd_init_db,
}


async def _run(args, cfg: dict[str, Any]) -> int:
    engine = build_engine(cfg, db_path=args.db)
    try:
        return await COMMANDS[args.command](args, engine)
    finally:
        await engine.aclose()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Seat Fulfillment — order sweeper",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default="", help="Config YAML (default: $SF_CONFIG or fulfillment.yaml)")
    parser.add_argument("--env", default="", help="Config overlay profile (default: $SF_ENV)")
    parser.add_argument("--db", default="", help="SQLite database path (overrides database.path)")
    parser.add_argument("--log-level", default="", help="Log level (default: logging.level or INFO)")

    subs = parser.add_subparsers(dest="command", help="Command")
    subs.add_parser("run-once", help="Run a single sweep cycle")
    subs.add_parser("serve", help="Run the periodic sweeper")
    show_p = subs.add_parser("show", help="Show an order's fulfillment state")
    show_p.add_argument("order_no")
    show_p.add_argument("--verbose", "-v", action="store_true")
    subs.add_parser("init-db", help="Create tables if missing")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    try:
        cfg = load_config(base_path=args.config, env=args.env)
        configure_logging(args.log_level or str(get_config_value("logging.level", cfg, "INFO")))
        return asyncio.run(_run(args, cfg))
    except (ConfigError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
