#!/usr/bin/env python3
"""
medsync Management CLI

Commands for running and inspecting the ledger synchronizer:
- listen: Run the synchronizer until stopped (SIGINT/SIGTERM)
- backfill: Scan from a block to the safe head once, then exit
- status: Show the cursor and projection row counts
- verify-tx: Check a transaction receipt against the projected records
- init-db: Create the projection tables in PostgreSQL

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage listen
    python -m tools.manage backfill 0
    python -m tools.manage verify-tx 0xabc...

Exit codes:
    0 - Clean shutdown
    1 - Invalid configuration or unrecoverable error
    2 - Missing required configuration
"""

import argparse
import asyncio
import json
import signal
import sys

from medsync.config import SyncConfig
from medsync.core import BackfillDriver, HttpxRpcClient, Supervisor
from medsync.db import (
    AsyncPostgresProjectionStore,
    DatabaseConfig,
    StoreDriver,
    open_store,
)
from medsync.errors import ConfigError, MissingConfigError, SyncError
from medsync.observability import SyncMetrics, get_logger, setup_logging

logger = get_logger("medsync.manage")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_MISSING_CONFIG = 2


def _load_config(args) -> SyncConfig:
    config = SyncConfig.from_env()
    return config.with_overrides(
        start_block=getattr(args, "start_block", None),
        poll_interval_ms=getattr(args, "poll_interval_ms", None),
        confirmations=getattr(args, "confirmations", None),
        max_window_blocks=getattr(args, "max_window_blocks", None),
        health_port=getattr(args, "health_port", None),
    )


def _stop_on_signals(callback) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, callback)
        except NotImplementedError:
            pass


# ============================================================
# COMMANDS
# ============================================================

async def cmd_listen(args) -> int:
    """Run the Supervisor (and the health endpoint if a port is configured)."""
    config = _load_config(args)
    supervisor = await Supervisor.from_config(config, store_driver=args.store)
    try:
        await supervisor.start()
        if config.health_port:
            await _serve_with_health(supervisor, config.health_port, args.health_host)
        else:
            supervisor.install_signal_handlers()
            await supervisor.wait()
    finally:
        await supervisor.stop()

    if supervisor.failed:
        print(f"[FAIL] Synchronizer stopped: {supervisor.last_error}", file=sys.stderr)
        return EXIT_ERROR
    return EXIT_OK


async def _serve_with_health(supervisor: Supervisor, port: int, host: str) -> None:
    import uvicorn
    from medsync.main import create_app

    server = uvicorn.Server(uvicorn.Config(
        create_app(supervisor),
        host=host,
        port=port,
        log_config=None,
    ))

    async def watch():
        # Bring the server down when the supervisor stops on its own
        await supervisor.wait()
        server.should_exit = True

    watcher = asyncio.create_task(watch())
    try:
        await server.serve()
    finally:
        watcher.cancel()


async def cmd_backfill(args) -> int:
    """Scan from a starting block to the safe head once."""
    config = _load_config(args)
    metrics = SyncMetrics()
    rpc = HttpxRpcClient.from_config(config, metrics=metrics)
    store = None
    try:
        store = await open_store(config.stream, args.store)
        driver = BackfillDriver(rpc, store, config, metrics=metrics)

        stop = asyncio.Event()
        _stop_on_signals(stop.set)
        result = await driver.backfill(args.from_block, args.to_block, should_stop=stop.is_set)
    finally:
        await rpc.close()
        if store is not None:
            await store.close()

    status = "[INTERRUPTED]" if result.interrupted else "[OK]"
    print(f"{status} Backfill {result.from_block}..{result.to_block}")
    print(f"  Windows: {result.windows}")
    print(f"  Logs fetched: {result.fetched}")
    print(f"  Events applied: {result.applied}")
    print(f"  Duplicates skipped: {result.duplicates}")
    print(f"  Decode failures: {result.decode_failures}")
    print(f"  Cursor: {result.cursor}")
    return EXIT_OK


async def cmd_status(args) -> int:
    """Show the cursor, projection counts and (optionally) chain head."""
    config = _load_config(args)
    store = await open_store(config.stream, args.store)
    try:
        cursor = await store.get_cursor()
        records = await store.list_tx_records()
        inventory = await store.list_inventory()
        audit = await store.list_audit_entries()
        grants = await store.latest_staff_grants()
    finally:
        await store.close()

    head = None
    if not args.offline:
        rpc = HttpxRpcClient.from_config(config)
        try:
            head = await rpc.head_block()
        finally:
            await rpc.close()

    last_block = cursor.last_processed_block if cursor else None
    status = {
        "contract": config.checksum_address,
        "last_block": last_block,
        "head_block": head,
        "lag": max(head - last_block, 0) if head is not None and last_block is not None else None,
        "window": [cursor.window_from, cursor.window_to] if cursor and cursor.in_progress else None,
        "ledger_tx_records": len(records),
        "inventory_rows": len(inventory),
        "audit_entries": len(audit),
        "staff_addresses": len(grants),
    }

    if args.json:
        print(json.dumps(status, indent=2))
        return EXIT_OK

    print("=== medsync Status ===\n")
    print(f"  Contract: {status['contract']}")
    print(f"  Cursor: {last_block if last_block is not None else '(not created)'}")
    if head is not None:
        print(f"  Chain head: {head} (lag {status['lag']})")
    if status["window"]:
        print(f"  In-progress window: {status['window'][0]}..{status['window'][1]}")
    print(f"  Ledger records: {status['ledger_tx_records']}")
    print(f"  Inventory rows: {status['inventory_rows']}")
    print(f"  Audit entries: {status['audit_entries']}")
    print(f"  Staff addresses: {status['staff_addresses']}")
    return EXIT_OK


async def cmd_verify_tx(args) -> int:
    """Confirm a transaction on chain and compare it with the projected records."""
    config = _load_config(args)
    tx_hash = args.tx_hash.lower()

    rpc = HttpxRpcClient.from_config(config)
    try:
        receipt = await rpc.tx_receipt(tx_hash)
    finally:
        await rpc.close()

    store = await open_store(config.stream, args.store)
    try:
        records = await store.list_tx_records(tx_hash=tx_hash)
    finally:
        await store.close()

    if receipt is None:
        print(f"[FAIL] Transaction {tx_hash} not found on chain")
        return EXIT_ERROR

    print(f"Transaction {tx_hash}")
    print(f"  Block: {receipt.block_number}")
    print(f"  Status: {'success' if receipt.succeeded else 'reverted'}")
    print(f"  Logs: {receipt.log_count}")
    print(f"  Projected records: {len(records)}")
    for record in records:
        print(f"    #{record.log_index} {record.action_type.value} block={record.block_number}")

    mismatched = [r for r in records if r.block_number != receipt.block_number]
    if not receipt.succeeded:
        print("[FAIL] Transaction reverted")
        return EXIT_ERROR
    if mismatched:
        print(f"[FAIL] {len(mismatched)} record(s) projected from a different block")
        return EXIT_ERROR

    print("[OK] Verified")
    return EXIT_OK


async def cmd_init_db(args) -> int:
    """Apply the projection schema to PostgreSQL."""
    db_config = DatabaseConfig.from_env()
    store = await AsyncPostgresProjectionStore.connect(db_config, stream="")
    try:
        await store.initialize_schema()
    finally:
        await store.close()
    print(f"[OK] Schema applied to {db_config.to_url(include_password=False)}")
    return EXIT_OK


# ============================================================
# ENTRY POINT
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="medsync Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--store",
        choices=[d.value for d in StoreDriver],
        help="Projection store (default: from MEDSYNC_STORE_DRIVER / DATABASE_URL)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # listen
    p_listen = subparsers.add_parser("listen", help="Run the synchronizer until stopped")
    p_listen.add_argument("--start-block", type=int, help="First block for a fresh cursor")
    p_listen.add_argument("--poll-interval-ms", type=int, help="Tick cadence")
    p_listen.add_argument("--confirmations", type=int, help="Blocks to stay behind head")
    p_listen.add_argument("--max-window-blocks", type=int, help="Max blocks per log query")
    p_listen.add_argument("--health-port", type=int, help="Serve /health on this port")
    p_listen.add_argument("--health-host", default="0.0.0.0", help="Health endpoint bind address")

    # backfill
    p_backfill = subparsers.add_parser("backfill", help="Scan from a block to head once")
    p_backfill.add_argument("from_block", type=int, help="First block to scan")
    p_backfill.add_argument("--to-block", type=int, help="Last block to scan (default: safe head)")
    p_backfill.add_argument("--confirmations", type=int, help="Blocks to stay behind head")
    p_backfill.add_argument("--max-window-blocks", type=int, help="Max blocks per log query")

    # status
    p_status = subparsers.add_parser("status", help="Show cursor and projection counts")
    p_status.add_argument("--offline", action="store_true", help="Do not query the chain head")
    p_status.add_argument("--json", action="store_true", help="Print JSON")

    # verify-tx
    p_verify = subparsers.add_parser("verify-tx", help="Verify a transaction against the projections")
    p_verify.add_argument("tx_hash", help="Transaction hash (0x...)")

    # init-db
    subparsers.add_parser("init-db", help="Create the projection tables")

    return parser


COMMANDS = {
    "listen": cmd_listen,
    "backfill": cmd_backfill,
    "status": cmd_status,
    "verify-tx": cmd_verify_tx,
    "init-db": cmd_init_db,
}


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_ERROR

    setup_logging()
    try:
        return asyncio.run(COMMANDS[args.command](args))
    except MissingConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_MISSING_CONFIG
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except SyncError as e:
        logger.error("Unrecoverable error", error=f"{type(e).__name__}: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
