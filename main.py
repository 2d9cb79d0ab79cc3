"""
Main entry point for the Predictive Yield Allocator

Usage:
    python main.py init-db [--cloud]
    python main.py demo [--aggressiveness 65]
    python main.py optimize --block 2000 --aggressiveness 80 [--no-sentiment]
    python main.py rebalance --block 2000 --caller alice
    python main.py state
"""

import argparse
import json
import logging
import sqlite3
import sys

from config import settings
from config.engine_config import EngineConfig
from allocation.errors import EngineError
from allocation.yield_engine import YieldAllocationEngine
from alerts.slack_notifier import SlackNotifier
from data.engine_store import EngineStore, get_db_connection
from data.init_db import init_sqlite, init_postgres
from utils.block_clock import BlockClock


def build_engine(conn, block: int, with_notifier: bool = False) -> YieldAllocationEngine:
    """Wire store, clock and notifier into an engine"""
    store = EngineStore(conn)
    store.ensure_schema()
    notifier = SlackNotifier() if with_notifier and settings.SLACK_WEBHOOK_URL else None
    return YieldAllocationEngine(
        store=store,
        clock=BlockClock(block),
        admin=settings.ADMIN_PRINCIPAL,
        config=EngineConfig.from_settings(),
        notifier=notifier,
    )


def print_json(title: str, payload):
    print("\n" + "=" * 80)
    print(title)
    print("=" * 80)
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def run_demo(aggressiveness: int):
    """Register two protocols, deposit, rebalance and optimize on an in-memory database"""
    conn = sqlite3.connect(':memory:')
    try:
        engine = build_engine(conn, block=1000)
        admin = settings.ADMIN_PRINCIPAL

        engine.register_protocol(admin, 'alex-lending', 650, 30, liquidity_depth=5_000_000)
        engine.register_protocol(admin, 'stable-vault', 580, 25, liquidity_depth=8_000_000)
        engine.update_asset_prediction(admin, 'alex-lending', 700, 35, 85)
        engine.deposit_and_allocate('demo-user', settings.MIN_LIQUIDITY_THRESHOLD * 2, 60)

        rebalance = engine.execute_rebalancing('demo-user')
        print_json("🔄 REBALANCE", rebalance)

        summary = engine.execute_predictive_yield_optimization_engine(
            'demo-user', True, True, True, aggressiveness
        )
        print_json("📈 OPTIMIZATION REPORT", engine.last_report.to_dict())
        print_json("📋 SUMMARY", summary.to_dict())
        print_json("⚙️  ENGINE STATE", engine.get_engine_state().to_dict())
    finally:
        conn.close()


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description="Predictive yield allocation and rebalancing engine"
    )
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    init_parser = subparsers.add_parser('init-db', help='Create the database schema')
    init_parser.add_argument('--cloud', action='store_true', help='Initialize Supabase PostgreSQL')

    demo_parser = subparsers.add_parser('demo', help='Run an in-memory end-to-end scenario')
    demo_parser.add_argument('--aggressiveness', type=int, default=65)

    optimize_parser = subparsers.add_parser('optimize', help='Run the predictive optimizer')
    optimize_parser.add_argument('--block', type=int, required=True, help='Current block height')
    optimize_parser.add_argument('--aggressiveness', type=int, required=True)
    optimize_parser.add_argument('--caller', default='cli')
    optimize_parser.add_argument('--no-predictions', action='store_true')
    optimize_parser.add_argument('--no-correlation', action='store_true')
    optimize_parser.add_argument('--no-sentiment', action='store_true')

    rebalance_parser = subparsers.add_parser('rebalance', help='Commit new target allocations')
    rebalance_parser.add_argument('--block', type=int, required=True, help='Current block height')
    rebalance_parser.add_argument('--caller', default='cli')

    subparsers.add_parser('state', help='Show engine state and protocols')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    if args.command == 'init-db':
        if args.cloud:
            init_postgres(settings.SUPABASE_URL)
        else:
            init_sqlite(settings.SQLITE_PATH)
        return 0

    if args.command == 'demo':
        run_demo(args.aggressiveness)
        return 0

    conn = get_db_connection()
    try:
        if args.command == 'state':
            store = EngineStore(conn)
            store.ensure_schema()
            print_json("⚙️  ENGINE STATE", store.load_state().to_dict())
            protocols = store.table_frame('protocols')
            print("\n" + (protocols.to_string(index=False) if not protocols.empty else "No protocols registered"))
            return 0

        engine = build_engine(conn, block=args.block, with_notifier=True)

        if args.command == 'optimize':
            summary = engine.execute_predictive_yield_optimization_engine(
                args.caller,
                not args.no_predictions,
                not args.no_correlation,
                not args.no_sentiment,
                args.aggressiveness,
            )
            print_json("📈 OPTIMIZATION REPORT", engine.last_report.to_dict())
            print_json("📋 SUMMARY", summary.to_dict())
        elif args.command == 'rebalance':
            print_json("🔄 REBALANCE", engine.execute_rebalancing(args.caller))
        return 0

    except EngineError as e:
        print(f"✗ {e.kind}: {e.message}")
        return 1
    finally:
        conn.close()


if __name__ == '__main__':
    sys.exit(main())
