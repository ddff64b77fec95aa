#!/usr/bin/env python3
"""
APK Registry Inspection CLI

This tool lets operators and verifiers:
1. Show the current apk of a quorum
2. List a quorum's apk update history
3. Find the apk update index in force at a block
4. Check an apk hash against a (block, index) pair
5. Verify database integrity

Examples:
    python3 registry_cli.py --db registry_data/apk_registry.db apk 0
    python3 registry_cli.py history 3
    python3 registry_cli.py index 3 120
    python3 registry_cli.py hash 3 120 0
    python3 registry_cli.py verify
"""

import argparse
import os
import sys

from apk_registry import config
from apk_registry.block_clock import ManualBlockClock
from apk_registry.bn254 import g1_to_ints, hash_g1_point
from apk_registry.errors import ApkRegistryError
from apk_registry.sqlite_apk_storage import SQLiteApkStorage


def print_header(title):
    """Print formatted header"""
    print(f"\n{'='*70}")
    print(f"  {title}")
    print(f"{'='*70}\n")


def format_until(until_block):
    return "open" if until_block is None else str(until_block)


def show_apk(registry, args):
    """Display the current apk of a quorum"""
    print_header(f"QUORUM {args.quorum} APK")
    apk = registry.get_apk(args.quorum)
    x, y = g1_to_ints(apk)
    print(f"X:              {hex(x)}")
    print(f"Y:              {hex(y)}")
    print(f"Apk hash:       {hash_g1_point(apk)}")
    print(f"History length: {registry.get_apk_history_length(args.quorum)}")
    return 0


def show_history(registry, args):
    """Display every apk update of a quorum"""
    print_header(f"QUORUM {args.quorum} APK HISTORY")
    updates = registry.get_apk_history(args.quorum)
    if not updates:
        print("📝 No apk updates recorded for this quorum")
        return 0

    print(f"{'Index':>6}  {'From':>10}  {'Until':>10}  Apk hash")
    for index, update in enumerate(updates):
        print(f"{index:>6}  {update.from_block:>10}  {format_until(update.until_block):>10}  {update.apk_hash}")
    return 0


def find_index(registry, args):
    """Print the apk update index in force at a block"""
    index = registry.get_apk_index_at_block_number(args.quorum, args.block)
    update = registry.get_apk_update_at_index(args.quorum, index)
    print(f"✅ Quorum {args.quorum} at block {args.block}: index {index}")
    print(f"   Apk hash: {update.apk_hash}")
    print(f"   Window:   [{update.from_block}, {format_until(update.until_block)})")
    return 0


def check_hash(registry, args):
    """Validate an index for a block and print the apk hash"""
    apk_hash = registry.get_apk_hash_at_block_number_and_index(args.quorum, args.block, args.index)
    print(f"✅ Index {args.index} is valid for quorum {args.quorum} at block {args.block}")
    print(f"   Apk hash: {apk_hash}")
    return 0


def verify_database(storage):
    """Run the storage integrity check"""
    print_header("DATABASE INTEGRITY")
    all_valid, _errors = storage.verify_integrity()
    stats = storage.get_stats()
    print(f"Quorums: {stats['total_quorums']}")
    print(f"Updates: {stats['total_updates']}")
    print(f"Pubkeys: {stats['total_pubkeys']}")
    return 0 if all_valid else 1


def build_parser():
    parser = argparse.ArgumentParser(
        description="Inspect a stored APK registry",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--db",
        type=str,
        default=os.getenv("APK_REGISTRY_DB", config.DEFAULT_DB_PATH),
        help=f"Registry database path (default: $APK_REGISTRY_DB or {config.DEFAULT_DB_PATH})"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    apk_parser = subparsers.add_parser("apk", help="Show the current apk of a quorum")
    apk_parser.add_argument("quorum", type=int)
    apk_parser.set_defaults(handler=show_apk)

    history_parser = subparsers.add_parser("history", help="List a quorum's apk updates")
    history_parser.add_argument("quorum", type=int)
    history_parser.set_defaults(handler=show_history)

    index_parser = subparsers.add_parser("index", help="Find the apk update index at a block")
    index_parser.add_argument("quorum", type=int)
    index_parser.add_argument("block", type=int)
    index_parser.set_defaults(handler=find_index)

    hash_parser = subparsers.add_parser("hash", help="Check an index and print the apk hash at a block")
    hash_parser.add_argument("quorum", type=int)
    hash_parser.add_argument("block", type=int)
    hash_parser.add_argument("index", type=int)
    hash_parser.set_defaults(handler=check_hash)

    verify_parser = subparsers.add_parser("verify", help="Verify database integrity")
    verify_parser.set_defaults(handler=None)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    if not os.path.exists(args.db):
        print(f"❌ Registry database not found: {args.db}")
        return 1

    storage = SQLiteApkStorage(args.db)
    try:
        if args.command == "verify":
            return verify_database(storage)

        registry = storage.load_registry(clock=ManualBlockClock())
        return args.handler(registry, args)
    except ApkRegistryError as e:
        print(f"❌ {type(e).__name__}: {e}")
        return 1
    except ValueError as e:
        print(f"❌ {e}")
        return 1
    finally:
        storage.close()


if __name__ == "__main__":
    sys.exit(main())
