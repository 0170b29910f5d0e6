#!/usr/bin/env python3
"""
Account field migrations

Usage:
    python migrate.py status
    python migrate.py up [--target N]
    python migrate.py backfill --field balance_gold=0.0000 --field is_frozen=false
"""

import argparse
import json
import sys
from pathlib import Path

project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from game_economy.config import get_config
from game_economy.errors import MigrationFailed
from game_economy.logging_config import setup_logging
from game_economy.system import EconomySystem


def parse_field(text: str):
    """Parse NAME=VALUE; VALUE is read as JSON when possible, else kept as text"""
    if "=" not in text:
        raise argparse.ArgumentTypeError(f"Expected NAME=VALUE, got {text!r}")
    name, raw = text.split("=", 1)
    if not name:
        raise argparse.ArgumentTypeError(f"Missing field name in {text!r}")
    try:
        value = json.loads(raw)
    except ValueError:
        value = raw
    # Monetary literals stay fixed-point strings
    if isinstance(value, float):
        value = raw
    return name, value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Run account field migrations')
    parser.add_argument('--database-url', help='Override ECONOMY_DATABASE_URL')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('status', help='Show applied and pending migrations')

    up = subparsers.add_parser('up', help='Apply pending migrations')
    up.add_argument('--target', type=int, help='Stop at this version')

    backfill = subparsers.add_parser('backfill', help='Backfill missing fields with defaults')
    backfill.add_argument('--field', type=parse_field, action='append', required=True,
                          metavar='NAME=VALUE', help='Field default (repeatable)')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = get_config()
    if args.database_url:
        config = config.model_copy(update={'database_url': args.database_url})
    setup_logging(config.log_level, log_format=config.log_format)

    system = EconomySystem(config)
    try:
        manager = system.migration_manager
        if args.command == 'status':
            status = manager.get_migration_status()
            status['checksums_valid'] = manager.validate_migrations()
            print(json.dumps(status, indent=2))
        elif args.command == 'up':
            for migration, result in manager.migrate_up(args.target):
                print(f"{migration}: {json.dumps(result.to_dict())}")
        else:
            result = manager.runner.run_backfill(dict(args.field))
            print(json.dumps(result.to_dict(), indent=2))
            if result.still_missing:
                return 2
    except MigrationFailed as e:
        print(f"❌ {e.message} (matched={e.matched}, modified={e.modified})")
        return 1
    finally:
        system.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
