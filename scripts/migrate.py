#!/usr/bin/env python
"""
Database migration script for the stake engine.

Usage:
    python scripts/migrate.py upgrade head
    python scripts/migrate.py downgrade -1

Or with explicit DATABASE_URL:
    DATABASE_URL=postgresql://... python scripts/migrate.py upgrade head
"""

import os
import sys
import argparse

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def main():
    parser = argparse.ArgumentParser(description="Run stake engine database migrations")
    parser.add_argument("command", choices=["upgrade", "downgrade", "current", "history", "stamp"],
                        help="Alembic command to run")
    parser.add_argument("revision", nargs="?", default="head",
                        help="Revision target (default: head)")
    parser.add_argument("--database-url", "-d",
                        help="Database URL (or set DATABASE_URL env var)")
    parser.add_argument("--sql", action="store_true",
                        help="Generate SQL instead of applying")

    args = parser.parse_args()

    if args.database_url:
        os.environ["DATABASE_URL"] = args.database_url

    # Import after DATABASE_URL is final so settings pick it up
    from alembic import command
    from alembic.config import Config

    from stakeledger.config import get_settings

    db_url = get_settings().async_database_url

    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("sqlalchemy.url", db_url)

    print(f"Running: alembic {args.command} {args.revision}")
    print(f"Database: {db_url.split('@')[-1][:50]}")

    try:
        if args.command == "upgrade":
            command.upgrade(alembic_cfg, args.revision, sql=args.sql)
        elif args.command == "downgrade":
            command.downgrade(alembic_cfg, args.revision, sql=args.sql)
        elif args.command == "current":
            command.current(alembic_cfg)
        elif args.command == "history":
            command.history(alembic_cfg)
        elif args.command == "stamp":
            command.stamp(alembic_cfg, args.revision)

        print("Migration completed successfully!")

    except Exception as e:
        print(f"Migration failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
