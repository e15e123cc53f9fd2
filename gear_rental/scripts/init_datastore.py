#!/usr/bin/env python3
"""Create the Entities document table for a gear-rental datastore."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from sqlalchemy import create_engine, inspect

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from models.datastore_models import Entity


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create the gear-rental Entities table if it is missing.")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("GEAR_RENTAL_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to GEAR_RENTAL_DB_URL env var.",
    )
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    if not args.db_url:
        parser.error("Missing DB URL. Set GEAR_RENTAL_DB_URL or pass --db-url.")

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    existed = inspect(engine).has_table(Entity.__tablename__)
    Base.metadata.create_all(engine)
    print(f"OK table={Entity.__tablename__} created={not existed}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
