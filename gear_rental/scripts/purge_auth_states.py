#!/usr/bin/env python3
"""Delete OAuth state tokens that were never consumed and have expired."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from services.repository import purge_expired_auth_states


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Purge expired OAuth state tokens.")
    parser.add_argument(
        "--ttl-seconds",
        type=int,
        default=int(os.environ.get("AUTH_STATE_TTL_SECONDS") or "300"),
        help="States older than this are removed; defaults to AUTH_STATE_TTL_SECONDS or 300.",
    )
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
    if args.ttl_seconds <= 0:
        parser.error("--ttl-seconds must be > 0")

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    session = sessionmaker(bind=engine, expire_on_commit=False, future=True)()
    try:
        removed = purge_expired_auth_states(session, args.ttl_seconds)
    finally:
        session.close()
    print(f"OK removed={removed} ttl_seconds={args.ttl_seconds}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
