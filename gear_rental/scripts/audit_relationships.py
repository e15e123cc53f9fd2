#!/usr/bin/env python3
"""Report users, rentals and gear whose links disagree with each other.

Writes are not transactional, so a failed request can leave a gear item
pointing at a rental that does not list it (and similar). This lists every
such gap; exit status 1 when any is found.
"""

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

from services.relationship_service import find_relationship_drift


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Check users, rentals and gear for broken links.")
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
    session = sessionmaker(bind=engine, expire_on_commit=False, future=True)()
    try:
        problems = find_relationship_drift(session)
    finally:
        session.close()

    for problem in problems:
        print(f"DRIFT {problem}")
    print(f"{'OK' if not problems else 'FAIL'} problems={len(problems)}")
    return 1 if problems else 0


if __name__ == "__main__":
    raise SystemExit(main())
