#!/usr/bin/env python3
"""Report (and by default repair) gear status drift from the command line."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from services.consistency_reconciler import reconcile, validate


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Validate and reconcile gear status against inventory counters")
    parser.add_argument("--db-url", default=os.environ.get("GEAR_DESK_DB_URL", ""))
    parser.add_argument("--dry-run", action="store_true", help="Only report issues, do not write.")
    parser.add_argument("--actor-id", type=int, default=None, help="User ID recorded in the audit log.")
    parser.add_argument("--verbose", action="store_true")
    return parser


def _print_issues(title: str, issues) -> None:
    print(f"\n=== {title} ===")
    if not issues:
        print("none")
        return
    for issue in issues:
        flag = "fixable" if issue.correctable else "manual"
        print(
            f"[{flag}] gear={issue.gear_id} {issue.name!r} code={issue.code} "
            f"stored={issue.stored_status!r} expected={issue.expected_status!r} :: {issue.diagnosis}"
        )


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        parser.error("Missing DB URL. Set GEAR_DESK_DB_URL or pass --db-url.")

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    engine = create_engine(db_url, pool_pre_ping=True, future=True)
    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    db = session_factory()
    try:
        if args.dry_run:
            report = validate(db)
            print(f"valid={report.valid_count} invalid={report.invalid_count}")
            _print_issues("Issues", report.issues)
            return 1 if report.issues else 0

        result = reconcile(db, actor_id=args.actor_id)
        print(f"fixed={result.fixed_count} remaining={len(result.remaining_issues)}")
        _print_issues("Remaining Issues", result.remaining_issues)
        return 1 if result.remaining_issues else 0
    finally:
        db.close()
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
