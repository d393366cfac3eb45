#!/usr/bin/env python3
"""Database overview and integrity checks for Gear Desk."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Gears",
    "GearRequests",
    "GearRequestLines",
    "Checkins",
    "Vehicles",
    "CarBookings",
    "CarAssignments",
    "AuditLogs",
    "NotificationQueue",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Gears": ["GearID", "Name", "QuantityTotal", "QuantityAvailable", "Status", "UpdatedDate"],
    "GearRequestLines": ["LineID", "RequestID", "GearID", "Quantity", "ReturnedQuantity"],
    "Checkins": ["CheckinID", "RequestID", "GearID", "UserID", "Quantity", "Status"],
    "CarAssignments": ["AssignmentID", "BookingID", "VehicleID", "LockVehicleID"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _run_existence_checks(present: set[str]) -> list[CheckResult]:
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_column_checks(engine: Engine, present: set[str]) -> list[CheckResult]:
    inspector = inspect(engine)
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in present:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_integrity_checks(engine: Engine, present: set[str]) -> list[CheckResult]:
    checks: list[CheckResult] = []

    if "Gears" in present:
        checks.append(
            _count_check(
                engine,
                "gears:counters_out_of_bounds",
                """
                SELECT COUNT(*) FROM "Gears"
                WHERE "QuantityAvailable" < 0
                   OR "QuantityTotal" < 0
                   OR "QuantityAvailable" > "QuantityTotal"
                """,
            )
        )

    if "GearRequestLines" in present:
        checks.append(
            _count_check(
                engine,
                "requestlines:returned_exceeds_quantity",
                'SELECT COUNT(*) FROM "GearRequestLines" WHERE "ReturnedQuantity" > "Quantity"',
            )
        )
        if "Gears" in present:
            checks.append(
                _count_check(
                    engine,
                    "requestlines:orphan_gearid",
                    """
                    SELECT COUNT(*)
                    FROM "GearRequestLines" l
                    LEFT JOIN "Gears" g ON g."GearID" = l."GearID"
                    WHERE g."GearID" IS NULL
                    """,
                )
            )

    if "CarAssignments" in present and "CarBookings" in present:
        checks.append(
            _count_check(
                engine,
                "carassignments:lock_without_approved_booking",
                """
                SELECT COUNT(*)
                FROM "CarAssignments" a
                JOIN "CarBookings" b ON b."BookingID" = a."BookingID"
                WHERE a."LockVehicleID" IS NOT NULL AND b."Status" <> 'Approved'
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "carassignments:approved_without_lock",
                """
                SELECT COUNT(*)
                FROM "CarAssignments" a
                JOIN "CarBookings" b ON b."BookingID" = a."BookingID"
                WHERE a."LockVehicleID" IS NULL AND b."Status" = 'Approved'
                """,
            )
        )

    if "Vehicles" in present and "CarAssignments" in present:
        checks.append(
            _count_check(
                engine,
                "vehicles:checked_out_without_holder",
                """
                SELECT COUNT(*)
                FROM "Vehicles" v
                LEFT JOIN "CarAssignments" a ON a."LockVehicleID" = v."VehicleID"
                WHERE v."Status" = 'Checked Out' AND a."AssignmentID" IS NULL
                """,
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine, present: set[str]) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f'SELECT COUNT(*) FROM "{table}"')
        print(f"{table}: {int(count or 0)}")


def _print_status_summary(engine: Engine, present: set[str]) -> None:
    _print_section("Gear Status Summary")
    if "Gears" not in present:
        print("Gears: missing")
        return
    rows = _rows(engine, 'SELECT "Status", COUNT(*) FROM "Gears" GROUP BY "Status" ORDER BY "Status"')
    for status, count in rows:
        print(f"{status}: {int(count or 0)}")


def _print_samples(engine: Engine, present: set[str], sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if "AuditLogs" in present:
        rows = _rows(
            engine,
            """
            SELECT "AuditID", "EntityType", "EntityID", "Action", "UserID", "CreatedAt"
            FROM "AuditLogs"
            ORDER BY "AuditID" DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("AuditLogs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Gear Desk DB overview")
    parser.add_argument("--db-url", default=os.environ.get("GEAR_DESK_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("GEAR_DESK_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
        present = set(inspect(engine).get_table_names())
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    _print_results("Table Existence", _run_existence_checks(present))
    _print_results("Column Checks", _run_column_checks(engine, present))
    _print_results("Integrity Checks", _run_integrity_checks(engine, present))
    _print_row_counts(engine, present)
    _print_status_summary(engine, present)
    _print_samples(engine, present, args.samples)
    return 0


if __name__ == "__main__":
    sys.exit(main())
