"""Detect and repair drift between stored gear status and the counters it should follow.

Multi-step flows (approve-then-fail-to-persist, manual edits in the database)
can leave ``Gears.Status`` out of step with ``QuantityAvailable`` /
``QuantityTotal`` and the pending check-ins. :func:`validate` reports those rows;
:func:`reconcile` rewrites the status from the counters, one gear per
transaction. Counters themselves are trusted and never rewritten here: a row
whose counters are out of bounds is reported for manual review only.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.reservation_models import Checkin, Gear, GearRequest, GearRequestLine
from services.audit_service import log_audit
from services.errors import ReservationError
from services.inventory_ledger import CHECKIN_PENDING, has_pending_checkin
from services.request_service import OPEN_REQUEST_STATES
from services.status_projection import (
    ADMIN_STATUSES,
    CHECKED_OUT,
    PARTIALLY_AVAILABLE,
    PENDING_CHECKIN,
    normalize_status,
    project_status,
)
from services.unit_of_work import run_in_transaction


RECONCILER_LOGGER = logging.getLogger("gear_desk.reconciler")

ISSUE_COUNTERS_OUT_OF_BOUNDS = "counters_out_of_bounds"
ISSUE_PARTIAL_BUT_FULL = "partially_available_but_full"
ISSUE_CHECKED_OUT_WITHOUT_LINES = "checked_out_without_open_lines"
ISSUE_PENDING_WITHOUT_CHECKINS = "pending_checkin_without_records"
ISSUE_STATUS_MISMATCH = "status_mismatch"
ISSUE_REPAIR_FAILED = "repair_failed"


@dataclass
class ConsistencyIssue:
    gear_id: int
    name: str
    code: str
    diagnosis: str
    stored_status: str | None
    expected_status: str | None
    correctable: bool
    quantity_available: int | None
    quantity_total: int | None

    def to_dict(self) -> dict:
        payload = asdict(self)
        return {
            "gearID": payload["gear_id"],
            "name": payload["name"],
            "code": payload["code"],
            "diagnosis": payload["diagnosis"],
            "storedStatus": payload["stored_status"],
            "expectedStatus": payload["expected_status"],
            "correctable": payload["correctable"],
            "quantityAvailable": payload["quantity_available"],
            "quantityTotal": payload["quantity_total"],
        }


@dataclass
class ValidationReport:
    valid_count: int = 0
    issues: list[ConsistencyIssue] = field(default_factory=list)

    @property
    def invalid_count(self) -> int:
        return len(self.issues)

    def to_dict(self) -> dict:
        return {
            "validCount": self.valid_count,
            "invalidCount": self.invalid_count,
            "issues": [issue.to_dict() for issue in self.issues],
        }


@dataclass
class ReconcileReport:
    fixed_count: int = 0
    remaining_issues: list[ConsistencyIssue] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "fixedCount": self.fixed_count,
            "remainingIssues": [issue.to_dict() for issue in self.remaining_issues],
        }


def _open_line_gear_ids(db: Session) -> set[int]:
    rows = db.execute(
        select(GearRequestLine.GearID)
        .join(GearRequest, GearRequest.RequestID == GearRequestLine.RequestID)
        .where(GearRequest.Status.in_(sorted(OPEN_REQUEST_STATES)))
        .where(GearRequestLine.Quantity > GearRequestLine.ReturnedQuantity)
        .distinct()
    ).scalars().all()
    return set(rows)


def _pending_checkin_gear_ids(db: Session) -> set[int]:
    rows = db.execute(
        select(Checkin.GearID)
        .where(Checkin.Status == CHECKIN_PENDING)
        .distinct()
    ).scalars().all()
    return set(rows)


def diagnose_gear(gear: Gear, *, has_open_lines: bool, has_pending: bool) -> ConsistencyIssue | None:
    """Return the first rule the gear breaks, or None when it is consistent."""
    available = gear.QuantityAvailable
    total = gear.QuantityTotal
    stored = gear.Status

    def _issue(code: str, diagnosis: str, expected: str | None, correctable: bool) -> ConsistencyIssue:
        return ConsistencyIssue(
            gear_id=gear.GearID,
            name=gear.Name,
            code=code,
            diagnosis=diagnosis,
            stored_status=stored,
            expected_status=expected,
            correctable=correctable,
            quantity_available=available,
            quantity_total=total,
        )

    if available is None or total is None or total < 0 or available < 0 or available > total:
        return _issue(
            ISSUE_COUNTERS_OUT_OF_BOUNDS,
            f"available_quantity={available} is outside 0..{total}; manual review required.",
            None,
            False,
        )

    current = normalize_status(stored)
    if current in ADMIN_STATUSES:
        return None
    expected = project_status(available, total, has_pending)

    if current == PARTIALLY_AVAILABLE and available == total:
        return _issue(
            ISSUE_PARTIAL_BUT_FULL,
            f"Status is {PARTIALLY_AVAILABLE} but all {total} unit(s) are available.",
            expected,
            True,
        )
    # Zero available without a request line is a direct ledger checkout; the counters already agree.
    if current == CHECKED_OUT and not has_open_lines and expected != CHECKED_OUT:
        return _issue(
            ISSUE_CHECKED_OUT_WITHOUT_LINES,
            f"Status is {CHECKED_OUT} but no approved, unreturned request line references this gear.",
            expected,
            True,
        )
    if current == PENDING_CHECKIN and not has_pending:
        return _issue(
            ISSUE_PENDING_WITHOUT_CHECKINS,
            f"Status is {PENDING_CHECKIN} but there are no pending check-ins for this gear.",
            expected,
            True,
        )
    if stored != expected:
        return _issue(
            ISSUE_STATUS_MISMATCH,
            f"Status {stored!r} does not match counters {available}/{total}; expected {expected}.",
            expected,
            True,
        )
    return None


def validate(db: Session) -> ValidationReport:
    """Read-only consistency report over every gear row."""
    open_line_ids = _open_line_gear_ids(db)
    pending_ids = _pending_checkin_gear_ids(db)
    gears = db.execute(select(Gear).order_by(Gear.GearID)).scalars().all()

    report = ValidationReport()
    for gear in gears:
        issue = diagnose_gear(
            gear,
            has_open_lines=gear.GearID in open_line_ids,
            has_pending=gear.GearID in pending_ids,
        )
        if issue is None:
            report.valid_count += 1
        else:
            report.issues.append(issue)
    RECONCILER_LOGGER.info("Validation finished valid=%s invalid=%s", report.valid_count, report.invalid_count)
    return report


def _repair_gear(db: Session, gear_id: int, actor_id: int | None) -> bool:
    gear = db.get(Gear, gear_id, populate_existing=True, with_for_update=True)
    if gear is None:
        return False
    current = normalize_status(gear.Status)
    if current in ADMIN_STATUSES:
        return False
    expected = project_status(int(gear.QuantityAvailable), int(gear.QuantityTotal), has_pending_checkin(db, gear.GearID))
    if gear.Status == expected:
        return False
    previous = gear.Status
    gear.Status = expected
    log_audit(db, "Gear", gear.GearID, "ReconcileStatus", f"{previous} -> {expected}", user_id=actor_id)
    return True


def reconcile(db: Session, *, actor_id: int | None = None) -> ReconcileReport:
    """Rewrite drifted statuses from the counters.

    Each gear is repaired in its own transaction after re-reading the row, so an
    interrupted pass leaves the rest for the next run and a second pass with no
    intervening mutation fixes nothing.
    """
    report = ReconcileReport()
    for issue in validate(db).issues:
        if not issue.correctable:
            report.remaining_issues.append(issue)
            continue
        try:
            fixed = run_in_transaction(
                db,
                lambda gear_id=issue.gear_id: _repair_gear(db, gear_id, actor_id),
                operation="reconcile_gear",
            )
        except ReservationError as exc:
            RECONCILER_LOGGER.warning("Repair failed gear_id=%s code=%s error=%s", issue.gear_id, exc.code, exc.message)
            issue.code = ISSUE_REPAIR_FAILED
            issue.diagnosis = f"{issue.diagnosis} Repair failed: {exc.message}"
            issue.correctable = False
            report.remaining_issues.append(issue)
            continue
        if fixed:
            report.fixed_count += 1
            RECONCILER_LOGGER.info(
                "Status repaired gear_id=%s from=%s to=%s",
                issue.gear_id,
                issue.stored_status,
                issue.expected_status,
            )
    RECONCILER_LOGGER.info(
        "Reconcile finished fixed=%s remaining=%s",
        report.fixed_count,
        len(report.remaining_issues),
    )
    return report
