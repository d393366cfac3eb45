from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.reservation_models import Checkin, Gear, GearRequest, GearRequestLine
from services.audit_service import log_audit, queue_notification
from services.errors import ConflictError, InputValidationError, InsufficientAvailability, NotFoundError
from services.inventory_ledger import (
    CHECKIN_COMPLETED,
    CHECKIN_PENDING,
    CHECKIN_REJECTED,
    LedgerResult,
    decrement_available,
    increment_available,
    recompute_status,
    require_positive_quantity,
    serialize_gear,
)
from services.unit_of_work import run_in_transaction


REQUEST_LOGGER = logging.getLogger("gear_desk.requests")

REQUEST_PENDING = "Pending"
REQUEST_APPROVED = "Approved"
REQUEST_REJECTED = "Rejected"
REQUEST_CHECKED_OUT = "Checked Out"
REQUEST_RETURNED = "Returned"

STATE_TRANSITIONS = {
    REQUEST_PENDING: {REQUEST_APPROVED, REQUEST_REJECTED},
    REQUEST_APPROVED: {REQUEST_CHECKED_OUT, REQUEST_RETURNED},
    REQUEST_CHECKED_OUT: {REQUEST_RETURNED},
    REQUEST_REJECTED: set(),
    REQUEST_RETURNED: set(),
}
# Requests whose unreturned lines still hold gear units.
OPEN_REQUEST_STATES = frozenset({REQUEST_APPROVED, REQUEST_CHECKED_OUT})

DEFAULT_DURATION = "1week"
DURATION_DAYS = {
    "24hours": 1,
    "48hours": 2,
    "72hours": 3,
    "1week": 7,
    "2weeks": 14,
    "month": 30,
    "1month": 30,
    "1year": 365,
}


@dataclass
class CheckinOutcome:
    checkin: Checkin
    request: GearRequest | None
    ledger: LedgerResult | None = None

    def to_dict(self) -> dict:
        return {
            "checkin": serialize_checkin(self.checkin),
            "request": serialize_request(self.request) if self.request else None,
            "gear": serialize_gear(self.ledger.gear) if self.ledger else None,
            "anomaly": self.ledger.anomaly.to_dict() if self.ledger and self.ledger.anomaly else None,
        }


def calculate_due_date(expected_duration: str | None, start: datetime | None = None) -> datetime:
    """Due date for an approved request; unknown durations fall back to one week."""
    start = start or datetime.now()
    key = "".join((expected_duration or "").lower().split())
    days = DURATION_DAYS.get(key, DURATION_DAYS[DEFAULT_DURATION])
    return start + timedelta(days=days)


def _transition_state(request: GearRequest, target_state: str) -> None:
    current = request.Status
    if target_state == current:
        return
    if current not in STATE_TRANSITIONS or target_state not in STATE_TRANSITIONS[current]:
        raise InputValidationError(
            f"Invalid state transition: {current} -> {target_state}",
            requestID=request.RequestID,
            status=current,
        )
    request.Status = target_state
    request.UpdatedDate = datetime.now()


def _merge_lines(lines) -> dict[int, int]:
    merged: dict[int, int] = {}
    for entry in lines or []:
        if isinstance(entry, dict):
            gear_id = entry.get("gearID", entry.get("gear_id"))
            quantity = entry.get("quantity")
        else:
            gear_id, quantity = entry
        if isinstance(gear_id, bool) or not isinstance(gear_id, int):
            raise InputValidationError("gearID must be an integer.", field="gearID")
        merged[gear_id] = merged.get(gear_id, 0) + require_positive_quantity(quantity)
    if not merged:
        raise InputValidationError("At least one gear line is required.", field="lines")
    return merged


def get_request(db: Session, request_id: int) -> GearRequest:
    request = db.get(GearRequest, request_id, populate_existing=True)
    if not request:
        raise NotFoundError(f"Request {request_id} not found.", requestID=request_id)
    return request


def get_checkin(db: Session, checkin_id: int) -> Checkin:
    checkin = db.get(Checkin, checkin_id, populate_existing=True)
    if not checkin:
        raise NotFoundError(f"Check-in {checkin_id} not found.", checkinID=checkin_id)
    return checkin


def create_request(
    db: Session,
    *,
    requester_id: int,
    lines,
    reason: str | None = None,
    destination: str | None = None,
    expected_duration: str | None = None,
) -> GearRequest:
    merged = _merge_lines(lines)

    def _work() -> GearRequest:
        known = set(
            db.execute(select(Gear.GearID).where(Gear.GearID.in_(sorted(merged)))).scalars().all()
        )
        missing = sorted(set(merged) - known)
        if missing:
            raise NotFoundError(f"Gear {missing[0]} not found.", gearID=missing[0])

        request = GearRequest(
            RequesterID=requester_id,
            Reason=reason,
            Destination=destination,
            ExpectedDuration=expected_duration,
            Status=REQUEST_PENDING,
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
        )
        for gear_id, quantity in sorted(merged.items()):
            request.Lines.append(GearRequestLine(GearID=gear_id, Quantity=quantity, ReturnedQuantity=0))
        db.add(request)
        db.flush()
        log_audit(
            db,
            "GearRequest",
            request.RequestID,
            "CreateRequest",
            ", ".join(f"{gear_id}x{quantity}" for gear_id, quantity in sorted(merged.items())),
            user_id=requester_id,
        )
        return request

    request = run_in_transaction(db, _work, operation="create_request")
    REQUEST_LOGGER.info("Request created request_id=%s lines=%s", request.RequestID, len(merged))
    return request


def approve_request(db: Session, request_id: int, *, approver_id: int | None = None) -> GearRequest:
    """Approve every line or none of them.

    Each line goes through the ledger's conditional decrement inside one
    transaction; the first line that cannot be satisfied rolls back the
    decrements already applied for this request.
    """

    def _work() -> GearRequest:
        request = get_request(db, request_id)
        if request.Status == REQUEST_APPROVED:
            return request
        _transition_state(request, REQUEST_APPROVED)
        # Fixed lock order across requests.
        for line in sorted(request.Lines, key=lambda row: row.GearID):
            decrement_available(db, line.GearID, line.Quantity, approver_id)
        now = datetime.now()
        request.ApprovedBy = approver_id
        request.ApprovedAt = now
        request.DueDate = calculate_due_date(request.ExpectedDuration, now)
        queue_notification(
            db,
            user_id=request.RequesterID,
            entity_type="GearRequest",
            entity_id=request.RequestID,
            notification_type="GearRequestApproved",
            payload=f"Your gear request has been approved. Due {request.DueDate.date().isoformat()}.",
        )
        log_audit(db, "GearRequest", request.RequestID, "ApproveRequest", None, user_id=approver_id)
        return request

    try:
        request = run_in_transaction(db, _work, operation="approve_request")
    except InsufficientAvailability as exc:
        REQUEST_LOGGER.warning("Request approval refused request_id=%s detail=%s", request_id, exc.details)
        raise
    REQUEST_LOGGER.info("Request approved request_id=%s due=%s", request_id, request.DueDate)
    return request


def reject_request(db: Session, request_id: int, *, reason: str | None, actor_id: int | None = None) -> GearRequest:
    reason = (reason or "").strip()
    if not reason:
        raise InputValidationError("A rejection reason is required.", field="reason")

    def _work() -> GearRequest:
        request = get_request(db, request_id)
        if request.Status == REQUEST_REJECTED:
            return request
        _transition_state(request, REQUEST_REJECTED)
        request.RejectedBy = actor_id
        request.RejectionReason = reason
        queue_notification(
            db,
            user_id=request.RequesterID,
            entity_type="GearRequest",
            entity_id=request.RequestID,
            notification_type="GearRequestRejected",
            payload=f"Your gear request was rejected: {reason}",
        )
        log_audit(db, "GearRequest", request.RequestID, "RejectRequest", reason, user_id=actor_id)
        return request

    request = run_in_transaction(db, _work, operation="reject_request")
    REQUEST_LOGGER.info("Request rejected request_id=%s", request_id)
    return request


def mark_checked_out(db: Session, request_id: int, *, actor_id: int | None = None) -> GearRequest:
    def _work() -> GearRequest:
        request = get_request(db, request_id)
        if request.Status == REQUEST_CHECKED_OUT:
            return request
        _transition_state(request, REQUEST_CHECKED_OUT)
        request.CheckedOutAt = datetime.now()
        log_audit(db, "GearRequest", request.RequestID, "CheckOut", None, user_id=actor_id)
        return request

    request = run_in_transaction(db, _work, operation="mark_checked_out")
    REQUEST_LOGGER.info("Request handed over request_id=%s", request_id)
    return request


def _pending_quantity(db: Session, request_id: int, gear_id: int) -> int:
    total = db.execute(
        select(func.coalesce(func.sum(Checkin.Quantity), 0))
        .where(Checkin.RequestID == request_id)
        .where(Checkin.GearID == gear_id)
        .where(Checkin.Status == CHECKIN_PENDING)
    ).scalar()
    return int(total or 0)


def _find_line(request: GearRequest, gear_id: int) -> GearRequestLine | None:
    for line in request.Lines:
        if line.GearID == gear_id:
            return line
    return None


def submit_checkin(
    db: Session,
    request_id: int,
    gear_id: int,
    *,
    user_id: int,
    quantity: int = 1,
    condition: str | None = None,
    notes: str | None = None,
) -> Checkin:
    quantity = require_positive_quantity(quantity)

    def _work() -> Checkin:
        request = get_request(db, request_id)
        if request.Status not in OPEN_REQUEST_STATES:
            raise InputValidationError(
                f"Cannot check in gear for a {request.Status} request.",
                requestID=request.RequestID,
                status=request.Status,
            )
        line = _find_line(request, gear_id)
        if line is None:
            raise NotFoundError(
                f"Gear {gear_id} is not part of request {request_id}.",
                requestID=request_id,
                gearID=gear_id,
            )
        existing = db.execute(
            select(Checkin.CheckinID)
            .where(Checkin.RequestID == request_id)
            .where(Checkin.GearID == gear_id)
            .where(Checkin.UserID == user_id)
            .where(Checkin.Status == CHECKIN_PENDING)
        ).scalars().first()
        if existing is not None:
            raise ConflictError(
                "A check-in for this gear is already pending admin approval.",
                checkinID=existing,
                requestID=request_id,
                gearID=gear_id,
            )
        outstanding = int(line.Quantity) - int(line.ReturnedQuantity) - _pending_quantity(db, request_id, gear_id)
        if quantity > outstanding:
            raise InputValidationError(
                f"Only {max(outstanding, 0)} unit(s) are still outstanding on this request.",
                field="quantity",
                requested=quantity,
                outstanding=max(outstanding, 0),
            )

        checkin = Checkin(
            RequestID=request_id,
            GearID=gear_id,
            UserID=user_id,
            Quantity=quantity,
            Condition=condition,
            Notes=notes,
            Status=CHECKIN_PENDING,
            CreatedDate=datetime.now(),
        )
        db.add(checkin)
        try:
            db.flush()
        except IntegrityError as exc:
            raise ConflictError(
                "A check-in for this gear is already pending admin approval.",
                requestID=request_id,
                gearID=gear_id,
            ) from exc
        recompute_status(db, gear_id, user_id)
        log_audit(db, "Checkin", checkin.CheckinID, "SubmitCheckin", f"gear={gear_id} qty={quantity}", user_id=user_id)
        return checkin

    checkin = run_in_transaction(db, _work, operation="submit_checkin")
    REQUEST_LOGGER.info(
        "Check-in submitted checkin_id=%s request_id=%s gear_id=%s qty=%s",
        checkin.CheckinID,
        request_id,
        gear_id,
        quantity,
    )
    return checkin


def _load_pending_checkin(db: Session, checkin_id: int, target: str) -> tuple[Checkin, bool]:
    checkin = get_checkin(db, checkin_id)
    if checkin.Status == target:
        return checkin, True
    if checkin.Status != CHECKIN_PENDING:
        raise InputValidationError(
            f"Check-in is already {checkin.Status}.",
            checkinID=checkin.CheckinID,
            status=checkin.Status,
        )
    return checkin, False


def approve_checkin(db: Session, checkin_id: int, *, actor_id: int | None = None) -> CheckinOutcome:
    def _work() -> CheckinOutcome:
        checkin, done = _load_pending_checkin(db, checkin_id, CHECKIN_COMPLETED)
        request = db.get(GearRequest, checkin.RequestID, populate_existing=True) if checkin.RequestID else None
        if done:
            return CheckinOutcome(checkin=checkin, request=request)

        checkin.Status = CHECKIN_COMPLETED
        checkin.ReviewedBy = actor_id
        checkin.ReviewedAt = datetime.now()
        # The projection below must no longer see this check-in as pending.
        db.flush()
        ledger = increment_available(db, checkin.GearID, int(checkin.Quantity), actor_id)

        if request is not None:
            line = _find_line(request, checkin.GearID)
            if line is not None:
                line.ReturnedQuantity = min(int(line.Quantity), int(line.ReturnedQuantity) + int(checkin.Quantity))
            if all(int(row.ReturnedQuantity) >= int(row.Quantity) for row in request.Lines):
                _transition_state(request, REQUEST_RETURNED)
                request.ReturnedAt = datetime.now()
        queue_notification(
            db,
            user_id=checkin.UserID,
            entity_type="Checkin",
            entity_id=checkin.CheckinID,
            notification_type="CheckinApproved",
            payload=f"Your check-in of {checkin.Quantity} x {ledger.gear.Name} has been approved.",
        )
        log_audit(db, "Checkin", checkin.CheckinID, "ApproveCheckin", None, user_id=actor_id)
        return CheckinOutcome(checkin=checkin, request=request, ledger=ledger)

    outcome = run_in_transaction(db, _work, operation="approve_checkin")
    REQUEST_LOGGER.info(
        "Check-in approved checkin_id=%s anomaly=%s",
        checkin_id,
        outcome.ledger.anomaly.code if outcome.ledger and outcome.ledger.anomaly else None,
    )
    return outcome


def reject_checkin(db: Session, checkin_id: int, *, actor_id: int | None = None, reason: str | None = None) -> Checkin:
    def _work() -> Checkin:
        checkin, done = _load_pending_checkin(db, checkin_id, CHECKIN_REJECTED)
        if done:
            return checkin
        checkin.Status = CHECKIN_REJECTED
        checkin.ReviewedBy = actor_id
        checkin.ReviewedAt = datetime.now()
        if reason:
            checkin.Notes = (checkin.Notes + "\n" if checkin.Notes else "") + reason
        db.flush()
        recompute_status(db, checkin.GearID, actor_id)
        log_audit(db, "Checkin", checkin.CheckinID, "RejectCheckin", reason, user_id=actor_id)
        return checkin

    checkin = run_in_transaction(db, _work, operation="reject_checkin")
    REQUEST_LOGGER.info("Check-in rejected checkin_id=%s", checkin_id)
    return checkin


def list_requests(db: Session, *, status: str | None = None, requester_id: int | None = None) -> list[GearRequest]:
    stmt = select(GearRequest).order_by(GearRequest.CreatedDate.desc(), GearRequest.RequestID.desc())
    if status:
        stmt = stmt.where(GearRequest.Status == status)
    if requester_id is not None:
        stmt = stmt.where(GearRequest.RequesterID == requester_id)
    return list(db.execute(stmt).scalars().all())


def list_checkins(db: Session, *, status: str | None = None, user_id: int | None = None) -> list[Checkin]:
    """Newest first; ``status="Pending Admin Approval"`` is the admin review queue."""
    stmt = select(Checkin).order_by(Checkin.CreatedDate.desc(), Checkin.CheckinID.desc())
    if status:
        stmt = stmt.where(Checkin.Status == status)
    if user_id is not None:
        stmt = stmt.where(Checkin.UserID == user_id)
    return list(db.execute(stmt).scalars().all())


def serialize_checkin(checkin: Checkin) -> dict:
    return {
        "checkinID": checkin.CheckinID,
        "requestID": checkin.RequestID,
        "gearID": checkin.GearID,
        "userID": checkin.UserID,
        "quantity": checkin.Quantity,
        "condition": checkin.Condition,
        "notes": checkin.Notes,
        "status": checkin.Status,
        "reviewedBy": checkin.ReviewedBy,
        "reviewedAt": checkin.ReviewedAt,
        "createdDate": checkin.CreatedDate,
    }


def serialize_request(request: GearRequest) -> dict:
    lines = []
    for line in sorted(request.Lines, key=lambda row: row.GearID):
        lines.append(
            {
                "lineID": line.LineID,
                "gearID": line.GearID,
                "gearName": line.Gear.Name if line.Gear else None,
                "quantity": line.Quantity,
                "returnedQuantity": line.ReturnedQuantity,
                "outstandingQuantity": max(0, int(line.Quantity) - int(line.ReturnedQuantity)),
            }
        )
    return {
        "requestID": request.RequestID,
        "requesterID": request.RequesterID,
        "reason": request.Reason,
        "destination": request.Destination,
        "expectedDuration": request.ExpectedDuration,
        "status": request.Status,
        "dueDate": request.DueDate,
        "approvedBy": request.ApprovedBy,
        "approvedAt": request.ApprovedAt,
        "rejectionReason": request.RejectionReason,
        "checkedOutAt": request.CheckedOutAt,
        "returnedAt": request.ReturnedAt,
        "createdDate": request.CreatedDate,
        "updatedDate": request.UpdatedDate,
        "lines": lines,
    }
