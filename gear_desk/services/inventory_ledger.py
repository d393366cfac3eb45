from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from models.reservation_models import Checkin, Gear
from services.audit_service import log_audit
from services.errors import (
    InputValidationError,
    InsufficientAvailability,
    InvalidAdjustment,
    NotFoundError,
    OverReturn,
)
from services.status_projection import (
    ADMIN_STATUS_KEYS,
    ADMIN_STATUSES,
    check_counters,
    normalize_status,
    project_status,
    resolve_status,
)
from services.unit_of_work import run_in_transaction


LEDGER_LOGGER = logging.getLogger("gear_desk.ledger")

CHECKIN_PENDING = "Pending Admin Approval"
CHECKIN_COMPLETED = "Completed"
CHECKIN_REJECTED = "Rejected"


@dataclass
class LedgerResult:
    gear: Gear
    anomaly: OverReturn | None = None

    def to_dict(self) -> dict:
        return {
            "gear": serialize_gear(self.gear),
            "anomaly": self.anomaly.to_dict() if self.anomaly else None,
        }


def require_positive_quantity(raw, field: str = "quantity") -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise InputValidationError(f"{field} must be a whole number.", field=field)
    if raw <= 0:
        raise InputValidationError(f"{field} must be greater than zero.", field=field, value=raw)
    return raw


def _status_key(column):
    # SQL side of normalize_status, so legacy spellings like "under_repair" still match.
    key = func.lower(func.coalesce(column, ""))
    for separator in (" ", "_", "-"):
        key = func.replace(key, separator, "")
    return key


def has_pending_checkin(db: Session, gear_id: int) -> bool:
    count = db.execute(
        select(func.count(Checkin.CheckinID))
        .where(Checkin.GearID == gear_id)
        .where(Checkin.Status == CHECKIN_PENDING)
    ).scalar()
    return int(count or 0) > 0


def _lock_gear(db: Session, gear_id: int) -> Gear:
    # Touch the row first so the read below happens under the write lock on every backend.
    touched = db.execute(
        update(Gear)
        .where(Gear.GearID == gear_id)
        .values(UpdatedDate=datetime.now())
        .execution_options(synchronize_session=False)
    )
    if touched.rowcount != 1:
        raise NotFoundError(f"Gear {gear_id} not found.", gearID=gear_id)
    return db.get(Gear, gear_id, populate_existing=True, with_for_update=True)


def _apply_projection(db: Session, gear: Gear) -> str:
    gear.Status = resolve_status(
        gear.Status,
        int(gear.QuantityAvailable),
        int(gear.QuantityTotal),
        has_pending_checkin(db, gear.GearID),
    )
    gear.UpdatedDate = datetime.now()
    return gear.Status


def decrement_available(db: Session, gear_id: int, qty: int, actor_id: int | None = None) -> Gear:
    """Compare-and-decrement inside the caller's transaction; does not commit."""
    qty = require_positive_quantity(qty)
    result = db.execute(
        update(Gear)
        .where(Gear.GearID == gear_id)
        .where(Gear.QuantityAvailable >= qty)
        .where(_status_key(Gear.Status).notin_(sorted(ADMIN_STATUS_KEYS)))
        .values(QuantityAvailable=Gear.QuantityAvailable - qty, UpdatedDate=datetime.now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        gear = db.get(Gear, gear_id, populate_existing=True)
        if gear is None:
            raise NotFoundError(f"Gear {gear_id} not found.", gearID=gear_id)
        status = normalize_status(gear.Status)
        if status in ADMIN_STATUSES:
            raise InsufficientAvailability(
                f"{gear.Name} is {status} and cannot be checked out.",
                gearID=gear.GearID,
                gearName=gear.Name,
                requested=qty,
                available=0,
                status=status,
            )
        raise InsufficientAvailability(
            f"Not enough available units for {gear.Name}. Requested {qty}, available {gear.QuantityAvailable}.",
            gearID=gear.GearID,
            gearName=gear.Name,
            requested=qty,
            available=int(gear.QuantityAvailable or 0),
        )

    gear = db.get(Gear, gear_id, populate_existing=True, with_for_update=True)
    _apply_projection(db, gear)
    log_audit(
        db,
        "Gear",
        gear.GearID,
        "ApproveCheckout",
        f"-{qty} available={gear.QuantityAvailable}/{gear.QuantityTotal} status={gear.Status}",
        user_id=actor_id,
    )
    return gear


def increment_available(db: Session, gear_id: int, qty: int, actor_id: int | None = None) -> LedgerResult:
    """Add returned units, clamping at the total; does not commit."""
    qty = require_positive_quantity(qty)
    gear = _lock_gear(db, gear_id)
    available = int(gear.QuantityAvailable)
    total = int(gear.QuantityTotal)
    check_counters(available, total)

    accepted = min(qty, total - available)
    excess = qty - accepted
    gear.QuantityAvailable = available + accepted
    _apply_projection(db, gear)

    anomaly = None
    if excess > 0:
        anomaly = OverReturn(
            f"Return of {qty} unit(s) of {gear.Name} exceeds checked-out units; {excess} unit(s) ignored.",
            gearID=gear.GearID,
            gearName=gear.Name,
            returned=qty,
            accepted=accepted,
            excess=excess,
        )
        log_audit(db, "Gear", gear.GearID, "OverReturn", anomaly.message, user_id=actor_id)
        LEDGER_LOGGER.warning(
            "Over-return clamped gear_id=%s returned=%s accepted=%s excess=%s",
            gear.GearID,
            qty,
            accepted,
            excess,
        )
    log_audit(
        db,
        "Gear",
        gear.GearID,
        "RegisterReturn",
        f"+{accepted} available={gear.QuantityAvailable}/{total} status={gear.Status}",
        user_id=actor_id,
    )
    return LedgerResult(gear=gear, anomaly=anomaly)


def approve_checkout(db: Session, gear_id: int, qty: int, *, actor_id: int | None = None) -> LedgerResult:
    qty = require_positive_quantity(qty)
    try:
        gear = run_in_transaction(
            db,
            lambda: decrement_available(db, gear_id, qty, actor_id),
            operation="approve_checkout",
        )
    except InsufficientAvailability as exc:
        LEDGER_LOGGER.warning("Checkout refused gear_id=%s requested=%s detail=%s", gear_id, qty, exc.details)
        raise
    LEDGER_LOGGER.info(
        "Checkout approved gear_id=%s qty=%s available=%s status=%s",
        gear_id,
        qty,
        gear.QuantityAvailable,
        gear.Status,
    )
    return LedgerResult(gear=gear)


def register_return(db: Session, gear_id: int, qty: int, *, actor_id: int | None = None) -> LedgerResult:
    qty = require_positive_quantity(qty)
    result = run_in_transaction(
        db,
        lambda: increment_available(db, gear_id, qty, actor_id),
        operation="register_return",
    )
    LEDGER_LOGGER.info(
        "Return registered gear_id=%s qty=%s available=%s status=%s",
        gear_id,
        qty,
        result.gear.QuantityAvailable,
        result.gear.Status,
    )
    return result


def adjust_total(db: Session, gear_id: int, new_total: int, *, actor_id: int | None = None) -> LedgerResult:
    try:
        new_total = int(new_total)
    except (TypeError, ValueError) as exc:
        raise InputValidationError("newTotal must be an integer.", field="newTotal") from exc
    if new_total < 0:
        raise InputValidationError("newTotal cannot be negative.", field="newTotal", value=new_total)

    def _work() -> Gear:
        gear = _lock_gear(db, gear_id)
        available = int(gear.QuantityAvailable)
        total = int(gear.QuantityTotal)
        check_counters(available, total)
        checked_out = total - available
        if new_total < checked_out:
            raise InvalidAdjustment(
                f"Cannot reduce {gear.Name} to {new_total} unit(s); {checked_out} unit(s) are checked out.",
                gearID=gear.GearID,
                gearName=gear.Name,
                requestedTotal=new_total,
                checkedOut=checked_out,
            )
        gear.QuantityTotal = new_total
        gear.QuantityAvailable = new_total - checked_out
        _apply_projection(db, gear)
        log_audit(db, "Gear", gear.GearID, "AdjustTotal", f"total {total} -> {new_total}", user_id=actor_id)
        return gear

    gear = run_in_transaction(db, _work, operation="adjust_total")
    LEDGER_LOGGER.info("Total adjusted gear_id=%s total=%s available=%s", gear_id, gear.QuantityTotal, gear.QuantityAvailable)
    return LedgerResult(gear=gear)


def create_gear(
    db: Session,
    *,
    name: str,
    quantity_total: int = 1,
    category: str | None = None,
    serial_number: str | None = None,
    description: str | None = None,
    actor_id: int | None = None,
) -> Gear:
    name = (name or "").strip()
    if not name:
        raise InputValidationError("name is required.", field="name")
    if isinstance(quantity_total, bool) or not isinstance(quantity_total, int):
        raise InputValidationError("quantityTotal must be a whole number.", field="quantityTotal")
    if quantity_total < 0:
        raise InputValidationError("quantityTotal cannot be negative.", field="quantityTotal", value=quantity_total)

    def _work() -> Gear:
        gear = Gear(
            Name=name,
            Category=category,
            SerialNumber=serial_number,
            Description=description,
            QuantityTotal=quantity_total,
            QuantityAvailable=quantity_total,
            Status=resolve_status(None, quantity_total, quantity_total),
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
        )
        db.add(gear)
        db.flush()
        log_audit(db, "Gear", gear.GearID, "CreateGear", f"total={quantity_total}", user_id=actor_id)
        return gear

    gear = run_in_transaction(db, _work, operation="create_gear")
    LEDGER_LOGGER.info("Gear created gear_id=%s total=%s", gear.GearID, gear.QuantityTotal)
    return gear


def set_admin_status(db: Session, gear_id: int, status: str | None, *, actor_id: int | None = None) -> Gear:
    """Put gear under repair / retire it, or clear that back to the projected status (``status=None``)."""
    target = normalize_status(status) if status else None
    if target is not None and target not in ADMIN_STATUSES:
        raise InputValidationError(
            f"Administrative status must be one of {sorted(ADMIN_STATUSES)}.",
            field="status",
            value=status,
        )

    def _work() -> Gear:
        gear = _lock_gear(db, gear_id)
        previous = gear.Status
        if target is None:
            gear.Status = project_status(
                int(gear.QuantityAvailable),
                int(gear.QuantityTotal),
                has_pending_checkin(db, gear.GearID),
            )
            gear.UpdatedDate = datetime.now()
        else:
            gear.Status = target
            gear.UpdatedDate = datetime.now()
        log_audit(db, "Gear", gear.GearID, "SetAdminStatus", f"{previous} -> {gear.Status}", user_id=actor_id)
        return gear

    gear = run_in_transaction(db, _work, operation="set_admin_status")
    LEDGER_LOGGER.info("Administrative status gear_id=%s status=%s", gear_id, gear.Status)
    return gear


def recompute_status(db: Session, gear_id: int, actor_id: int | None = None) -> Gear:
    """Re-project one gear row inside the caller's transaction (check-in submit/reject)."""
    gear = _lock_gear(db, gear_id)
    check_counters(int(gear.QuantityAvailable), int(gear.QuantityTotal))
    previous = gear.Status
    _apply_projection(db, gear)
    if previous != gear.Status:
        log_audit(db, "Gear", gear.GearID, "RecomputeStatus", f"{previous} -> {gear.Status}", user_id=actor_id)
    return gear


def serialize_gear(gear: Gear) -> dict:
    total = int(gear.QuantityTotal or 0)
    available = int(gear.QuantityAvailable or 0)
    return {
        "gearID": gear.GearID,
        "name": gear.Name,
        "category": gear.Category,
        "serialNumber": gear.SerialNumber,
        "description": gear.Description,
        "quantityTotal": total,
        "quantityAvailable": available,
        "quantityCheckedOut": max(0, total - available),
        "status": gear.Status,
        "createdDate": gear.CreatedDate,
        "updatedDate": gear.UpdatedDate,
    }
