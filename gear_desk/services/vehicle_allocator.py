from __future__ import annotations

import logging
from datetime import date, datetime, time

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.reservation_models import CarAssignment, CarBooking, Vehicle
from services.audit_service import log_audit, queue_notification
from services.errors import (
    ConflictError,
    InputValidationError,
    NotFoundError,
    SlotConflict,
    VehicleLocked,
    VehicleUnavailable,
)
from services.unit_of_work import run_in_transaction


ALLOCATOR_LOGGER = logging.getLogger("gear_desk.allocator")

VEHICLE_ACTIVE = "Active"
VEHICLE_CHECKED_OUT = "Checked Out"
VEHICLE_RETIRED = "Retired"

BOOKING_PENDING = "Pending"
BOOKING_APPROVED = "Approved"
BOOKING_REJECTED = "Rejected"
BOOKING_CANCELLED = "Cancelled"
BOOKING_COMPLETED = "Completed"
ASSIGNABLE_BOOKING_STATES = {BOOKING_PENDING, BOOKING_APPROVED}


def parse_time_slot(label: str | None) -> tuple[time, time] | None:
    """Parse ``"09:00-12:00"`` style labels. Returns None for free-form labels like ``"Morning"``."""
    raw = (label or "").strip()
    if "-" not in raw:
        return None
    start_raw, _, end_raw = raw.partition("-")
    try:
        start = datetime.strptime(start_raw.strip(), "%H:%M").time()
        end = datetime.strptime(end_raw.strip(), "%H:%M").time()
    except ValueError:
        return None
    if end <= start:
        return None
    return start, end


def _slot_window(booking: CarBooking) -> tuple[time, time] | None:
    if booking.StartTime and booking.EndTime:
        return booking.StartTime, booking.EndTime
    return parse_time_slot(booking.TimeSlot)


def same_slot(first: CarBooking, second: CarBooking) -> bool:
    if first.DateOfUse != second.DateOfUse:
        return False
    first_window = _slot_window(first)
    second_window = _slot_window(second)
    if first_window and second_window:
        return first_window[0] < second_window[1] and second_window[0] < first_window[1]
    return (first.TimeSlot or "").strip() == (second.TimeSlot or "").strip()


def _lock_vehicle(db: Session, vehicle_id: int) -> Vehicle:
    # Serializes every allocation decision for this vehicle until commit.
    touched = db.execute(
        update(Vehicle)
        .where(Vehicle.VehicleID == vehicle_id)
        .values(UpdatedDate=datetime.now())
        .execution_options(synchronize_session=False)
    )
    if touched.rowcount != 1:
        raise NotFoundError(f"Vehicle {vehicle_id} not found.", vehicleID=vehicle_id)
    return db.get(Vehicle, vehicle_id, populate_existing=True, with_for_update=True)


def _load_booking(db: Session, booking_id: int) -> CarBooking:
    booking = db.get(CarBooking, booking_id, populate_existing=True)
    if not booking:
        raise NotFoundError(f"Booking {booking_id} not found.", bookingID=booking_id)
    return booking


def get_assignment(db: Session, booking_id: int) -> CarAssignment | None:
    return db.execute(
        select(CarAssignment).where(CarAssignment.BookingID == booking_id)
    ).scalars().first()


def _ensure_vehicle_free(db: Session, vehicle: Vehicle, booking: CarBooking) -> None:
    rows = db.execute(
        select(CarBooking)
        .join(CarAssignment, CarAssignment.BookingID == CarBooking.BookingID)
        .where(CarAssignment.VehicleID == vehicle.VehicleID)
        .where(CarBooking.BookingID != booking.BookingID)
        .order_by(CarBooking.DateOfUse, CarBooking.BookingID)
        .execution_options(populate_existing=True)
    ).scalars().all()
    holders = [row for row in rows if row.Status == BOOKING_APPROVED]

    for holder in holders:
        if same_slot(holder, booking):
            raise SlotConflict(
                f"{vehicle.Label} is already assigned to another approved booking for "
                f"{holder.DateOfUse.isoformat()} {holder.TimeSlot or ''}".rstrip() + ".",
                vehicleID=vehicle.VehicleID,
                vehicleLabel=vehicle.Label,
                conflictingBookingID=holder.BookingID,
                dateOfUse=holder.DateOfUse.isoformat(),
                timeSlot=holder.TimeSlot,
            )
    if holders:
        holder = holders[0]
        raise VehicleLocked(
            f"{vehicle.Label} is currently checked out by another user. It must be returned "
            "(booking marked as Completed) before it can be assigned to a new booking.",
            vehicleID=vehicle.VehicleID,
            vehicleLabel=vehicle.Label,
            conflictingBookingID=holder.BookingID,
            dateOfUse=holder.DateOfUse.isoformat(),
            timeSlot=holder.TimeSlot,
        )


def _flush_assignment(db: Session, vehicle: Vehicle, booking: CarBooking) -> None:
    try:
        db.flush()
    except IntegrityError as exc:
        # Another transaction took the vehicle between our check and our write.
        if booking.Status == BOOKING_APPROVED:
            raise VehicleLocked(
                f"{vehicle.Label} was just assigned to another approved booking.",
                vehicleID=vehicle.VehicleID,
                vehicleLabel=vehicle.Label,
                bookingID=booking.BookingID,
            ) from exc
        raise ConflictError(
            f"Booking {booking.BookingID} was assigned concurrently; reload and retry.",
            bookingID=booking.BookingID,
        ) from exc


def _release_vehicle(db: Session, vehicle_id: int | None) -> None:
    if not vehicle_id:
        return
    vehicle = db.get(Vehicle, vehicle_id, populate_existing=True)
    if not vehicle or vehicle.Status != VEHICLE_CHECKED_OUT:
        return
    still_held = db.execute(
        select(CarAssignment.AssignmentID).where(CarAssignment.LockVehicleID == vehicle_id)
    ).first()
    if not still_held:
        vehicle.Status = VEHICLE_ACTIVE
        vehicle.UpdatedDate = datetime.now()


def assign_vehicle(db: Session, booking_id: int, vehicle_id: int, *, actor_id: int | None = None) -> CarAssignment:
    """Reserve ``vehicle_id`` for a booking.

    A vehicle held by any other Approved booking is refused: ``SlotConflict`` when
    that booking uses the same date and time slot, ``VehicleLocked`` otherwise.
    The vehicle stays locked until the holding booking is Completed, which
    models physical custody rather than pure time-slot overlap.
    """

    def _work() -> CarAssignment:
        vehicle = _lock_vehicle(db, vehicle_id)
        if vehicle.Status == VEHICLE_RETIRED:
            raise VehicleUnavailable(
                f"{vehicle.Label} is retired and cannot be assigned.",
                vehicleID=vehicle.VehicleID,
                vehicleLabel=vehicle.Label,
                status=vehicle.Status,
            )
        booking = _load_booking(db, booking_id)
        if booking.Status not in ASSIGNABLE_BOOKING_STATES:
            raise InputValidationError(
                f"Cannot assign a vehicle to a {booking.Status} booking.",
                bookingID=booking.BookingID,
                status=booking.Status,
            )
        _ensure_vehicle_free(db, vehicle, booking)

        assignment = get_assignment(db, booking.BookingID)
        previous_vehicle_id = None
        if assignment is None:
            assignment = CarAssignment(BookingID=booking.BookingID, VehicleID=vehicle.VehicleID)
            db.add(assignment)
        else:
            previous_vehicle_id = assignment.VehicleID
            assignment.VehicleID = vehicle.VehicleID
        assignment.LockVehicleID = vehicle.VehicleID if booking.Status == BOOKING_APPROVED else None
        assignment.AssignedBy = actor_id
        assignment.AssignedDate = datetime.now()
        _flush_assignment(db, vehicle, booking)

        if booking.Status == BOOKING_APPROVED:
            vehicle.Status = VEHICLE_CHECKED_OUT
        if previous_vehicle_id and previous_vehicle_id != vehicle.VehicleID:
            _release_vehicle(db, previous_vehicle_id)
        booking.UpdatedDate = datetime.now()
        log_audit(
            db,
            "CarBooking",
            booking.BookingID,
            "AssignVehicle",
            f"vehicle={vehicle.VehicleID} previous={previous_vehicle_id}",
            user_id=actor_id,
        )
        return assignment

    try:
        assignment = run_in_transaction(db, _work, operation="assign_vehicle")
    except ConflictError as exc:
        ALLOCATOR_LOGGER.warning(
            "Assignment refused booking_id=%s vehicle_id=%s code=%s detail=%s",
            booking_id,
            vehicle_id,
            exc.code,
            exc.details,
        )
        raise
    ALLOCATOR_LOGGER.info("Vehicle assigned booking_id=%s vehicle_id=%s", booking_id, vehicle_id)
    return assignment


def unassign_vehicle(db: Session, booking_id: int, *, actor_id: int | None = None) -> None:
    def _work() -> None:
        booking = _load_booking(db, booking_id)
        if booking.Status != BOOKING_PENDING:
            raise InputValidationError(
                "Only pending bookings can be unassigned; cancel or complete approved bookings.",
                bookingID=booking.BookingID,
                status=booking.Status,
            )
        assignment = get_assignment(db, booking.BookingID)
        if assignment is None:
            return
        db.delete(assignment)
        log_audit(db, "CarBooking", booking.BookingID, "UnassignVehicle", f"vehicle={assignment.VehicleID}", user_id=actor_id)

    run_in_transaction(db, _work, operation="unassign_vehicle")


def create_booking(
    db: Session,
    *,
    requester_id: int,
    date_of_use: date,
    time_slot: str | None = None,
    start_time: time | None = None,
    end_time: time | None = None,
    employee_name: str | None = None,
    destination: str | None = None,
    purpose: str | None = None,
) -> CarBooking:
    label = (time_slot or "").strip() or None
    if (start_time is None) != (end_time is None):
        raise InputValidationError("startTime and endTime must be given together.", field="startTime")
    if start_time is not None and end_time <= start_time:
        raise InputValidationError("endTime must be after startTime.", field="endTime")
    if label is None and start_time is None:
        raise InputValidationError("Either timeSlot or startTime/endTime is required.", field="timeSlot")
    if label is None:
        label = f"{start_time.strftime('%H:%M')}-{end_time.strftime('%H:%M')}"

    def _work() -> CarBooking:
        booking = CarBooking(
            RequesterID=requester_id,
            EmployeeName=employee_name,
            DateOfUse=date_of_use,
            TimeSlot=label,
            StartTime=start_time,
            EndTime=end_time,
            Destination=destination,
            Purpose=purpose,
            Status=BOOKING_PENDING,
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
        )
        db.add(booking)
        db.flush()
        log_audit(db, "CarBooking", booking.BookingID, "CreateBooking", f"{date_of_use.isoformat()} {label}", user_id=requester_id)
        return booking

    booking = run_in_transaction(db, _work, operation="create_booking")
    ALLOCATOR_LOGGER.info("Booking created booking_id=%s date=%s slot=%s", booking.BookingID, booking.DateOfUse, booking.TimeSlot)
    return booking


def approve_booking(db: Session, booking_id: int, *, actor_id: int | None = None) -> CarBooking:
    def _work() -> CarBooking:
        booking = _load_booking(db, booking_id)
        if booking.Status == BOOKING_APPROVED:
            return booking
        if booking.Status != BOOKING_PENDING:
            raise InputValidationError(
                "Booking is not pending decision.",
                bookingID=booking.BookingID,
                status=booking.Status,
            )
        assignment = get_assignment(db, booking.BookingID)
        if assignment is None:
            raise InputValidationError("Assign a car before approval.", bookingID=booking.BookingID)

        vehicle = _lock_vehicle(db, assignment.VehicleID)
        if vehicle.Status == VEHICLE_RETIRED:
            raise VehicleUnavailable(
                f"{vehicle.Label} is retired; assign another vehicle before approval.",
                vehicleID=vehicle.VehicleID,
                vehicleLabel=vehicle.Label,
                status=vehicle.Status,
            )
        _ensure_vehicle_free(db, vehicle, booking)

        booking.Status = BOOKING_APPROVED
        booking.ApprovedBy = actor_id
        booking.ApprovedAt = datetime.now()
        booking.UpdatedDate = datetime.now()
        assignment.LockVehicleID = vehicle.VehicleID
        _flush_assignment(db, vehicle, booking)
        vehicle.Status = VEHICLE_CHECKED_OUT
        vehicle.UpdatedDate = datetime.now()

        queue_notification(
            db,
            user_id=booking.RequesterID,
            entity_type="CarBooking",
            entity_id=booking.BookingID,
            notification_type="CarBookingApproved",
            payload=f"Your car booking for {booking.DateOfUse.isoformat()} ({booking.TimeSlot}) has been approved.",
        )
        log_audit(db, "CarBooking", booking.BookingID, "ApproveBooking", f"vehicle={vehicle.VehicleID}", user_id=actor_id)
        return booking

    try:
        booking = run_in_transaction(db, _work, operation="approve_booking")
    except ConflictError as exc:
        ALLOCATOR_LOGGER.warning("Approval refused booking_id=%s code=%s detail=%s", booking_id, exc.code, exc.details)
        raise
    ALLOCATOR_LOGGER.info("Booking approved booking_id=%s", booking_id)
    return booking


def _close_booking(
    db: Session,
    booking_id: int,
    *,
    target: str,
    allowed: set[str],
    actor_id: int | None,
    reason: str | None,
) -> CarBooking:
    booking = _load_booking(db, booking_id)
    if booking.Status == target:
        return booking
    if booking.Status not in allowed:
        raise InputValidationError(
            f"Cannot move booking with status {booking.Status} to {target}.",
            bookingID=booking.BookingID,
            status=booking.Status,
        )
    assignment = get_assignment(db, booking.BookingID)
    vehicle_id = assignment.VehicleID if assignment else None

    booking.Status = target
    booking.UpdatedDate = datetime.now()
    if target == BOOKING_COMPLETED:
        booking.CompletedAt = datetime.now()
        if assignment is not None:
            # Assignment kept as history; only the custody lock is released.
            assignment.LockVehicleID = None
    elif assignment is not None:
        db.delete(assignment)
    if target == BOOKING_CANCELLED:
        booking.CancelledBy = actor_id
        booking.CancelledAt = datetime.now()
        booking.CancelledReason = reason
    if target == BOOKING_REJECTED:
        booking.RejectedBy = actor_id
        booking.RejectionReason = reason
    db.flush()
    _release_vehicle(db, vehicle_id)

    log_audit(db, "CarBooking", booking.BookingID, target, reason or f"vehicle={vehicle_id}", user_id=actor_id)
    if target in {BOOKING_REJECTED, BOOKING_CANCELLED}:
        suffix = f": {reason}" if reason else "."
        queue_notification(
            db,
            user_id=booking.RequesterID,
            entity_type="CarBooking",
            entity_id=booking.BookingID,
            notification_type=f"CarBooking{target}",
            payload=f"Your car booking for {booking.DateOfUse.isoformat()} ({booking.TimeSlot}) was {target.lower()}{suffix}",
        )
    return booking


def reject_booking(db: Session, booking_id: int, *, reason: str | None = None, actor_id: int | None = None) -> CarBooking:
    booking = run_in_transaction(
        db,
        lambda: _close_booking(
            db,
            booking_id,
            target=BOOKING_REJECTED,
            allowed={BOOKING_PENDING, BOOKING_APPROVED},
            actor_id=actor_id,
            reason=reason,
        ),
        operation="reject_booking",
    )
    ALLOCATOR_LOGGER.info("Booking rejected booking_id=%s", booking_id)
    return booking


def cancel_booking(db: Session, booking_id: int, *, reason: str | None = None, actor_id: int | None = None) -> CarBooking:
    booking = run_in_transaction(
        db,
        lambda: _close_booking(
            db,
            booking_id,
            target=BOOKING_CANCELLED,
            allowed={BOOKING_PENDING, BOOKING_APPROVED},
            actor_id=actor_id,
            reason=reason,
        ),
        operation="cancel_booking",
    )
    ALLOCATOR_LOGGER.info("Booking cancelled booking_id=%s", booking_id)
    return booking


def complete_booking(db: Session, booking_id: int, *, actor_id: int | None = None) -> CarBooking:
    booking = run_in_transaction(
        db,
        lambda: _close_booking(
            db,
            booking_id,
            target=BOOKING_COMPLETED,
            allowed={BOOKING_APPROVED},
            actor_id=actor_id,
            reason=None,
        ),
        operation="complete_booking",
    )
    ALLOCATOR_LOGGER.info("Booking completed booking_id=%s", booking_id)
    return booking


def list_bookings(
    db: Session,
    *,
    status: str | None = None,
    requester_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
) -> list[CarBooking]:
    if date_from and date_to and date_from > date_to:
        raise InputValidationError("dateFrom must not be after dateTo.", dateFrom=date_from.isoformat(), dateTo=date_to.isoformat())
    stmt = select(CarBooking).order_by(CarBooking.DateOfUse, CarBooking.BookingID)
    if status:
        stmt = stmt.where(CarBooking.Status == status)
    if requester_id is not None:
        stmt = stmt.where(CarBooking.RequesterID == requester_id)
    if date_from:
        stmt = stmt.where(CarBooking.DateOfUse >= date_from)
    if date_to:
        stmt = stmt.where(CarBooking.DateOfUse <= date_to)
    return list(db.execute(stmt).scalars().all())


def create_vehicle(db: Session, *, label: str, plate: str | None = None, actor_id: int | None = None) -> Vehicle:
    label = (label or "").strip()
    if not label:
        raise InputValidationError("label is required.", field="label")

    def _work() -> Vehicle:
        vehicle = Vehicle(
            Label=label,
            Plate=plate,
            Status=VEHICLE_ACTIVE,
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
        )
        db.add(vehicle)
        db.flush()
        log_audit(db, "Vehicle", vehicle.VehicleID, "CreateVehicle", label, user_id=actor_id)
        return vehicle

    return run_in_transaction(db, _work, operation="create_vehicle")


def retire_vehicle(db: Session, vehicle_id: int, *, actor_id: int | None = None) -> Vehicle:
    def _work() -> Vehicle:
        vehicle = _lock_vehicle(db, vehicle_id)
        held_by = db.execute(
            select(CarAssignment.BookingID).where(CarAssignment.LockVehicleID == vehicle.VehicleID)
        ).scalars().first()
        if held_by is not None:
            raise VehicleLocked(
                f"{vehicle.Label} is still checked out; complete booking {held_by} before retiring it.",
                vehicleID=vehicle.VehicleID,
                vehicleLabel=vehicle.Label,
                conflictingBookingID=held_by,
            )
        vehicle.Status = VEHICLE_RETIRED
        log_audit(db, "Vehicle", vehicle.VehicleID, "RetireVehicle", None, user_id=actor_id)
        return vehicle

    return run_in_transaction(db, _work, operation="retire_vehicle")


def serialize_vehicle(vehicle: Vehicle) -> dict:
    return {
        "vehicleID": vehicle.VehicleID,
        "label": vehicle.Label,
        "plate": vehicle.Plate,
        "status": vehicle.Status,
        "createdDate": vehicle.CreatedDate,
        "updatedDate": vehicle.UpdatedDate,
    }


def serialize_booking(booking: CarBooking, assignment: CarAssignment | None) -> dict:
    return {
        "bookingID": booking.BookingID,
        "requesterID": booking.RequesterID,
        "employeeName": booking.EmployeeName,
        "dateOfUse": booking.DateOfUse,
        "timeSlot": booking.TimeSlot,
        "startTime": booking.StartTime,
        "endTime": booking.EndTime,
        "destination": booking.Destination,
        "purpose": booking.Purpose,
        "status": booking.Status,
        "approvedBy": booking.ApprovedBy,
        "approvedAt": booking.ApprovedAt,
        "rejectionReason": booking.RejectionReason,
        "cancelledReason": booking.CancelledReason,
        "completedAt": booking.CompletedAt,
        "vehicleID": assignment.VehicleID if assignment else None,
        "createdDate": booking.CreatedDate,
        "updatedDate": booking.UpdatedDate,
    }
