import os
import logging
from datetime import date

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.orm import Session

try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    pass

from db.base import Base
from db.deps import get_gear_db
from db.session import engine_gear
from models.reservation_models import CarBooking, Gear, Vehicle
from schemas.bookings import AssignCarRequest, BookingDecisionRequest, CreateCarBookingDto, CreateVehicleDto
from schemas.inventory import AdjustTotalRequest, AdminStatusRequest, CreateGearDto, QuantityRequest
from schemas.requests import CreateGearRequestDto, RejectRequest, SubmitCheckinRequest
from services.consistency_reconciler import reconcile, validate
from services.errors import NotFoundError, ReservationError
from services.inventory_ledger import (
    adjust_total,
    approve_checkout,
    create_gear,
    register_return,
    serialize_gear,
    set_admin_status,
)
from services.request_service import (
    approve_checkin,
    approve_request,
    create_request,
    get_request,
    list_checkins,
    list_requests,
    mark_checked_out,
    reject_checkin,
    reject_request,
    serialize_checkin,
    serialize_request,
    submit_checkin,
)
from services.vehicle_allocator import (
    approve_booking,
    assign_vehicle,
    cancel_booking,
    complete_booking,
    create_booking,
    create_vehicle,
    get_assignment,
    list_bookings,
    reject_booking,
    serialize_booking,
    serialize_vehicle,
)

API_LOGGER = logging.getLogger("gear_desk.api")
ADMIN_ROLE = "Admin"

app = FastAPI(title="Gear Desk")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)

if str(os.environ.get("GEAR_DESK_CREATE_TABLES", "false")).strip().lower() in {"1", "true", "yes", "on"}:
    Base.metadata.create_all(bind=engine_gear)


@app.exception_handler(ReservationError)
def handle_reservation_error(request: Request, exc: ReservationError):
    if exc.http_status >= 500:
        API_LOGGER.error("Request failed path=%s code=%s detail=%s", request.url.path, exc.code, exc.details)
    elif exc.http_status == 409:
        API_LOGGER.warning("Conflict path=%s code=%s detail=%s", request.url.path, exc.code, exc.details)
    body = exc.to_dict()
    body["detail"] = exc.message
    return JSONResponse(status_code=exc.http_status, content=body)


@app.exception_handler(Exception)
def handle_unexpected_error(request: Request, exc: Exception):
    API_LOGGER.exception("Unhandled error path=%s", request.url.path)
    return JSONResponse(status_code=500, content={"code": "internal_error", "detail": "Internal server error."})


def _require_actor_or_401(actor_id: str | None, actor_role: str | None) -> dict:
    raw = (actor_id or "").strip()
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value <= 0:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return {"userID": value, "role": (actor_role or "").strip()}


def _require_admin_or_403(actor_id: str | None, actor_role: str | None) -> dict:
    actor = _require_actor_or_401(actor_id, actor_role)
    if actor["role"] != ADMIN_ROLE:
        raise HTTPException(status_code=403, detail="Admin role required.")
    return actor


def _get_gear_or_404(db: Session, gear_id: int) -> Gear:
    gear = db.get(Gear, gear_id)
    if not gear:
        raise NotFoundError(f"Gear {gear_id} not found.", gearID=gear_id)
    return gear


def _get_booking_or_404(db: Session, booking_id: int) -> CarBooking:
    booking = db.get(CarBooking, booking_id)
    if not booking:
        raise NotFoundError(f"Booking {booking_id} not found.", bookingID=booking_id)
    return booking


def _booking_payload(db: Session, booking: CarBooking) -> dict:
    return serialize_booking(booking, get_assignment(db, booking.BookingID))


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_gear_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/gears")
def list_gears(
    status: str | None = Query(None),
    db: Session = Depends(get_gear_db),
):
    stmt = select(Gear).order_by(Gear.Name, Gear.GearID)
    if status:
        stmt = stmt.where(Gear.Status == status)
    return [serialize_gear(gear) for gear in db.execute(stmt).scalars().all()]


@app.get("/api/gears/{gear_id}")
def get_gear(gear_id: int, db: Session = Depends(get_gear_db)):
    return serialize_gear(_get_gear_or_404(db, gear_id))


@app.post("/api/gears")
def create_gear_route(
    payload: CreateGearDto,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_admin_or_403(x_actor_id, x_actor_role)
    gear = create_gear(
        db,
        name=payload.name,
        quantity_total=payload.quantityTotal,
        category=payload.category,
        serial_number=payload.serialNumber,
        description=payload.description,
        actor_id=actor["userID"],
    )
    return serialize_gear(gear)


@app.post("/api/gears/{gear_id}/approve-checkout")
def approve_checkout_route(
    gear_id: int,
    payload: QuantityRequest,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_admin_or_403(x_actor_id, x_actor_role)
    return approve_checkout(db, gear_id, payload.quantity, actor_id=actor["userID"]).to_dict()


@app.post("/api/gears/{gear_id}/return")
def register_return_route(
    gear_id: int,
    payload: QuantityRequest,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_admin_or_403(x_actor_id, x_actor_role)
    return register_return(db, gear_id, payload.quantity, actor_id=actor["userID"]).to_dict()


@app.post("/api/gears/{gear_id}/adjust-total")
def adjust_total_route(
    gear_id: int,
    payload: AdjustTotalRequest,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_admin_or_403(x_actor_id, x_actor_role)
    return adjust_total(db, gear_id, payload.newTotal, actor_id=actor["userID"]).to_dict()


@app.post("/api/gears/{gear_id}/admin-status")
def admin_status_route(
    gear_id: int,
    payload: AdminStatusRequest,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_admin_or_403(x_actor_id, x_actor_role)
    return serialize_gear(set_admin_status(db, gear_id, payload.status, actor_id=actor["userID"]))


@app.get("/api/requests")
def list_requests_route(
    status: str | None = Query(None),
    user_id: int | None = Query(None, alias="userId"),
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_actor_or_401(x_actor_id, x_actor_role)
    requester_id = user_id if actor["role"] == ADMIN_ROLE else actor["userID"]
    return [serialize_request(row) for row in list_requests(db, status=status, requester_id=requester_id)]


@app.post("/api/requests")
def create_request_route(
    payload: CreateGearRequestDto,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_actor_or_401(x_actor_id, x_actor_role)
    request_row = create_request(
        db,
        requester_id=actor["userID"],
        lines=[(line.gearID, line.quantity) for line in payload.lines],
        reason=payload.reason,
        destination=payload.destination,
        expected_duration=payload.expectedDuration,
    )
    return serialize_request(request_row)


@app.get("/api/requests/{request_id}")
def get_request_route(
    request_id: int,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_actor_or_401(x_actor_id, x_actor_role)
    request_row = get_request(db, request_id)
    if actor["role"] != ADMIN_ROLE and request_row.RequesterID != actor["userID"]:
        raise HTTPException(status_code=403, detail="Not allowed to view this request.")
    return serialize_request(request_row)


@app.post("/api/requests/{request_id}/approve")
def approve_request_route(
    request_id: int,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_admin_or_403(x_actor_id, x_actor_role)
    return serialize_request(approve_request(db, request_id, approver_id=actor["userID"]))


@app.post("/api/requests/{request_id}/reject")
def reject_request_route(
    request_id: int,
    payload: RejectRequest,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_admin_or_403(x_actor_id, x_actor_role)
    return serialize_request(reject_request(db, request_id, reason=payload.reason, actor_id=actor["userID"]))


@app.post("/api/requests/{request_id}/checkout")
def checkout_request_route(
    request_id: int,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_admin_or_403(x_actor_id, x_actor_role)
    return serialize_request(mark_checked_out(db, request_id, actor_id=actor["userID"]))


@app.post("/api/requests/{request_id}/checkins")
def submit_checkin_route(
    request_id: int,
    payload: SubmitCheckinRequest,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_actor_or_401(x_actor_id, x_actor_role)
    checkin = submit_checkin(
        db,
        request_id,
        payload.gearID,
        user_id=actor["userID"],
        quantity=payload.quantity,
        condition=payload.condition,
        notes=payload.notes,
    )
    return serialize_checkin(checkin)


@app.get("/api/checkins")
def list_checkins_route(
    status: str | None = Query(None),
    user_id: int | None = Query(None, alias="userId"),
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_actor_or_401(x_actor_id, x_actor_role)
    owner_id = user_id if actor["role"] == ADMIN_ROLE else actor["userID"]
    return [serialize_checkin(row) for row in list_checkins(db, status=status, user_id=owner_id)]


@app.post("/api/checkins/{checkin_id}/approve")
def approve_checkin_route(
    checkin_id: int,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_admin_or_403(x_actor_id, x_actor_role)
    return approve_checkin(db, checkin_id, actor_id=actor["userID"]).to_dict()


@app.post("/api/checkins/{checkin_id}/reject")
def reject_checkin_route(
    checkin_id: int,
    payload: RejectRequest,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_admin_or_403(x_actor_id, x_actor_role)
    return serialize_checkin(reject_checkin(db, checkin_id, actor_id=actor["userID"], reason=payload.reason))


@app.get("/api/vehicles")
def list_vehicles(db: Session = Depends(get_gear_db)):
    rows = db.execute(select(Vehicle).order_by(Vehicle.Label, Vehicle.VehicleID)).scalars().all()
    return [serialize_vehicle(vehicle) for vehicle in rows]


@app.post("/api/vehicles")
def create_vehicle_route(
    payload: CreateVehicleDto,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_admin_or_403(x_actor_id, x_actor_role)
    return serialize_vehicle(create_vehicle(db, label=payload.label, plate=payload.plate, actor_id=actor["userID"]))


@app.get("/api/car-bookings")
def list_car_bookings(
    status: str | None = Query(None),
    date_from: date | None = Query(None, alias="dateFrom"),
    date_to: date | None = Query(None, alias="dateTo"),
    user_id: int | None = Query(None, alias="userId"),
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_actor_or_401(x_actor_id, x_actor_role)
    requester_id = user_id if actor["role"] == ADMIN_ROLE else actor["userID"]
    bookings = list_bookings(db, status=status, requester_id=requester_id, date_from=date_from, date_to=date_to)
    return [_booking_payload(db, booking) for booking in bookings]


@app.post("/api/car-bookings")
def create_car_booking(
    payload: CreateCarBookingDto,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_actor_or_401(x_actor_id, x_actor_role)
    booking = create_booking(
        db,
        requester_id=actor["userID"],
        date_of_use=payload.dateOfUse,
        time_slot=payload.timeSlot,
        start_time=payload.startTime,
        end_time=payload.endTime,
        employee_name=payload.employeeName,
        destination=payload.destination,
        purpose=payload.purpose,
    )
    return _booking_payload(db, booking)


@app.get("/api/car-bookings/{booking_id}")
def get_car_booking(
    booking_id: int,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_actor_or_401(x_actor_id, x_actor_role)
    booking = _get_booking_or_404(db, booking_id)
    if actor["role"] != ADMIN_ROLE and booking.RequesterID != actor["userID"]:
        raise HTTPException(status_code=403, detail="Not allowed to view this booking.")
    return _booking_payload(db, booking)


@app.post("/api/car-bookings/{booking_id}/assign-car")
def assign_car(
    booking_id: int,
    payload: AssignCarRequest,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_admin_or_403(x_actor_id, x_actor_role)
    assign_vehicle(db, booking_id, payload.vehicleID, actor_id=actor["userID"])
    return _booking_payload(db, _get_booking_or_404(db, booking_id))


@app.post("/api/car-bookings/{booking_id}/approve")
def approve_car_booking(
    booking_id: int,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_admin_or_403(x_actor_id, x_actor_role)
    return _booking_payload(db, approve_booking(db, booking_id, actor_id=actor["userID"]))


@app.post("/api/car-bookings/{booking_id}/reject")
def reject_car_booking(
    booking_id: int,
    payload: BookingDecisionRequest,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_admin_or_403(x_actor_id, x_actor_role)
    return _booking_payload(db, reject_booking(db, booking_id, reason=payload.reason, actor_id=actor["userID"]))


@app.post("/api/car-bookings/{booking_id}/cancel")
def cancel_car_booking(
    booking_id: int,
    payload: BookingDecisionRequest,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_actor_or_401(x_actor_id, x_actor_role)
    booking = _get_booking_or_404(db, booking_id)
    if actor["role"] != ADMIN_ROLE and booking.RequesterID != actor["userID"]:
        raise HTTPException(status_code=403, detail="Only the requester or an admin can cancel this booking.")
    return _booking_payload(db, cancel_booking(db, booking_id, reason=payload.reason, actor_id=actor["userID"]))


@app.post("/api/car-bookings/{booking_id}/complete")
def complete_car_booking(
    booking_id: int,
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_admin_or_403(x_actor_id, x_actor_role)
    return _booking_payload(db, complete_booking(db, booking_id, actor_id=actor["userID"]))


@app.get("/api/admin/consistency")
def consistency_report(
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    _require_admin_or_403(x_actor_id, x_actor_role)
    return validate(db).to_dict()


@app.post("/api/admin/consistency/reconcile")
def consistency_reconcile(
    db: Session = Depends(get_gear_db),
    x_actor_id: str | None = Header(None, alias="X-Actor-ID"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_admin_or_403(x_actor_id, x_actor_role)
    report = reconcile(db, actor_id=actor["userID"])
    API_LOGGER.info("Reconcile requested actor=%s fixed=%s", actor["userID"], report.fixed_count)
    return report.to_dict()
