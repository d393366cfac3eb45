from __future__ import annotations

from typing import Any


class ReservationError(Exception):
    """Base class for every failure the reservation engine reports to callers."""

    code = "reservation_error"
    http_status = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = {key: value for key, value in details.items() if value is not None}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


class InputValidationError(ReservationError):
    code = "validation_error"
    http_status = 400


class NotFoundError(ReservationError):
    code = "not_found"
    http_status = 404


class ConflictError(ReservationError):
    """Expected business-rule violation. The details name the contested resource."""

    code = "conflict"
    http_status = 409


class InsufficientAvailability(ConflictError):
    code = "insufficient_availability"


class OverReturn(ConflictError):
    code = "over_return"


class InvalidAdjustment(ConflictError):
    code = "invalid_adjustment"


class VehicleUnavailable(ConflictError):
    code = "vehicle_unavailable"


class SlotConflict(ConflictError):
    code = "slot_conflict"


class VehicleLocked(ConflictError):
    code = "vehicle_locked"


class DataIntegrityError(ReservationError):
    """Counters outside their physical bounds. Needs manual review, never auto-corrected."""

    code = "data_integrity"
    http_status = 409


class TransientStoreError(ReservationError):
    code = "transient_store_error"
    http_status = 503
