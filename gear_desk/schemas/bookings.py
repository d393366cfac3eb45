from datetime import date, time
from typing import Optional

from pydantic import BaseModel, ConfigDict


class CreateVehicleDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    label: str
    plate: Optional[str] = None


class CreateCarBookingDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    dateOfUse: date
    timeSlot: Optional[str] = None
    startTime: Optional[time] = None
    endTime: Optional[time] = None
    employeeName: Optional[str] = None
    destination: Optional[str] = None
    purpose: Optional[str] = None


class AssignCarRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    vehicleID: int


class BookingDecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = None
