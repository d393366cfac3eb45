from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class RequestLineDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    gearID: int
    quantity: int = 1


class CreateGearRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    lines: List[RequestLineDto] = []
    reason: Optional[str] = None
    destination: Optional[str] = None
    expectedDuration: Optional[str] = None


class RejectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = None


class SubmitCheckinRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    gearID: int
    quantity: int = 1
    condition: Optional[str] = None
    notes: Optional[str] = None
