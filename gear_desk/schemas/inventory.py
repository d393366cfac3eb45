from typing import Optional

from pydantic import BaseModel, ConfigDict


class CreateGearDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    quantityTotal: int = 1
    category: Optional[str] = None
    serialNumber: Optional[str] = None
    description: Optional[str] = None


class QuantityRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    quantity: int


class AdjustTotalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    newTotal: int


class AdminStatusRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # None clears Under Repair / Retired back to the counter-derived status.
    status: Optional[str] = None
