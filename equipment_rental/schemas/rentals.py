from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, field_validator


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class CreateReservationItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    quantity: int = 1


class CreateReservationDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    userID: Optional[int] = None
    purpose: str
    startDate: datetime
    endDate: datetime
    notes: Optional[str] = None
    items: List[CreateReservationItemDto] = []

    @field_validator("startDate", "endDate")
    @classmethod
    def _normalize_dates(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class DecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    expectedVersion: Optional[int] = None
    reason: Optional[str] = None


class ItemConditionDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reservationItemID: int
    condition: str
    notes: Optional[str] = None


class HandoverRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    expectedVersion: Optional[int] = None
    items: List[ItemConditionDto] = []
    notes: Optional[str] = None
