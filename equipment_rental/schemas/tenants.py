from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class UserCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: str
    fullName: str
    department: Optional[str] = None
    role: str = "student"
    password: Optional[str] = None


class UserUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    fullName: Optional[str] = None
    department: Optional[str] = None
    role: Optional[str] = None
    isActive: Optional[bool] = None
    password: Optional[str] = None


class TenantSettingsUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    skipApproval: Optional[bool] = None
    graceMinutes: Optional[int] = Field(default=None, ge=0)
    availabilityDependencyTypes: Optional[List[str]] = None
    maxReservationDays: Optional[int] = Field(default=None, ge=0)
    holdPendingReservations: Optional[bool] = None
