from datetime import date
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class EquipmentUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentName: Optional[str] = None
    description: Optional[str] = None
    categoryID: Optional[int] = None
    totalQuantity: Optional[int] = None
    condition: Optional[str] = None
    status: Optional[str] = None
    specifications: Optional[Dict[str, Any]] = None
    imagePath: Optional[str] = None
    lastMaintenance: Optional[date] = None


class CategoryCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    categoryName: str
    description: Optional[str] = None


class DependencyUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    childEquipmentID: int
    dependencyType: Literal["required", "optional", "recommended"] = "required"
    quantity: int = Field(1, ge=1)
