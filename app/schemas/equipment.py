from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from app.models.enums import EquipmentCategory, EquipmentStatus
from app.schemas import ResponseBase


# 器材基礎模型
class EquipmentBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="器材名稱")
    category: EquipmentCategory = Field(EquipmentCategory.OTHER, description="器材類別")
    stockCount: int = Field(1, ge=0, description="庫存數量")
    isDataGenerating: bool = Field(False, description="是否會產生資料檔案")
    condition: Optional[str] = Field(None, description="器材狀況")
    description: Optional[str] = Field(None, description="器材描述")
    purchaseCost: Optional[Decimal] = Field(None, ge=0, description="購入成本")


# 請求模型
class EquipmentCreate(EquipmentBase):
    status: EquipmentStatus = Field(EquipmentStatus.AVAILABLE, description="人工設定狀態")


class EquipmentUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100, description="器材名稱")
    category: Optional[EquipmentCategory] = Field(None, description="器材類別")
    stockCount: Optional[int] = Field(None, ge=0, description="庫存數量")
    status: Optional[EquipmentStatus] = Field(None, description="人工設定狀態")
    isDataGenerating: Optional[bool] = Field(None, description="是否會產生資料檔案")
    condition: Optional[str] = Field(None, description="器材狀況")
    description: Optional[str] = Field(None, description="器材描述")
    purchaseCost: Optional[Decimal] = Field(None, ge=0, description="購入成本")


class MaintenanceEntryCreate(BaseModel):
    notes: str = Field(..., min_length=1, description="維修保養說明")
    type: str = Field("MAINTENANCE", description="紀錄類型")
    markUnderMaintenance: bool = Field(False, description="是否同時將器材設為維修中")


class NoteCreate(BaseModel):
    text: str = Field(..., min_length=1, description="備註內容")


# 回應模型
class EquipmentResponse(ResponseBase):
    data: dict = Field(
        ...,
        json_schema_extra={"example": {
            "equipmentId": "eq_001",
            "name": "示波器",
            "category": "INSTRUMENTS",
            "stockCount": 2,
            "status": "AVAILABLE",
            "storedStatus": "AVAILABLE",
            "isDataGenerating": True,
            "createdAt": "2025-01-15T08:30:00",
        }},
    )


class EquipmentList(ResponseBase):
    data: dict = Field(
        ...,
        json_schema_extra={"example": {"equipments": []}},
    )


class AvailabilityResponse(ResponseBase):
    data: dict = Field(
        ...,
        json_schema_extra={"example": {
            "equipmentId": "eq_001",
            "start": "2025-05-01T09:00:00",
            "end": "2025-05-01T12:00:00",
            "available": True,
        }},
    )


class UnavailableDatesResponse(ResponseBase):
    data: dict = Field(
        ...,
        json_schema_extra={"example": {"equipmentId": "eq_001", "dates": ["2025-05-01", "2025-05-02"]}},
    )


class ActivityLogResponse(ResponseBase):
    data: dict = Field(
        ...,
        json_schema_extra={"example": {
            "equipmentId": "eq_001",
            "entries": [
                {
                    "timestamp": "2025-05-01T09:05:00",
                    "type": "BORROW_CHECKOUT",
                    "details": "王小明 借出，預計歸還 2025-05-01 12:00",
                    "user": "王小明",
                    "borrowId": "b6f1...",
                }
            ],
        }},
    )


class ContactHoursResponse(ResponseBase):
    data: dict = Field(
        ...,
        json_schema_extra={"example": {"equipmentId": "eq_001", "totalSeconds": 5700, "formatted": "1h 35m"}},
    )


class EquipmentDeleteResponse(ResponseBase):
    data: dict = Field(
        ...,
        json_schema_extra={"example": {"equipmentId": "eq_003", "deleted": True}},
    )
