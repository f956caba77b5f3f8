from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from app.models.enums import DeficiencyType
from app.schemas import ResponseBase


class DeficiencyCreate(BaseModel):
    borrowId: str = Field(..., description="借用紀錄ID")
    type: DeficiencyType = Field(..., description="缺失類型")
    description: Optional[str] = Field(None, description="缺失說明")


class DeficiencyResolve(BaseModel):
    resolutionNotes: Optional[str] = Field(None, description="處理說明")


# 回應模型
class Deficiency(BaseModel):
    deficiencyId: str = Field(..., description="缺失ID")
    borrowId: str = Field(..., description="借用紀錄ID")
    type: str = Field(..., description="缺失類型")
    description: Optional[str] = Field(None, description="缺失說明")
    status: str = Field(..., description="處理狀態")
    reportedById: Optional[str] = Field(None, description="登記人員ID")
    resolvedById: Optional[str] = Field(None, description="處理人員ID")
    resolutionNotes: Optional[str] = Field(None, description="處理說明")
    createdAt: datetime = Field(..., description="建立時間")
    resolvedAt: Optional[datetime] = Field(None, description="處理時間")


class DeficiencyResponse(ResponseBase):
    data: Deficiency


class DeficiencyList(ResponseBase):
    data: dict = Field(
        ...,
        json_schema_extra={"example": {
            "deficiencies": [
                {
                    "deficiencyId": "d_001",
                    "borrowId": "b6f1...",
                    "type": "DAMAGE",
                    "description": "鏡頭刮傷",
                    "status": "UNRESOLVED",
                    "createdAt": "2025-05-02T10:00:00",
                }
            ]
        }},
    )
