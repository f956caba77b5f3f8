from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from app.models.enums import DataRequestStatus, DeficiencyType, ReservationType
from app.schemas import ResponseBase
from app.services.activity_log import to_naive_utc
from app.services.lifecycle import TransitionPayload


# 借用申請模型
class BorrowCreate(BaseModel):
    equipmentIds: List[str] = Field(..., min_length=1, description="借用器材ID清單")
    requestedStartTime: datetime = Field(..., description="預計開始時間")
    requestedEndTime: datetime = Field(..., description="預計結束時間")
    classId: Optional[str] = Field(None, description="課程ID")
    groupMateIds: List[str] = Field(default_factory=list, description="同組成員ID")
    reservationType: ReservationType = Field(ReservationType.OUT_OF_CLASS, description="預約類型")

    @field_validator("requestedStartTime", "requestedEndTime")
    def normalize_timezone(cls, v):
        return to_naive_utc(v)

    @field_validator("requestedEndTime")
    def end_time_must_be_after_start_time(cls, v, values):
        if "requestedStartTime" in values.data and v <= values.data["requestedStartTime"]:
            raise ValueError("結束時間必須晚於開始時間")
        return v


class DeficiencyIn(BaseModel):
    type: DeficiencyType = Field(..., description="缺失類型")
    description: Optional[str] = Field(None, description="缺失說明")


# 狀態轉換附加資料，單筆與群組操作共用
class BorrowTransitionIn(BaseModel):
    approvedStartTime: Optional[datetime] = Field(None, description="核准開始時間 (預設為申請時段)")
    approvedEndTime: Optional[datetime] = Field(None, description="核准結束時間 (預設為申請時段)")
    returnCondition: Optional[str] = Field(None, description="歸還狀況")
    returnRemarks: Optional[str] = Field(None, description="歸還備註")
    requestData: bool = Field(False, description="是否申請器材產生的資料")
    dataRequestRemarks: Optional[str] = Field(None, description="資料請求備註")
    requestedEquipmentIds: List[str] = Field(default_factory=list, description="要取得資料的器材ID")
    deficiencies: List[DeficiencyIn] = Field(default_factory=list, description="確認歸還時登記的缺失")
    notes: Optional[str] = Field(None, description="操作備註")

    @field_validator("approvedStartTime", "approvedEndTime")
    def normalize_timezone(cls, v):
        return to_naive_utc(v) if v is not None else v

    @field_validator("approvedEndTime")
    def approved_end_must_be_after_start(cls, v, values):
        start = values.data.get("approvedStartTime")
        if v is not None and start is not None and v <= start:
            raise ValueError("核准結束時間必須晚於開始時間")
        return v

    def to_payload(self) -> TransitionPayload:
        return TransitionPayload(
            approved_start_time=self.approvedStartTime,
            approved_end_time=self.approvedEndTime,
            return_condition=self.returnCondition,
            return_remarks=self.returnRemarks,
            request_data=self.requestData,
            data_request_remarks=self.dataRequestRemarks,
            requested_equipment_ids=list(self.requestedEquipmentIds),
            notes=self.notes,
        )


class DataRequestUpdate(BaseModel):
    dataRequestStatus: DataRequestStatus = Field(..., description="資料請求狀態")
    dataRequestRemarks: Optional[str] = Field(None, description="處理備註")
    dataFiles: Optional[List[str]] = Field(None, description="已提供的資料檔案")


# 回應模型
class BorrowCreateResponse(ResponseBase):
    data: dict = Field(
        ...,
        json_schema_extra={"example": {
            "borrowGroupId": "5b0c1e9a-2f7d-4c8e-9d11-6a3e2b7f0c44",
            "borrowIds": ["b6f1...", "c8a2..."],
            "status": "PENDING",
            "requestSubmissionTime": "2025-04-27T10:30:45",
        }},
    )


class BorrowResponse(ResponseBase):
    data: dict = Field(
        ...,
        json_schema_extra={"example": {
            "borrowId": "b6f1...",
            "equipmentId": "eq_001",
            "borrowStatus": "APPROVED",
            "requestedStartTime": "2025-05-01T09:00:00",
            "requestedEndTime": "2025-05-01T12:00:00",
            "approvedStartTime": "2025-05-01T09:00:00",
            "approvedEndTime": "2025-05-01T12:00:00",
            "lateRequest": False,
        }},
    )


class BorrowListResponse(ResponseBase):
    data: dict = Field(
        ...,
        json_schema_extra={"example": {"total": 2, "page": 1, "limit": 20, "borrows": []}},
    )


class GroupActionResponse(ResponseBase):
    data: dict = Field(
        ...,
        json_schema_extra={"example": {
            "groupId": "5b0c1e9a-2f7d-4c8e-9d11-6a3e2b7f0c44",
            "action": "checkout",
            "count": 2,
            "total": 3,
            "message": "已借出 2/3 項器材",
            "results": [],
            "failures": [],
        }},
    )


class DashboardSummaryResponse(ResponseBase):
    data: dict = Field(
        ...,
        json_schema_extra={"example": {
            "PENDING": 1,
            "APPROVED": 0,
            "ACTIVE": 2,
            "OVERDUE": 0,
            "PENDING_RETURN": 0,
        }},
    )
