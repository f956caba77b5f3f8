from typing import Any, Dict

from pydantic import BaseModel, Field


# 通用回應模型
class ResponseBase(BaseModel):
    success: bool = True


class ErrorResponse(ResponseBase):
    success: bool = False
    error: Dict[str, Any] = Field(
        ...,
        json_schema_extra={"example": {
            "code": "INVALID_STATE",
            "message": "無法在 PENDING 狀態執行 checkout",
            "details": {"currentStatus": "PENDING", "requested": "checkout"},
        }},
    )
