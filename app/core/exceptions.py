from typing import Any, Dict, Optional

from fastapi import status


class BorrowingError(Exception):
    """
    借用系統錯誤基礎類

    所有領域錯誤都帶有錯誤代碼、可讀訊息與 HTTP 狀態碼，
    由 app.main 的例外處理器轉換為統一的錯誤回應格式
    """

    code = "BORROWING_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        error = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return error


class NotFoundError(BorrowingError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class ValidationError(BorrowingError):
    """輸入資料不合法，在任何寫入之前拋出"""

    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidTransitionError(BorrowingError):
    """目前狀態不允許執行要求的狀態轉換"""

    code = "INVALID_STATE"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, current_status: str, requested: str, message: Optional[str] = None):
        self.current_status = current_status
        self.requested = requested
        super().__init__(
            message or f"無法在 {current_status} 狀態執行 {requested}",
            details={"currentStatus": current_status, "requested": requested},
        )


class PermissionDeniedError(InvalidTransitionError):
    """執行者身分不符合轉換的前置條件"""

    code = "FORBIDDEN"
    status_code = status.HTTP_403_FORBIDDEN


class AvailabilityConflictError(BorrowingError):
    """核准或借出會超過器材庫存，或器材目前無法使用"""

    code = "AVAILABILITY_CONFLICT"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, equipment_id: str, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.equipment_id = equipment_id
        payload = {"equipmentId": equipment_id}
        if details:
            payload.update(details)
        super().__init__(message or f"器材 {equipment_id} 在此時段已無可用數量", details=payload)


class PersistenceError(BorrowingError):
    """資料庫層錯誤，不在核心內重試"""

    code = "PERSISTENCE_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ConcurrentModificationError(PersistenceError):
    code = "CONCURRENT_MODIFICATION"
    status_code = status.HTTP_409_CONFLICT


class MalformedLogEntryWarning(UserWarning):
    """器材 JSON 日誌中格式錯誤的項目，解析時略過"""

    def __init__(self, source: str, reason: str, entry: Any = None):
        super().__init__(f"{source}: {reason}")
        self.source = source
        self.reason = reason
        self.entry = entry
