import json
from datetime import datetime
from typing import Dict, Any, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession
from fastapi import Request

from app.models.logs import SystemLog

# 審計紀錄的資源類型為 borrow 時，同時連結到借用紀錄
BORROW_RESOURCE = "borrow"


def _serialize_details(details: Optional[Union[Dict[str, Any], str]]) -> Optional[str]:
    if details and isinstance(details, dict):
        return json.dumps(details, default=str, ensure_ascii=False)
    if details:
        return str(details)
    return None


class LoggingService:
    """
    借用系統的操作日誌
    警告與審計紀錄寫入 system_logs 資料表，可依借用ID查詢
    """

    @staticmethod
    async def log(
        db: AsyncSession,
        level: str,
        component: str,
        message: str,
        details: Optional[Union[Dict[str, Any], str]] = None,
        user_id: Optional[str] = None,
        borrow_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> SystemLog:
        """
        寫入一筆系統日誌並提交

        Args:
            db: 資料庫連接
            level: 日誌級別 (info, warning)
            component: 系統組件 (borrows, equipment, deficiencies, auth)
            message: 日誌訊息
            details: 詳細資訊 (可選)
            user_id: 使用者ID (可選)
            borrow_id: 相關的借用紀錄ID，必須是已存在的借用 (可選)
            ip_address: IP地址 (可選)
        """
        log = SystemLog(
            timestamp=datetime.utcnow(),
            level=level,
            component=component,
            message=message,
            details=_serialize_details(details),
            user_id=user_id,
            borrow_id=borrow_id,
            ip_address=ip_address,
        )

        db.add(log)
        await db.commit()
        return log

    @classmethod
    async def warning(
        cls,
        db: AsyncSession,
        component: str,
        message: str,
        details: Optional[Union[Dict[str, Any], str]] = None,
        user_id: Optional[str] = None,
        borrow_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> SystemLog:
        """記錄被拒絕的操作"""
        return await cls.log(
            db=db,
            level="warning",
            component=component,
            message=message,
            details=details,
            user_id=user_id,
            borrow_id=borrow_id,
            ip_address=ip_address,
        )

    @classmethod
    async def audit(
        cls,
        db: AsyncSession,
        component: str,
        action: str,
        user_id: Optional[str],
        resource_type: str,
        resource_id: str,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> SystemLog:
        """
        記錄成功的操作行為

        Args:
            action: 操作類型 (create, approve, checkout, archive 等)
            user_id: 操作者ID，系統排程為 None
            resource_type: 資源類型 (borrow, group, borrows, equipment)
            resource_id: 資源ID
        """
        audit_details = {
            "action": action,
            "resourceType": resource_type,
            "resourceId": resource_id,
            **(details or {}),
        }
        return await cls.log(
            db=db,
            level="info",
            component=component,
            message=f"{action.upper()} {resource_type} {resource_id}",
            details=audit_details,
            user_id=user_id,
            borrow_id=resource_id if resource_type == BORROW_RESOURCE else None,
            ip_address=ip_address,
        )

    @classmethod
    async def get_request_ip(cls, request: Request) -> Optional[str]:
        """從請求中獲取客戶端IP地址"""
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else None


logging_service = LoggingService()
