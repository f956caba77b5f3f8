from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_staff_user
from app.crud.deficiencies import deficiency as crud_deficiency
from app.crud.deficiencies import deficiency_to_dict
from app.database import get_db
from app.models.enums import DeficiencyStatus
from app.models.users import User
from app.schemas.deficiencies import DeficiencyCreate, DeficiencyList, DeficiencyResolve, DeficiencyResponse
from app.services.logging import logging_service

router = APIRouter(prefix="/deficiencies", tags=["deficiencies"])


@router.get("", response_model=DeficiencyList)
async def get_deficiencies(
    page: int = Query(1, ge=1, description="頁碼"),
    limit: int = Query(50, ge=1, le=100, description="每頁數量"),
    status: Optional[DeficiencyStatus] = Query(None, description="過濾狀態"),
    borrowId: Optional[str] = Query(None, description="過濾借用紀錄"),
    current_user: User = Depends(get_staff_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    獲取缺失紀錄列表
    """
    deficiencies = await crud_deficiency.get_list(
        db,
        status=status.value if status else None,
        borrow_id=borrowId,
        skip=(page - 1) * limit,
        limit=limit,
    )
    return {"success": True, "data": {"deficiencies": [deficiency_to_dict(d) for d in deficiencies]}}


@router.post("", response_model=DeficiencyResponse)
async def create_deficiency(
    request: Request,
    deficiency_in: DeficiencyCreate,
    current_user: User = Depends(get_staff_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    登記借用缺失
    """
    deficiency = await crud_deficiency.create(db, obj_in=deficiency_in, reported_by=current_user.id)
    await logging_service.audit(
        db,
        component="deficiencies",
        action="create",
        user_id=current_user.id,
        resource_type="borrow",
        resource_id=deficiency.borrow_id,
        details={"deficiencyId": deficiency.id, "type": deficiency.type},
        ip_address=await logging_service.get_request_ip(request),
    )
    return {"success": True, "data": deficiency_to_dict(deficiency)}


@router.patch("/{deficiency_id}/resolve", response_model=DeficiencyResponse)
async def resolve_deficiency(
    request: Request,
    deficiency_id: str,
    resolve_in: DeficiencyResolve,
    current_user: User = Depends(get_staff_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    標記缺失已處理，借用沒有其他待處理事項時自動結案
    """
    deficiency = await crud_deficiency.get_required(db, deficiency_id)
    deficiency = await crud_deficiency.resolve(
        db, db_obj=deficiency, obj_in=resolve_in, resolved_by=current_user.id
    )
    await logging_service.audit(
        db,
        component="deficiencies",
        action="resolve",
        user_id=current_user.id,
        resource_type="borrow",
        resource_id=deficiency.borrow_id,
        details={"deficiencyId": deficiency.id},
        ip_address=await logging_service.get_request_ip(request),
    )
    return {"success": True, "data": deficiency_to_dict(deficiency)}
