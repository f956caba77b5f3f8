from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Path, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_approver_user, get_borrower_user, get_staff_user
from app.core.auth import get_actor
from app.core.exceptions import BorrowingError, NotFoundError
from app.crud.borrows import borrow as crud_borrow
from app.database import get_db
from app.models.enums import BorrowStatus
from app.models.users import User
from app.schemas import ErrorResponse
from app.schemas.borrows import (
    BorrowCreate,
    BorrowCreateResponse,
    BorrowListResponse,
    BorrowResponse,
    BorrowTransitionIn,
    DashboardSummaryResponse,
    DataRequestUpdate,
    GroupActionResponse,
)
from app.services.group_actions import GroupAction
from app.services.lifecycle import BorrowEvent
from app.services.logging import logging_service

router = APIRouter(
    prefix="/borrows",
    tags=["borrows"],
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)

# 可由使用者觸發的事件，逾期由系統排程處理
USER_EVENTS = (
    BorrowEvent.APPROVE,
    BorrowEvent.REJECT,
    BorrowEvent.CANCEL,
    BorrowEvent.CHECKOUT,
    BorrowEvent.REJECT_APPROVED,
    BorrowEvent.REQUEST_RETURN,
    BorrowEvent.CONFIRM_RETURN,
    BorrowEvent.FINALIZE,
)

FORBIDDEN_VIEW = HTTPException(
    status_code=status.HTTP_403_FORBIDDEN,
    detail={"success": False, "error": {"code": "FORBIDDEN", "message": "無權查看此借用紀錄"}},
)


@router.post("", response_model=BorrowCreateResponse)
async def create_borrow(
    request: Request,
    borrow_in: BorrowCreate,
    current_user: User = Depends(get_borrower_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    建立借用申請，多項器材共用同一個群組ID
    """
    actor = await get_actor(db, current_user)
    ip_address = await logging_service.get_request_ip(request)
    try:
        borrows = await crud_borrow.create_request(db, obj_in=borrow_in, borrower=actor)
    except BorrowingError as e:
        await logging_service.warning(
            db,
            component="borrows",
            message=f"建立借用申請失敗：{e.message}",
            details={"equipmentIds": borrow_in.equipmentIds, "error": e.to_dict()},
            user_id=current_user.id,
            ip_address=ip_address,
        )
        raise

    for borrow in borrows:
        await logging_service.audit(
            db,
            component="borrows",
            action="create",
            user_id=current_user.id,
            resource_type="borrow",
            resource_id=borrow.id,
            details={"equipmentId": borrow.equipment_id, "borrowGroupId": borrow.borrow_group_id},
            ip_address=ip_address,
        )

    return {
        "success": True,
        "data": {
            "borrowGroupId": borrows[0].borrow_group_id,
            "borrowIds": [b.id for b in borrows],
            "status": BorrowStatus.PENDING.value,
            "requestSubmissionTime": borrows[0].request_submission_time,
        },
    }


@router.get("", response_model=BorrowListResponse)
async def get_borrows(
    page: int = Query(1, ge=1, description="頁碼"),
    limit: int = Query(20, ge=1, le=100, description="每頁數量"),
    status: Optional[BorrowStatus] = Query(None, description="過濾狀態"),
    equipmentId: Optional[str] = Query(None, description="過濾器材"),
    current_user: User = Depends(get_borrower_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    獲取借用列表，依角色限制可見範圍
    """
    actor = await get_actor(db, current_user)
    borrows, total = await crud_borrow.list_borrows(
        db,
        actor=actor,
        status=status.value if status else None,
        equipment_id=equipmentId,
        skip=(page - 1) * limit,
        limit=limit,
    )
    return {
        "success": True,
        "data": {"total": total, "page": page, "limit": limit, "borrows": borrows},
    }


@router.get("/dashboard-summary", response_model=DashboardSummaryResponse)
async def get_dashboard_summary(
    current_user: User = Depends(get_borrower_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    當前使用者各狀態的借用數量
    """
    summary = await crud_borrow.get_dashboard_summary(db, user_id=current_user.id)
    return {"success": True, "data": summary}


@router.post("/overdue-sweep")
async def sweep_overdue(
    request: Request,
    current_user: User = Depends(get_staff_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    將超過歸還時間的借出紀錄標記為逾期，可重複執行
    """
    marked = await crud_borrow.sweep_overdue(db)
    if marked:
        await logging_service.audit(
            db,
            component="borrows",
            action="mark-overdue",
            user_id=current_user.id,
            resource_type="borrows",
            resource_id="sweep",
            details={"borrowIds": marked},
            ip_address=await logging_service.get_request_ip(request),
        )
    return {"success": True, "data": {"count": len(marked), "borrowIds": marked}}


@router.get("/groups/{group_id}")
async def get_borrow_group(
    group_id: str = Path(..., description="群組ID，單筆借用為 individual-<借用ID>"),
    current_user: User = Depends(get_borrower_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    獲取群組借用的所有項目
    """
    actor = await get_actor(db, current_user)
    members = await crud_borrow.get_group_members(db, group_id)
    if not await crud_borrow.can_view(db, members[0], actor):
        raise FORBIDDEN_VIEW
    group = await crud_borrow.get_group(db, group_id=group_id)
    return {"success": True, "data": group}


@router.post("/groups/{group_id}/{action}", response_model=GroupActionResponse)
async def apply_group_action(
    request: Request,
    group_id: str = Path(..., description="群組ID"),
    action: GroupAction = Path(..., description="批次操作"),
    transition_in: Optional[BorrowTransitionIn] = Body(None),
    current_user: User = Depends(get_borrower_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    對群組內所有借用執行同一操作

    核准、駁回、取消任一項失敗時整批不執行；借出與歸還逐項處理
    """
    actor = await get_actor(db, current_user)
    payload = transition_in.to_payload() if transition_in else None
    result = await crud_borrow.apply_group_action(
        db, group_id=group_id, action=action, actor=actor, payload=payload
    )
    ip_address = await logging_service.get_request_ip(request)

    if result.failures:
        await logging_service.warning(
            db,
            component="borrows",
            message=f"群組操作 {action.value} 有 {len(result.failures)} 項失敗",
            details=result.to_dict(),
            user_id=current_user.id,
            ip_address=ip_address,
        )
    if result.count:
        await logging_service.audit(
            db,
            component="borrows",
            action=action.value,
            user_id=current_user.id,
            resource_type="group",
            resource_id=group_id,
            details={"count": result.count, "total": result.total},
            ip_address=ip_address,
        )
    return {"success": True, "data": result.to_dict()}


@router.get("/{borrow_id}", response_model=BorrowResponse)
async def get_borrow(
    borrow_id: str = Path(..., description="借用ID"),
    current_user: User = Depends(get_borrower_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    獲取借用詳情，含狀態歷史與缺失紀錄
    """
    actor = await get_actor(db, current_user)
    borrow = await crud_borrow.get_required(db, borrow_id)
    if not await crud_borrow.can_view(db, borrow, actor):
        raise FORBIDDEN_VIEW
    detail = await crud_borrow.get_detail(db, borrow_id=borrow_id)
    return {"success": True, "data": detail}


@router.patch("/{borrow_id}/data-request", response_model=BorrowResponse)
async def update_data_request(
    request: Request,
    borrow_id: str = Path(..., description="借用ID"),
    update_in: DataRequestUpdate = Body(...),
    current_user: User = Depends(get_approver_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    更新器材資料請求的處理狀態
    """
    actor = await get_actor(db, current_user)
    borrow = await crud_borrow.update_data_request(db, borrow_id=borrow_id, obj_in=update_in, actor=actor)
    await logging_service.audit(
        db,
        component="borrows",
        action="update-data-request",
        user_id=current_user.id,
        resource_type="borrow",
        resource_id=borrow.id,
        details={"dataRequestStatus": borrow.data_request_status, "borrowStatus": borrow.borrow_status},
        ip_address=await logging_service.get_request_ip(request),
    )
    detail = await crud_borrow.get_detail(db, borrow_id=borrow.id)
    return {"success": True, "data": detail}


@router.post("/{borrow_id}/{event}", response_model=BorrowResponse)
async def transition_borrow(
    request: Request,
    borrow_id: str = Path(..., description="借用ID"),
    event: BorrowEvent = Path(..., description="狀態轉換事件"),
    transition_in: Optional[BorrowTransitionIn] = Body(None),
    current_user: User = Depends(get_borrower_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    執行單筆借用的狀態轉換
    """
    if event not in USER_EVENTS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"success": False, "error": {"code": "VALIDATION_ERROR", "message": "此事件由系統處理"}},
        )

    actor = await get_actor(db, current_user)
    ip_address = await logging_service.get_request_ip(request)
    try:
        borrow = await crud_borrow.transition(
            db,
            borrow_id=borrow_id,
            event=event,
            actor=actor,
            payload=transition_in.to_payload() if transition_in else None,
            deficiencies=transition_in.deficiencies if transition_in else (),
        )
    except BorrowingError as e:
        await logging_service.warning(
            db,
            component="borrows",
            message=f"借用 {borrow_id} 執行 {event.value} 失敗：{e.message}",
            details=e.to_dict(),
            user_id=current_user.id,
            borrow_id=None if isinstance(e, NotFoundError) else borrow_id,
            ip_address=ip_address,
        )
        raise

    await logging_service.audit(
        db,
        component="borrows",
        action=event.value,
        user_id=current_user.id,
        resource_type="borrow",
        resource_id=borrow.id,
        details={"borrowStatus": borrow.borrow_status},
        ip_address=ip_address,
    )
    detail = await crud_borrow.get_detail(db, borrow_id=borrow.id)
    return {"success": True, "data": detail}
