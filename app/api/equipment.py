from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_borrower_user, get_staff_user
from app.core.exceptions import ValidationError
from app.crud.equipment import equipment as crud_equipment
from app.crud.equipment import equipment_to_dict
from app.database import get_db
from app.models.enums import EquipmentCategory, EquipmentStatus
from app.models.users import User
from app.schemas.equipment import (
    ActivityLogResponse,
    AvailabilityResponse,
    ContactHoursResponse,
    EquipmentCreate,
    EquipmentDeleteResponse,
    EquipmentList,
    EquipmentResponse,
    EquipmentUpdate,
    MaintenanceEntryCreate,
    NoteCreate,
    UnavailableDatesResponse,
)
from app.services.activity_log import to_naive_utc
from app.services.logging import logging_service

router = APIRouter(prefix="/equipment", tags=["equipment"])

DUPLICATE_NAME = HTTPException(
    status_code=status.HTTP_409_CONFLICT,
    detail={"success": False, "error": {"code": "DUPLICATE_RESOURCE", "message": "相同名稱的器材已存在"}},
)


@router.get("", response_model=EquipmentList)
async def get_equipment_list(
    include_archived: bool = Query(False, description="是否包含已封存的器材"),
    category: Optional[EquipmentCategory] = Query(None, description="過濾類別"),
    current_user: User = Depends(get_borrower_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    獲取器材列表，狀態為依借用紀錄計算的顯示狀態
    """
    equipment_list = await crud_equipment.get_all(
        db, include_archived=include_archived, category=category.value if category else None
    )
    statuses = await crud_equipment.derived_statuses(db, equipment_list)
    return {
        "success": True,
        "data": {"equipments": [equipment_to_dict(e, statuses.get(e.id)) for e in equipment_list]},
    }


@router.post("", response_model=EquipmentResponse)
async def create_equipment(
    request: Request,
    equipment_in: EquipmentCreate,
    current_user: User = Depends(get_staff_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    創建新器材
    """
    ip_address = await logging_service.get_request_ip(request)
    if equipment_in.status == EquipmentStatus.ARCHIVED:
        raise ValidationError("不能建立已封存的器材")

    equipment = await crud_equipment.create(db, obj_in=equipment_in, created_by=current_user.id)
    if not equipment:
        await logging_service.warning(
            db,
            component="equipment",
            message=f"創建器材失敗：名稱 '{equipment_in.name}' 已存在",
            details={"name": equipment_in.name},
            user_id=current_user.id,
            ip_address=ip_address,
        )
        raise DUPLICATE_NAME

    await logging_service.audit(
        db,
        component="equipment",
        action="create",
        user_id=current_user.id,
        resource_type="equipment",
        resource_id=equipment.id,
        details={"name": equipment.name, "stockCount": equipment.stock_count},
        ip_address=ip_address,
    )
    return {"success": True, "data": equipment_to_dict(equipment)}


@router.get("/{equipment_id}", response_model=EquipmentResponse)
async def get_equipment(
    equipment_id: str,
    current_user: User = Depends(get_borrower_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    獲取器材詳情
    """
    equipment = await crud_equipment.get_required(db, equipment_id)
    statuses = await crud_equipment.derived_statuses(db, [equipment])
    return {"success": True, "data": equipment_to_dict(equipment, statuses.get(equipment.id))}


@router.put("/{equipment_id}", response_model=EquipmentResponse)
async def update_equipment(
    request: Request,
    equipment_id: str,
    equipment_in: EquipmentUpdate,
    maintenanceNotes: Optional[str] = Query(None, description="狀態改為維修中時的維修說明"),
    current_user: User = Depends(get_staff_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    更新器材資訊，變更會寫入編輯歷史
    """
    equipment = await crud_equipment.get_required(db, equipment_id)
    updated_equipment = await crud_equipment.update(
        db,
        db_obj=equipment,
        obj_in=equipment_in,
        user_display=current_user.username,
        maintenance_notes=maintenanceNotes,
    )
    ip_address = await logging_service.get_request_ip(request)
    if not updated_equipment:
        await logging_service.warning(
            db,
            component="equipment",
            message=f"更新器材失敗：名稱 '{equipment_in.name}' 已存在",
            details={"equipmentId": equipment_id, "newName": equipment_in.name},
            user_id=current_user.id,
            ip_address=ip_address,
        )
        raise DUPLICATE_NAME

    await logging_service.audit(
        db,
        component="equipment",
        action="update",
        user_id=current_user.id,
        resource_type="equipment",
        resource_id=equipment_id,
        details={"changes": equipment_in.model_dump(exclude_unset=True, mode="json")},
        ip_address=ip_address,
    )
    statuses = await crud_equipment.derived_statuses(db, [updated_equipment])
    return {"success": True, "data": equipment_to_dict(updated_equipment, statuses.get(equipment_id))}


@router.post("/{equipment_id}/maintenance")
async def add_maintenance_entry(
    request: Request,
    equipment_id: str,
    entry_in: MaintenanceEntryCreate,
    current_user: User = Depends(get_staff_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    新增維修保養紀錄
    """
    equipment = await crud_equipment.get_required(db, equipment_id)
    entry = await crud_equipment.add_maintenance_entry(
        db, db_obj=equipment, obj_in=entry_in, user_display=current_user.username
    )
    await logging_service.audit(
        db,
        component="equipment",
        action="maintenance",
        user_id=current_user.id,
        resource_type="equipment",
        resource_id=equipment_id,
        details={"entry": entry, "status": equipment.status},
        ip_address=await logging_service.get_request_ip(request),
    )
    return {"success": True, "data": {"equipmentId": equipment_id, "entry": entry}}


@router.post("/{equipment_id}/notes")
async def add_note(
    equipment_id: str,
    note_in: NoteCreate,
    current_user: User = Depends(get_staff_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    新增器材管理備註
    """
    equipment = await crud_equipment.get_required(db, equipment_id)
    note = await crud_equipment.add_note(
        db,
        db_obj=equipment,
        text=note_in.text,
        user_id=current_user.id,
        user_display=current_user.username,
    )
    return {"success": True, "data": {"equipmentId": equipment_id, "note": note}}


@router.delete("/{equipment_id}/notes/{note_timestamp}")
async def delete_note(
    equipment_id: str,
    note_timestamp: str,
    current_user: User = Depends(get_staff_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    依時間戳記刪除備註
    """
    equipment = await crud_equipment.get_required(db, equipment_id)
    if not await crud_equipment.delete_note(db, db_obj=equipment, timestamp=note_timestamp):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"success": False, "error": {"code": "NOT_FOUND", "message": "備註不存在"}},
        )
    return {"success": True, "data": {"equipmentId": equipment_id, "timestamp": note_timestamp, "deleted": True}}


@router.delete("/{equipment_id}", response_model=EquipmentDeleteResponse)
async def delete_equipment(
    request: Request,
    equipment_id: str,
    confirm: bool = Query(False, description="對已封存器材傳入 true 以永久刪除"),
    current_user: User = Depends(get_staff_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    封存器材；已封存的器材加上 confirm=true 時永久刪除
    """
    equipment = await crud_equipment.get_required(db, equipment_id)
    ip_address = await logging_service.get_request_ip(request)

    if equipment.status == EquipmentStatus.ARCHIVED.value:
        await crud_equipment.remove_permanently(db, db_obj=equipment, confirm=confirm)
        await logging_service.audit(
            db,
            component="equipment",
            action="delete",
            user_id=current_user.id,
            resource_type="equipment",
            resource_id=equipment_id,
            details={"name": equipment.name},
            ip_address=ip_address,
        )
        return {"success": True, "data": {"equipmentId": equipment_id, "deleted": True}}

    await crud_equipment.archive(db, db_obj=equipment, user_display=current_user.username)
    await logging_service.audit(
        db,
        component="equipment",
        action="archive",
        user_id=current_user.id,
        resource_type="equipment",
        resource_id=equipment_id,
        details={"name": equipment.name},
        ip_address=ip_address,
    )
    return {
        "success": True,
        "data": {"equipmentId": equipment_id, "deleted": False, "status": EquipmentStatus.ARCHIVED.value},
    }


@router.get("/{equipment_id}/availability", response_model=AvailabilityResponse)
async def check_availability(
    equipment_id: str,
    start: datetime = Query(..., description="開始時間"),
    end: datetime = Query(..., description="結束時間"),
    current_user: User = Depends(get_borrower_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    檢查器材在指定時段是否還有可用數量
    """
    equipment = await crud_equipment.get_required(db, equipment_id)
    start, end = to_naive_utc(start), to_naive_utc(end)
    available = await crud_equipment.is_available(db, db_obj=equipment, start=start, end=end)
    return {
        "success": True,
        "data": {"equipmentId": equipment_id, "start": start, "end": end, "available": available},
    }


@router.get("/{equipment_id}/unavailable-dates", response_model=UnavailableDatesResponse)
async def get_unavailable_dates(
    equipment_id: str,
    current_user: User = Depends(get_borrower_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    日曆顯示用的額滿日期
    """
    equipment = await crud_equipment.get_required(db, equipment_id)
    dates = await crud_equipment.unavailable_dates(db, db_obj=equipment)
    return {"success": True, "data": {"equipmentId": equipment_id, "dates": dates}}


@router.get("/{equipment_id}/activity-log", response_model=ActivityLogResponse)
async def get_activity_log(
    equipment_id: str,
    current_user: User = Depends(get_staff_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    器材的完整活動紀錄，由新到舊
    """
    equipment = await crud_equipment.get_required(db, equipment_id)
    entries = await crud_equipment.activity_log(db, db_obj=equipment)
    return {
        "success": True,
        "data": {"equipmentId": equipment_id, "entries": [entry.to_dict() for entry in entries]},
    }


@router.get("/{equipment_id}/contact-hours", response_model=ContactHoursResponse)
async def get_contact_hours(
    equipment_id: str,
    current_user: User = Depends(get_staff_user),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    器材累計實際使用時間
    """
    await crud_equipment.get_required(db, equipment_id)
    seconds, formatted = await crud_equipment.contact_hours(db, equipment_id=equipment_id)
    return {
        "success": True,
        "data": {"equipmentId": equipment_id, "totalSeconds": seconds, "formatted": formatted},
    }
