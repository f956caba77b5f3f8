import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import settings
from app.core.exceptions import ValidationError
from app.crud.base import CRUDBase
from app.models.borrows import Borrow, BorrowStatusHistory
from app.models.deficiencies import Deficiency
from app.models.enums import EquipmentStatus
from app.models.equipment import Equipment
from app.models.logs import SystemLog
from app.schemas.equipment import EquipmentCreate, EquipmentUpdate, MaintenanceEntryCreate
from app.services import availability, lifecycle
from app.services.activity_log import LogEntry, build_activity_log, parse_note_entry
from app.services.cache import summary_cache

logger = logging.getLogger(__name__)

# 請求欄位 -> 模型欄位，編輯歷史記錄請求欄位名稱
EDITABLE_FIELDS = {
    "name": "name",
    "category": "category",
    "stockCount": "stock_count",
    "status": "status",
    "isDataGenerating": "is_data_generating",
    "condition": "condition",
    "description": "description",
    "purchaseCost": "purchase_cost",
}


def _plain(value: Any) -> Any:
    """轉為可寫入 JSON 欄位的值"""
    value = getattr(value, "value", value)
    if isinstance(value, Decimal):
        return str(value)
    return value


def equipment_to_dict(equipment: Equipment, status: Optional[str] = None) -> Dict[str, Any]:
    notes = [parse_note_entry(raw) for raw in (equipment.custom_notes_log or [])]
    return {
        "equipmentId": equipment.id,
        "name": equipment.name,
        "category": equipment.category,
        "stockCount": equipment.stock_count,
        "status": status or equipment.status,
        "storedStatus": equipment.status,
        "isDataGenerating": equipment.is_data_generating,
        "condition": equipment.condition,
        "description": equipment.description,
        "purchaseCost": equipment.purchase_cost,
        "customNotes": [
            {
                "timestamp": note.timestamp,
                "userId": note.user_id,
                "userDisplay": note.user_display,
                "text": note.text,
            }
            for note in notes
            if note is not None
        ],
        "createdAt": equipment.created_at,
        "updatedAt": equipment.updated_at,
    }


class CRUDEquipment(CRUDBase[Equipment, EquipmentCreate, EquipmentUpdate]):
    """器材 CRUD 操作類"""

    not_found_message = "器材不存在"

    async def get_by_name(self, db: AsyncSession, *, name: str) -> Optional[Equipment]:
        """根據名稱獲取器材"""
        query = select(Equipment).where(Equipment.name == name)
        result = await db.execute(query)
        return result.scalars().first()

    async def get_all(
        self, db: AsyncSession, *, include_archived: bool = False, category: Optional[str] = None
    ) -> List[Equipment]:
        """獲取所有器材

        Args:
            include_archived: 是否包含已封存的器材
            category: 只列出指定類別
        """
        query = select(Equipment).order_by(Equipment.name)
        if not include_archived:
            query = query.where(Equipment.status != EquipmentStatus.ARCHIVED.value)
        if category:
            query = query.where(Equipment.category == category)
        result = await db.execute(query)
        return result.scalars().all()

    async def get_borrows(
        self, db: AsyncSession, *, equipment_ids: List[str], statuses: Optional[Set[str]] = None
    ) -> List[Borrow]:
        if not equipment_ids:
            return []
        query = select(Borrow).where(Borrow.equipment_id.in_(equipment_ids))
        if statuses:
            query = query.where(Borrow.borrow_status.in_(statuses))
        result = await db.execute(query)
        return list(result.scalars().all())

    async def derived_statuses(self, db: AsyncSession, equipment_list: List[Equipment]) -> Dict[str, str]:
        """計算器材目前的顯示狀態"""
        borrows = await self.get_borrows(
            db,
            equipment_ids=[e.id for e in equipment_list],
            statuses=availability.CHECKED_OUT_STATUSES,
        )
        return {e.id: availability.derive_equipment_status(e, borrows) for e in equipment_list}

    async def create(
        self, db: AsyncSession, *, obj_in: EquipmentCreate, created_by: str
    ) -> Optional[Equipment]:
        """創建新器材"""
        existing = await self.get_by_name(db, name=obj_in.name)
        if existing:
            return None  # 名稱已存在

        db_obj = Equipment(
            name=obj_in.name,
            category=obj_in.category.value,
            stock_count=obj_in.stockCount,
            status=obj_in.status.value,
            is_data_generating=obj_in.isDataGenerating,
            condition=obj_in.condition,
            description=obj_in.description,
            purchase_cost=obj_in.purchaseCost,
            maintenance_log=[],
            edit_history=[],
            custom_notes_log=[],
            created_at=datetime.utcnow(),
            created_by=created_by,
        )
        db.add(db_obj)
        await self.commit(db)
        return db_obj

    async def update(
        self,
        db: AsyncSession,
        *,
        db_obj: Equipment,
        obj_in: EquipmentUpdate,
        user_display: str,
        maintenance_notes: Optional[str] = None,
    ) -> Optional[Equipment]:
        """
        更新器材資訊並記錄編輯歷史

        狀態改為維修中時同時新增一筆維修紀錄。名稱與其他器材重複時回傳 None
        """
        update_data = obj_in.model_dump(exclude_unset=True)
        if (
            update_data.get("status") == EquipmentStatus.ARCHIVED
            and db_obj.status != EquipmentStatus.ARCHIVED.value
        ):
            raise ValidationError("封存器材請使用封存功能")
        new_name = update_data.get("name")
        if new_name and new_name != db_obj.name:
            existing = await self.get_by_name(db, name=new_name)
            if existing:
                return None  # 名稱已存在

        now = datetime.utcnow()
        changes = []
        for field, attr in EDITABLE_FIELDS.items():
            if field not in update_data or update_data[field] is None:
                continue
            old_value, new_value = _plain(getattr(db_obj, attr)), _plain(update_data[field])
            if field == "purchaseCost" and old_value is not None and new_value is not None:
                if Decimal(old_value) == Decimal(new_value):
                    continue
            if old_value == new_value:
                continue
            changes.append({"field": field, "oldValue": old_value, "newValue": new_value})
            setattr(db_obj, attr, getattr(update_data[field], "value", update_data[field]))

        if not changes:
            return db_obj

        timestamp = now.isoformat() + "Z"
        db_obj.edit_history = list(db_obj.edit_history or []) + [
            {"timestamp": timestamp, "user": user_display, "changes": changes}
        ]
        status_change = next((c for c in changes if c["field"] == "status"), None)
        if status_change and status_change["newValue"] == EquipmentStatus.UNDER_MAINTENANCE.value:
            db_obj.maintenance_log = list(db_obj.maintenance_log or []) + [
                {
                    "timestamp": timestamp,
                    "notes": maintenance_notes or "狀態設為維修中",
                    "user": user_display,
                    "type": "MAINTENANCE",
                }
            ]
        db_obj.updated_at = now
        db.add(db_obj)
        await self.commit(db)
        summary_cache.invalidate(equipment_ids=[db_obj.id])
        return db_obj

    async def add_maintenance_entry(
        self, db: AsyncSession, *, db_obj: Equipment, obj_in: MaintenanceEntryCreate, user_display: str
    ) -> Dict[str, Any]:
        """新增維修保養紀錄，可同時將器材設為維修中"""
        now = datetime.utcnow()
        entry = {
            "timestamp": now.isoformat() + "Z",
            "notes": obj_in.notes,
            "user": user_display,
            "type": obj_in.type,
        }
        db_obj.maintenance_log = list(db_obj.maintenance_log or []) + [entry]
        if obj_in.markUnderMaintenance and db_obj.status != EquipmentStatus.UNDER_MAINTENANCE.value:
            db_obj.edit_history = list(db_obj.edit_history or []) + [
                {
                    "timestamp": entry["timestamp"],
                    "user": user_display,
                    "changes": [
                        {
                            "field": "status",
                            "oldValue": db_obj.status,
                            "newValue": EquipmentStatus.UNDER_MAINTENANCE.value,
                        }
                    ],
                }
            ]
            db_obj.status = EquipmentStatus.UNDER_MAINTENANCE.value
        db_obj.updated_at = now
        db.add(db_obj)
        await self.commit(db)
        summary_cache.invalidate(equipment_ids=[db_obj.id])
        return entry

    async def add_note(
        self, db: AsyncSession, *, db_obj: Equipment, text: str, user_id: str, user_display: str
    ) -> Dict[str, Any]:
        """新增管理備註，以時間戳記識別"""
        note = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "userId": user_id,
            "userDisplay": user_display,
            "text": text,
        }
        db_obj.custom_notes_log = list(db_obj.custom_notes_log or []) + [note]
        db.add(db_obj)
        await self.commit(db)
        return note

    async def delete_note(self, db: AsyncSession, *, db_obj: Equipment, timestamp: str) -> bool:
        """依時間戳記刪除備註，找不到時回傳 False"""
        notes = list(db_obj.custom_notes_log or [])
        remaining = [n for n in notes if not (isinstance(n, dict) and n.get("timestamp") == timestamp)]
        if len(remaining) == len(notes):
            return False
        db_obj.custom_notes_log = remaining
        db.add(db_obj)
        await self.commit(db)
        return True

    async def archive(self, db: AsyncSession, *, db_obj: Equipment, user_display: str) -> Equipment:
        """
        封存器材

        Raises:
            ValidationError: 器材仍有借出中的項目
        """
        checked_out = await self.get_borrows(
            db, equipment_ids=[db_obj.id], statuses=availability.CHECKED_OUT_STATUSES
        )
        if checked_out:
            raise ValidationError(
                "器材仍有借出中的項目，無法封存",
                details={"borrowIds": [b.id for b in checked_out]},
            )
        now = datetime.utcnow()
        db_obj.edit_history = list(db_obj.edit_history or []) + [
            {
                "timestamp": now.isoformat() + "Z",
                "user": user_display,
                "changes": [
                    {"field": "status", "oldValue": db_obj.status, "newValue": EquipmentStatus.ARCHIVED.value}
                ],
            }
        ]
        db_obj.status = EquipmentStatus.ARCHIVED.value
        db_obj.updated_at = now
        db.add(db_obj)
        await self.commit(db)
        summary_cache.invalidate(equipment_ids=[db_obj.id])
        return db_obj

    async def remove_permanently(self, db: AsyncSession, *, db_obj: Equipment, confirm: bool) -> None:
        """
        永久刪除已封存的器材及其借用紀錄

        Raises:
            ValidationError: 器材未封存或未確認
        """
        if db_obj.status != EquipmentStatus.ARCHIVED.value:
            raise ValidationError("只能永久刪除已封存的器材", details={"status": db_obj.status})
        if not confirm:
            raise ValidationError("永久刪除需要確認 (confirm=true)")

        borrow_ids = select(Borrow.id).where(Borrow.equipment_id == db_obj.id)
        await db.execute(
            update(SystemLog)
            .where(SystemLog.borrow_id.in_(borrow_ids))
            .values(borrow_id=None)
            .execution_options(synchronize_session=False)
        )
        for statement in (
            delete(Deficiency).where(Deficiency.borrow_id.in_(borrow_ids)),
            delete(BorrowStatusHistory).where(BorrowStatusHistory.borrow_id.in_(borrow_ids)),
            delete(Borrow).where(Borrow.equipment_id == db_obj.id),
        ):
            await db.execute(statement.execution_options(synchronize_session=False))
        await db.delete(db_obj)
        await self.commit(db)
        summary_cache.invalidate(equipment_ids=[db_obj.id])
        logger.info("Equipment %s permanently deleted", db_obj.id)

    async def is_available(
        self, db: AsyncSession, *, db_obj: Equipment, start: datetime, end: datetime
    ) -> bool:
        if end <= start:
            raise ValidationError("結束時間必須晚於開始時間")
        borrows = await self.get_borrows(db, equipment_ids=[db_obj.id], statuses=availability.OCCUPYING_STATUSES)
        return availability.is_available(db_obj, start, end, borrows)

    async def unavailable_dates(
        self, db: AsyncSession, *, db_obj: Equipment, today: Optional[date] = None
    ) -> List[date]:
        """日曆顯示用的額滿日期，依器材快取"""
        today = today or datetime.utcnow().date()
        key = summary_cache.equipment_key(db_obj.id)
        cached = summary_cache.get(key)
        if cached is not None and cached[0] == today:
            return list(cached[1])

        horizon = settings.UNAVAILABLE_DATES_HORIZON_DAYS
        if db_obj.status in availability.UNAVAILABLE_EQUIPMENT_STATUSES:
            dates = [today + timedelta(days=offset) for offset in range(horizon + 1)]
        else:
            borrows = await self.get_borrows(
                db, equipment_ids=[db_obj.id], statuses=availability.OCCUPYING_STATUSES
            )
            dates = sorted(availability.unavailable_dates(db_obj.stock_count or 0, borrows, today, horizon))

        summary_cache.set(key, (today, dates))
        return list(dates)

    async def activity_log(self, db: AsyncSession, *, db_obj: Equipment) -> List[LogEntry]:
        query = (
            select(Borrow)
            .where(Borrow.equipment_id == db_obj.id)
            .options(
                selectinload(Borrow.borrower),
                selectinload(Borrow.approver),
                selectinload(Borrow.deficiencies),
            )
            .order_by(Borrow.request_submission_time, Borrow.id)
        )
        result = await db.execute(query)
        return build_activity_log(db_obj, result.scalars().all())

    async def contact_hours(self, db: AsyncSession, *, equipment_id: str) -> Tuple[float, str]:
        """累計實際使用時間 (秒) 與格式化字串"""
        borrows = await self.get_borrows(
            db, equipment_ids=[equipment_id], statuses=lifecycle.FINISHED_STATUSES
        )
        seconds = lifecycle.net_contact_seconds(borrows)
        return seconds, lifecycle.format_duration(seconds)


equipment = CRUDEquipment(Equipment)
