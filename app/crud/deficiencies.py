from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidTransitionError, ValidationError
from app.crud.base import CRUDBase
from app.crud.borrows import borrow as crud_borrow
from app.models.borrows import Borrow
from app.models.deficiencies import Deficiency
from app.models.enums import BorrowStatus, DeficiencyStatus
from app.schemas.deficiencies import DeficiencyCreate, DeficiencyResolve
from app.services.cache import summary_cache

# 可以登記缺失的借用狀態 (已結案的借用仍可補登)
REPORTABLE_STATUSES = frozenset(
    {
        BorrowStatus.PENDING_RETURN.value,
        BorrowStatus.RETURNED.value,
        BorrowStatus.COMPLETED.value,
    }
)


def deficiency_to_dict(deficiency: Deficiency) -> Dict[str, Any]:
    return {
        "deficiencyId": deficiency.id,
        "borrowId": deficiency.borrow_id,
        "type": deficiency.type,
        "description": deficiency.description,
        "status": deficiency.status,
        "reportedById": deficiency.reported_by_id,
        "resolvedById": deficiency.resolved_by_id,
        "resolutionNotes": deficiency.resolution_notes,
        "createdAt": deficiency.created_at,
        "resolvedAt": deficiency.resolved_at,
    }


class CRUDDeficiency(CRUDBase[Deficiency, DeficiencyCreate, DeficiencyResolve]):
    """缺失紀錄 CRUD 操作類"""

    not_found_message = "缺失紀錄不存在"

    async def get_list(
        self,
        db: AsyncSession,
        *,
        status: Optional[str] = None,
        borrow_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[Deficiency]:
        conditions = []
        if status:
            conditions.append(Deficiency.status == status)
        if borrow_id:
            conditions.append(Deficiency.borrow_id == borrow_id)
        query = select(Deficiency).order_by(Deficiency.created_at.desc())
        if conditions:
            query = query.where(and_(*conditions))
        result = await db.execute(query.offset(skip).limit(limit))
        return result.scalars().all()

    async def create(
        self, db: AsyncSession, *, obj_in: DeficiencyCreate, reported_by: str
    ) -> Deficiency:
        """
        登記缺失

        借用必須已申請歸還或已歸還；已結案的借用也可補登，但不會重新開啟

        Raises:
            NotFoundError: 借用紀錄不存在
            InvalidTransitionError: 借用尚未進入歸還流程
        """
        borrow = await crud_borrow.get_required(db, obj_in.borrowId)
        if borrow.borrow_status not in REPORTABLE_STATUSES:
            raise InvalidTransitionError(
                borrow.borrow_status,
                "report-deficiency",
                "借用尚未歸還，無法登記缺失",
            )
        db_obj = Deficiency(
            borrow_id=borrow.id,
            type=obj_in.type.value,
            description=obj_in.description,
            status=DeficiencyStatus.UNRESOLVED.value,
            reported_by_id=reported_by,
            created_at=datetime.utcnow(),
        )
        db.add(db_obj)
        await self.commit(db)
        summary_cache.invalidate(user_ids=[borrow.borrower_id], equipment_ids=[borrow.equipment_id])
        return db_obj

    async def resolve(
        self, db: AsyncSession, *, db_obj: Deficiency, obj_in: DeficiencyResolve, resolved_by: str
    ) -> Deficiency:
        """
        標記缺失已處理，借用的所有缺失處理完畢且無其他待辦時自動結案

        Raises:
            ValidationError: 缺失已經處理過
        """
        if db_obj.status == DeficiencyStatus.RESOLVED.value:
            raise ValidationError("此缺失已處理", details={"deficiencyId": db_obj.id})

        now = datetime.utcnow()
        db_obj.status = DeficiencyStatus.RESOLVED.value
        db_obj.resolved_by_id = resolved_by
        db_obj.resolved_at = now
        db_obj.resolution_notes = obj_in.resolutionNotes

        db.add(db_obj)
        await self.flush(db)

        borrow: Borrow = await crud_borrow.get_required(db, db_obj.borrow_id, for_update=True)
        await crud_borrow.finalize_if_settled(db, borrow, now=now)

        await self.commit(db)
        summary_cache.invalidate(user_ids=[borrow.borrower_id], equipment_ids=[borrow.equipment_id])
        return db_obj


deficiency = CRUDDeficiency(Deficiency)
