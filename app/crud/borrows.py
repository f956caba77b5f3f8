import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import (
    BorrowingError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from app.crud.base import CRUDBase
from app.models.borrows import Borrow, BorrowGroupMate, BorrowStatusHistory
from app.models.classes import Class, ClassEnrollment
from app.models.deficiencies import Deficiency
from app.models.enums import BorrowStatus, DataRequestStatus, DeficiencyStatus, ReservationType, UserRoleName
from app.models.equipment import Equipment
from app.models.users import User
from app.schemas.borrows import BorrowCreate, DataRequestUpdate, DeficiencyIn
from app.services import availability, lifecycle
from app.services.cache import summary_cache
from app.services.group_actions import (
    ABORTED_CODE,
    ACTION_EVENTS,
    ALL_OR_NOTHING_ACTIONS,
    GroupAction,
    GroupActionResult,
    ItemOutcome,
    group_key,
    individual_borrow_id,
)
from app.services.lifecycle import SYSTEM_ACTOR, Actor, BorrowEvent, TransitionPayload, TransitionPlan

logger = logging.getLogger(__name__)

# 儀表板統計的狀態
DASHBOARD_STATUSES = (
    BorrowStatus.PENDING.value,
    BorrowStatus.APPROVED.value,
    BorrowStatus.ACTIVE.value,
    BorrowStatus.OVERDUE.value,
    BorrowStatus.PENDING_RETURN.value,
)

# 需要器材資料檢查可用性的事件
AVAILABILITY_EVENTS = frozenset({BorrowEvent.APPROVE, BorrowEvent.CHECKOUT})


def borrow_to_dict(
    borrow: Borrow,
    *,
    now: Optional[datetime] = None,
    equipment_name: Optional[str] = None,
    borrower_name: Optional[str] = None,
) -> Dict[str, Any]:
    """轉換為 API 回應格式，狀態為讀取時計算的有效狀態"""
    return {
        "borrowId": borrow.id,
        "equipmentId": borrow.equipment_id,
        "equipmentName": equipment_name,
        "borrowerId": borrow.borrower_id,
        "borrowerName": borrower_name,
        "classId": borrow.class_id,
        "borrowGroupId": borrow.borrow_group_id,
        "groupKey": group_key(borrow),
        "reservationType": borrow.reservation_type,
        "borrowStatus": lifecycle.effective_status(borrow, now),
        "requestSubmissionTime": borrow.request_submission_time,
        "requestedStartTime": borrow.requested_start_time,
        "requestedEndTime": borrow.requested_end_time,
        "approvedStartTime": borrow.approved_start_time,
        "approvedEndTime": borrow.approved_end_time,
        "approvedById": borrow.approved_by_id,
        "checkoutTime": borrow.checkout_time,
        "actualReturnTime": borrow.actual_return_time,
        "updatedAt": borrow.updated_at,
        "returnCondition": borrow.return_condition,
        "returnRemarks": borrow.return_remarks,
        "dataRequested": borrow.data_requested,
        "dataRequestStatus": borrow.data_request_status,
        "dataRequestRemarks": borrow.data_request_remarks,
        "dataFiles": borrow.data_files or [],
        "requestedEquipmentIds": borrow.requested_equipment_ids or [],
        "lateRequest": lifecycle.is_late_request(borrow, settings.LATE_REQUEST_HOURS),
    }


def _status_condition(status: str, now: datetime):
    """OVERDUE 包含已過期但尚未被排程標記的 ACTIVE"""
    due = func.coalesce(Borrow.approved_end_time, Borrow.requested_end_time)
    if status == BorrowStatus.OVERDUE.value:
        return or_(
            Borrow.borrow_status == BorrowStatus.OVERDUE.value,
            and_(Borrow.borrow_status == BorrowStatus.ACTIVE.value, due <= now),
        )
    if status == BorrowStatus.ACTIVE.value:
        return and_(Borrow.borrow_status == BorrowStatus.ACTIVE.value, due > now)
    return Borrow.borrow_status == status


class CRUDBorrow(CRUDBase[Borrow, BorrowCreate, Any]):
    """借用紀錄 CRUD 操作類"""

    not_found_message = "借用紀錄不存在"

    async def _lock_equipment(self, db: AsyncSession, equipment_ids: Iterable[str]) -> Dict[str, Equipment]:
        """依 ID 排序鎖定器材，避免並行交易互相等待"""
        ids = sorted(set(equipment_ids))
        if not ids:
            return {}
        query = (
            select(Equipment)
            .where(Equipment.id.in_(ids))
            .order_by(Equipment.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await db.execute(query)
        return {e.id: e for e in result.scalars().all()}

    async def _occupying_borrows(self, db: AsyncSession, equipment_ids: Iterable[str]) -> List[Borrow]:
        ids = list(set(equipment_ids))
        if not ids:
            return []
        query = select(Borrow).where(
            and_(
                Borrow.equipment_id.in_(ids),
                Borrow.borrow_status.in_(availability.OCCUPYING_STATUSES),
            )
        )
        result = await db.execute(query)
        return list(result.scalars().all())

    async def unresolved_deficiency_count(self, db: AsyncSession, borrow_id: str) -> int:
        query = select(func.count()).select_from(Deficiency).where(
            and_(
                Deficiency.borrow_id == borrow_id,
                Deficiency.status == DeficiencyStatus.UNRESOLVED.value,
            )
        )
        result = await db.execute(query)
        return result.scalar() or 0

    def _record(
        self,
        db: AsyncSession,
        borrow: Borrow,
        plan: TransitionPlan,
        actor: Actor,
        now: datetime,
        notes: Optional[str] = None,
    ) -> None:
        """套用轉換計畫並新增狀態歷史"""
        lifecycle.apply_plan(borrow, plan)
        borrow.updated_at = now
        db.add(
            BorrowStatusHistory(
                id=str(uuid.uuid4()),
                borrow_id=borrow.id,
                from_status=plan.from_status,
                status=plan.to_status,
                event=plan.event.value,
                timestamp=now,
                operator_id=actor.user_id,
                notes=notes,
            )
        )

    async def _plan(
        self,
        db: AsyncSession,
        borrow: Borrow,
        event: BorrowEvent,
        actor: Actor,
        payload: Optional[TransitionPayload],
        now: datetime,
    ) -> TransitionPlan:
        equipment = None
        equipment_borrows: List[Borrow] = []
        if event in AVAILABILITY_EVENTS:
            equipment = (await self._lock_equipment(db, [borrow.equipment_id])).get(borrow.equipment_id)
            equipment_borrows = await self._occupying_borrows(db, [borrow.equipment_id])
        unresolved = 0
        if event == BorrowEvent.FINALIZE:
            unresolved = await self.unresolved_deficiency_count(db, borrow.id)
        return lifecycle.plan_transition(
            borrow,
            event,
            actor,
            now=now,
            payload=payload,
            equipment=equipment,
            equipment_borrows=equipment_borrows,
            unresolved_deficiencies=unresolved,
            rejection_precedence=settings.REJECTION_ROLE_PRECEDENCE,
            checkout_grace=settings.checkout_grace,
        )

    def _invalidate(self, borrows: Iterable[Borrow]) -> None:
        borrows = list(borrows)
        summary_cache.invalidate(
            user_ids={b.borrower_id for b in borrows},
            equipment_ids={b.equipment_id for b in borrows},
        )

    async def create_request(
        self, db: AsyncSession, *, obj_in: BorrowCreate, borrower: Actor, now: Optional[datetime] = None
    ) -> List[Borrow]:
        """
        建立借用申請

        多項器材或指定同組成員時共用一個群組ID。所有檢查在寫入前完成，
        任一項失敗時不會建立任何紀錄

        Raises:
            ValidationError: 時段、課程或器材數量不合法
            NotFoundError: 器材、課程或同組成員不存在
            AvailabilityConflictError: 器材在此時段已無可用數量
        """
        now = now or datetime.utcnow()
        start, end = obj_in.requestedStartTime, obj_in.requestedEndTime

        if not obj_in.equipmentIds:
            raise ValidationError("至少需要選擇一項器材")
        if len(obj_in.equipmentIds) > settings.MAX_ITEMS_PER_REQUEST:
            raise ValidationError(
                f"單次申請最多 {settings.MAX_ITEMS_PER_REQUEST} 項器材",
                details={"count": len(obj_in.equipmentIds)},
            )
        if end <= start:
            raise ValidationError("結束時間必須晚於開始時間")
        if obj_in.reservationType == ReservationType.IN_CLASS and not obj_in.classId:
            raise ValidationError("課堂使用的預約必須指定課程")
        if not borrower.is_approver and not obj_in.classId:
            raise ValidationError("學生申請必須指定課程")

        if obj_in.classId:
            course = await db.get(Class, obj_in.classId)
            if course is None or not course.is_active:
                raise NotFoundError("課程不存在或已停用", details={"classId": obj_in.classId})
            if not borrower.is_approver:
                enrolled = await db.execute(
                    select(ClassEnrollment.id).where(
                        and_(
                            ClassEnrollment.class_id == obj_in.classId,
                            ClassEnrollment.user_id == borrower.user_id,
                        )
                    )
                )
                if enrolled.first() is None:
                    raise ValidationError("未修習此課程，無法以此課程申請", details={"classId": obj_in.classId})

        mate_ids = sorted({m for m in obj_in.groupMateIds if m and m != borrower.user_id})
        if mate_ids:
            result = await db.execute(select(User.id).where(User.id.in_(mate_ids)))
            missing = set(mate_ids) - set(result.scalars().all())
            if missing:
                raise NotFoundError("同組成員不存在", details={"userIds": sorted(missing)})

        equipment_map = await self._lock_equipment(db, obj_in.equipmentIds)
        missing = [e for e in obj_in.equipmentIds if e not in equipment_map]
        if missing:
            raise NotFoundError("器材不存在", details={"equipmentIds": missing})

        group_id = None
        if len(obj_in.equipmentIds) > 1 or mate_ids:
            group_id = str(uuid.uuid4())

        existing = await self._occupying_borrows(db, equipment_map.keys())
        created: List[Borrow] = []
        for equipment_id in obj_in.equipmentIds:
            # 同一次申請內重複的器材也要計入佔用
            availability.check_available(equipment_map[equipment_id], start, end, existing + created)
            created.append(
                Borrow(
                    id=str(uuid.uuid4()),
                    equipment_id=equipment_id,
                    borrower_id=borrower.user_id,
                    class_id=obj_in.classId,
                    borrow_group_id=group_id,
                    reservation_type=obj_in.reservationType.value,
                    borrow_status=BorrowStatus.PENDING.value,
                    request_submission_time=now,
                    requested_start_time=start,
                    requested_end_time=end,
                    data_files=[],
                    requested_equipment_ids=[],
                )
            )

        db.add_all(created)
        for borrow in created:
            db.add(
                BorrowStatusHistory(
                    id=str(uuid.uuid4()),
                    borrow_id=borrow.id,
                    from_status=None,
                    status=BorrowStatus.PENDING.value,
                    event="create",
                    timestamp=now,
                    operator_id=borrower.user_id,
                    notes="已送出借用申請",
                )
            )
        if group_id:
            for user_id in [borrower.user_id] + mate_ids:
                db.add(BorrowGroupMate(borrow_group_id=group_id, user_id=user_id, added_at=now))

        await self.commit(db)
        summary_cache.invalidate(
            user_ids=[borrower.user_id] + mate_ids,
            equipment_ids=equipment_map.keys(),
        )
        logger.info("Created %d borrow(s) for user %s, group %s", len(created), borrower.user_id, group_id)
        return created

    async def transition(
        self,
        db: AsyncSession,
        *,
        borrow_id: str,
        event: BorrowEvent,
        actor: Actor,
        payload: Optional[TransitionPayload] = None,
        deficiencies: Sequence[DeficiencyIn] = (),
        now: Optional[datetime] = None,
    ) -> Borrow:
        """
        執行單筆借用的狀態轉換

        確認歸還時可同時登記缺失；沒有待處理事項時自動結案

        Raises:
            NotFoundError: 借用紀錄不存在
            InvalidTransitionError: 目前狀態不允許此事件
            PermissionDeniedError: 執行者身分不符
            AvailabilityConflictError: 核准或借出會超過庫存
            PersistenceError: 資料庫寫入失敗
        """
        event = BorrowEvent(event)
        now = now or datetime.utcnow()
        payload = payload or TransitionPayload()

        borrow = await self.get_required(db, borrow_id, for_update=True)
        plan = await self._plan(db, borrow, event, actor, payload, now)
        if deficiencies and event != BorrowEvent.CONFIRM_RETURN:
            raise ValidationError("只有確認歸還時可以登記缺失")

        self._record(db, borrow, plan, actor, now, payload.notes)
        if event == BorrowEvent.CONFIRM_RETURN:
            for item in deficiencies:
                db.add(
                    Deficiency(
                        id=str(uuid.uuid4()),
                        borrow_id=borrow.id,
                        type=item.type.value,
                        description=item.description,
                        status=DeficiencyStatus.UNRESOLVED.value,
                        reported_by_id=actor.user_id,
                        created_at=now,
                    )
                )
            await self.finalize_if_settled(db, borrow, now=now, pending_deficiencies=len(deficiencies))

        await self.commit(db)
        self._invalidate([borrow])
        logger.info("Borrow %s: %s -> %s (%s)", borrow.id, plan.from_status, borrow.borrow_status, event.value)
        return borrow

    async def finalize_if_settled(
        self, db: AsyncSession, borrow: Borrow, *, now: Optional[datetime] = None, pending_deficiencies: int = 0
    ) -> bool:
        """
        已歸還且沒有未處理缺失與進行中的資料請求時結案，不提交交易

        Args:
            pending_deficiencies: 本次交易中新增但尚未寫入的缺失數量
        """
        if borrow.borrow_status != BorrowStatus.RETURNED.value:
            return False
        unresolved = pending_deficiencies + await self.unresolved_deficiency_count(db, borrow.id)
        if unresolved or lifecycle.has_open_data_request(borrow):
            return False
        now = now or datetime.utcnow()
        plan = lifecycle.plan_transition(borrow, BorrowEvent.FINALIZE, SYSTEM_ACTOR, now=now)
        self._record(db, borrow, plan, SYSTEM_ACTOR, now, "無待處理事項，自動結案")
        return True

    async def get_group_members(self, db: AsyncSession, group_id: str, *, for_update: bool = False) -> List[Borrow]:
        """取得群組內的借用紀錄，individual-<id> 代表單筆借用"""
        borrow_id = individual_borrow_id(group_id)
        if borrow_id is not None:
            condition = Borrow.id == borrow_id
        else:
            condition = Borrow.borrow_group_id == group_id
        query = select(Borrow).where(condition).order_by(Borrow.request_submission_time, Borrow.id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(query)
        members = list(result.scalars().all())
        if not members:
            raise NotFoundError("借用群組不存在", details={"groupId": group_id})
        return members

    async def apply_group_action(
        self,
        db: AsyncSession,
        *,
        group_id: str,
        action: GroupAction,
        actor: Actor,
        payload: Optional[TransitionPayload] = None,
        now: Optional[datetime] = None,
    ) -> GroupActionResult:
        """
        對群組內所有借用執行同一操作

        核准、駁回、取消為全有或全無：任一項檢查失敗則整批不寫入。
        借出、申請歸還、確認歸還逐項提交，失敗項目列於結果中
        """
        action = GroupAction(action)
        now = now or datetime.utcnow()
        payload = payload or TransitionPayload()
        if action in ALL_OR_NOTHING_ACTIONS:
            return await self._apply_all_or_nothing(db, group_id, action, actor, payload, now)
        return await self._apply_best_effort(db, group_id, action, actor, payload, now)

    async def _apply_all_or_nothing(
        self,
        db: AsyncSession,
        group_id: str,
        action: GroupAction,
        actor: Actor,
        payload: TransitionPayload,
        now: datetime,
    ) -> GroupActionResult:
        event = ACTION_EVENTS[action]
        members = await self.get_group_members(db, group_id, for_update=True)

        equipment_map: Dict[str, Equipment] = {}
        equipment_borrows: List[Borrow] = []
        if event in AVAILABILITY_EVENTS:
            equipment_ids = [m.equipment_id for m in members]
            equipment_map = await self._lock_equipment(db, equipment_ids)
            equipment_borrows = await self._occupying_borrows(db, equipment_ids)

        plans: List[Tuple[Borrow, TransitionPlan]] = []
        failures: Dict[str, ItemOutcome] = {}
        for member in members:
            try:
                plan = lifecycle.plan_transition(
                    member,
                    event,
                    actor,
                    now=now,
                    payload=payload,
                    equipment=equipment_map.get(member.equipment_id),
                    equipment_borrows=equipment_borrows,
                    rejection_precedence=settings.REJECTION_ROLE_PRECEDENCE,
                )
            except BorrowingError as e:
                failures[member.id] = ItemOutcome(
                    borrow_id=member.id,
                    equipment_id=member.equipment_id,
                    success=False,
                    status=lifecycle.effective_status(member, now),
                    error_code=e.code,
                    message=e.message,
                )
                continue
            plans.append((member, plan))

        result = GroupActionResult(group_id=group_id, action=action, total=len(members))
        if failures:
            for member in members:
                result.results.append(
                    failures.get(member.id)
                    or ItemOutcome(
                        borrow_id=member.id,
                        equipment_id=member.equipment_id,
                        success=False,
                        status=lifecycle.effective_status(member, now),
                        error_code=ABORTED_CODE,
                        message="群組中其他項目無法處理，本項未執行",
                    )
                )
            logger.warning(
                "Group %s %s aborted: %d of %d member(s) failed",
                group_id, action.value, len(failures), len(members),
            )
            return result

        for member, plan in plans:
            self._record(db, member, plan, actor, now, payload.notes)
        await self.commit(db)
        self._invalidate(members)

        for member, plan in plans:
            result.results.append(
                ItemOutcome(
                    borrow_id=member.id,
                    equipment_id=member.equipment_id,
                    success=True,
                    status=plan.to_status,
                )
            )
        return result

    async def _apply_best_effort(
        self,
        db: AsyncSession,
        group_id: str,
        action: GroupAction,
        actor: Actor,
        payload: TransitionPayload,
        now: datetime,
    ) -> GroupActionResult:
        event = ACTION_EVENTS[action]
        members = await self.get_group_members(db, group_id)
        result = GroupActionResult(group_id=group_id, action=action, total=len(members))
        # 提交失敗會回滾並使已載入物件過期，先記下各項目的識別資料
        snapshots = [
            (m.id, m.equipment_id, lifecycle.effective_status(m, now)) for m in members
        ]

        for borrow_id, equipment_id, current_status in snapshots:
            try:
                borrow = await self.get_required(db, borrow_id, for_update=True)
                plan = await self._plan(db, borrow, event, actor, payload, now)
                self._record(db, borrow, plan, actor, now, payload.notes)
                if event == BorrowEvent.CONFIRM_RETURN:
                    await self.finalize_if_settled(db, borrow, now=now)
                # 逐項提交，已成功的項目不因後續失敗而回滾
                await self.commit(db)
            except BorrowingError as e:
                result.results.append(
                    ItemOutcome(
                        borrow_id=borrow_id,
                        equipment_id=equipment_id,
                        success=False,
                        status=current_status,
                        error_code=e.code,
                        message=e.message,
                    )
                )
                continue

            self._invalidate([borrow])
            result.results.append(
                ItemOutcome(
                    borrow_id=borrow.id,
                    equipment_id=borrow.equipment_id,
                    success=True,
                    status=borrow.borrow_status,
                )
            )

        if result.failures:
            logger.warning(
                "Group %s %s partially applied: %d/%d",
                group_id, action.value, result.count, result.total,
            )
        return result

    async def sweep_overdue(self, db: AsyncSession, *, now: Optional[datetime] = None) -> List[str]:
        """
        將已超過歸還時間的借出紀錄寫入 OVERDUE

        重複執行不會有額外變更
        """
        now = now or datetime.utcnow()
        due = func.coalesce(Borrow.approved_end_time, Borrow.requested_end_time)
        query = (
            select(Borrow)
            .where(and_(Borrow.borrow_status == BorrowStatus.ACTIVE.value, due <= now))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await db.execute(query)
        borrows = list(result.scalars().all())
        for borrow in borrows:
            plan = lifecycle.plan_transition(borrow, BorrowEvent.MARK_OVERDUE, SYSTEM_ACTOR, now=now)
            self._record(db, borrow, plan, SYSTEM_ACTOR, now, "已超過歸還時間")
        if borrows:
            await self.commit(db)
            self._invalidate(borrows)
            logger.info("Marked %d borrow(s) as overdue", len(borrows))
        return [b.id for b in borrows]

    async def update_data_request(
        self,
        db: AsyncSession,
        *,
        borrow_id: str,
        obj_in: DataRequestUpdate,
        actor: Actor,
        now: Optional[datetime] = None,
    ) -> Borrow:
        """更新資料請求狀態，完成或失敗後若無其他待處理事項則結案"""
        now = now or datetime.utcnow()
        borrow = await self.get_required(db, borrow_id, for_update=True)
        current = lifecycle.effective_status(borrow, now)
        if not actor.is_approver:
            raise PermissionDeniedError(current, "update-data-request", "只有教職員或授課教師可以處理資料請求")
        if not borrow.data_requested:
            raise ValidationError("此借用沒有資料請求", details={"borrowId": borrow_id})

        borrow.data_request_status = obj_in.dataRequestStatus.value
        if obj_in.dataRequestRemarks is not None:
            borrow.data_request_remarks = obj_in.dataRequestRemarks
        if obj_in.dataFiles is not None:
            borrow.data_files = list(obj_in.dataFiles)
        borrow.updated_at = now

        if obj_in.dataRequestStatus in (DataRequestStatus.COMPLETED, DataRequestStatus.FAILED):
            await self.finalize_if_settled(db, borrow, now=now)

        await self.commit(db)
        self._invalidate([borrow])
        return borrow

    async def list_borrows(
        self,
        db: AsyncSession,
        *,
        actor: Actor,
        status: Optional[str] = None,
        equipment_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
        now: Optional[datetime] = None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        獲取借用列表

        教職員可查看全部；授課教師可查看自己課程的借用；
        其他使用者只能查看自己申請或同組的借用
        """
        now = now or datetime.utcnow()
        conditions = []
        if UserRoleName.STAFF.value not in actor.roles:
            own = or_(
                Borrow.borrower_id == actor.user_id,
                Borrow.borrow_group_id.in_(
                    select(BorrowGroupMate.borrow_group_id).where(BorrowGroupMate.user_id == actor.user_id)
                ),
            )
            if UserRoleName.FACULTY.value in actor.roles:
                own = or_(own, Borrow.class_id.in_(select(Class.id).where(Class.fic_id == actor.user_id)))
            conditions.append(own)
        if status:
            conditions.append(_status_condition(status, now))
        if equipment_id:
            conditions.append(Borrow.equipment_id == equipment_id)

        count_query = select(func.count()).select_from(Borrow)
        if conditions:
            count_query = count_query.where(and_(*conditions))
        total = (await db.execute(count_query)).scalar() or 0

        query = (
            select(Borrow, Equipment.name, User.username)
            .join(Equipment, Borrow.equipment_id == Equipment.id)
            .join(User, Borrow.borrower_id == User.id)
            .order_by(Borrow.request_submission_time.desc(), Borrow.id)
        )
        if conditions:
            query = query.where(and_(*conditions))
        query = query.offset(skip).limit(limit)
        result = await db.execute(query)

        borrows = [
            borrow_to_dict(borrow, now=now, equipment_name=equipment_name, borrower_name=username)
            for borrow, equipment_name, username in result.all()
        ]
        return borrows, total

    async def can_view(self, db: AsyncSession, borrow: Borrow, actor: Actor) -> bool:
        if UserRoleName.STAFF.value in actor.roles or borrow.borrower_id == actor.user_id:
            return True
        if borrow.borrow_group_id:
            mate = await db.execute(
                select(BorrowGroupMate.id).where(
                    and_(
                        BorrowGroupMate.borrow_group_id == borrow.borrow_group_id,
                        BorrowGroupMate.user_id == actor.user_id,
                    )
                )
            )
            if mate.first() is not None:
                return True
        if UserRoleName.FACULTY.value in actor.roles and borrow.class_id:
            course = await db.get(Class, borrow.class_id)
            return course is not None and course.fic_id == actor.user_id
        return False

    async def get_detail(
        self, db: AsyncSession, *, borrow_id: str, now: Optional[datetime] = None
    ) -> Optional[Dict[str, Any]]:
        """獲取借用詳情，含狀態歷史與缺失紀錄"""
        query = (
            select(Borrow, Equipment.name, User.username)
            .join(Equipment, Borrow.equipment_id == Equipment.id)
            .join(User, Borrow.borrower_id == User.id)
            .where(Borrow.id == borrow_id)
        )
        row = (await db.execute(query)).first()
        if not row:
            return None
        borrow, equipment_name, username = row
        detail = borrow_to_dict(borrow, now=now, equipment_name=equipment_name, borrower_name=username)

        history_query = (
            select(BorrowStatusHistory, User.username)
            .outerjoin(User, BorrowStatusHistory.operator_id == User.id)
            .where(BorrowStatusHistory.borrow_id == borrow_id)
            .order_by(BorrowStatusHistory.timestamp, BorrowStatusHistory.id)
        )
        history_result = await db.execute(history_query)
        detail["statusHistory"] = [
            {
                "fromStatus": history.from_status,
                "status": history.status,
                "event": history.event,
                "timestamp": history.timestamp,
                "operatorId": history.operator_id,
                "operatorName": operator_name,
                "notes": history.notes,
            }
            for history, operator_name in history_result.all()
        ]

        deficiency_result = await db.execute(
            select(Deficiency).where(Deficiency.borrow_id == borrow_id).order_by(Deficiency.created_at)
        )
        detail["deficiencies"] = [
            {
                "deficiencyId": d.id,
                "type": d.type,
                "description": d.description,
                "status": d.status,
                "createdAt": d.created_at,
            }
            for d in deficiency_result.scalars().all()
        ]
        return detail

    async def get_group(self, db: AsyncSession, *, group_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """獲取群組借用的所有項目與成員"""
        members = await self.get_group_members(db, group_id)
        ids = [m.id for m in members]
        query = (
            select(Borrow.id, Equipment.name, User.username)
            .join(Equipment, Borrow.equipment_id == Equipment.id)
            .join(User, Borrow.borrower_id == User.id)
            .where(Borrow.id.in_(ids))
        )
        names = {borrow_id: (equipment_name, username) for borrow_id, equipment_name, username in (await db.execute(query)).all()}

        mates = []
        if members[0].borrow_group_id:
            mate_result = await db.execute(
                select(BorrowGroupMate.user_id, User.username)
                .join(User, BorrowGroupMate.user_id == User.id)
                .where(BorrowGroupMate.borrow_group_id == members[0].borrow_group_id)
                .order_by(BorrowGroupMate.added_at, BorrowGroupMate.id)
            )
            mates = [{"userId": user_id, "username": username} for user_id, username in mate_result.all()]

        return {
            "groupId": group_id,
            "borrows": [
                borrow_to_dict(
                    m,
                    now=now,
                    equipment_name=names.get(m.id, (None, None))[0],
                    borrower_name=names.get(m.id, (None, None))[1],
                )
                for m in members
            ],
            "groupMates": mates,
        }

    async def get_dashboard_summary(
        self, db: AsyncSession, *, user_id: str, now: Optional[datetime] = None
    ) -> Dict[str, int]:
        """使用者各狀態的借用數量，結果快取直到相關借用變更"""
        key = summary_cache.user_key(user_id)
        cached = summary_cache.get(key)
        if cached is not None:
            return dict(cached)

        now = now or datetime.utcnow()
        query = select(Borrow).where(
            and_(
                Borrow.borrower_id == user_id,
                Borrow.borrow_status.in_(DASHBOARD_STATUSES),
            )
        )
        result = await db.execute(query)
        counts = {status: 0 for status in DASHBOARD_STATUSES}
        for borrow in result.scalars().all():
            status = lifecycle.effective_status(borrow, now)
            if status in counts:
                counts[status] += 1

        summary_cache.set(key, counts)
        return dict(counts)


borrow = CRUDBorrow(Borrow)
