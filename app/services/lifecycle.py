"""
借用紀錄狀態機

狀態轉換分兩步：plan_transition 檢查所有前置條件並算出要寫入的欄位，
apply_plan 才真正修改物件。任何檢查失敗都不會留下部分修改
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence

from app.core.exceptions import (
    InvalidTransitionError,
    PermissionDeniedError,
    ValidationError,
)
from app.models.enums import BorrowStatus, DataRequestStatus, UserRoleName
from app.services import availability

logger = logging.getLogger(__name__)


class BorrowEvent(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    CHECKOUT = "checkout"
    REJECT_APPROVED = "reject-approved"
    MARK_OVERDUE = "mark-overdue"
    REQUEST_RETURN = "request-return"
    CONFIRM_RETURN = "confirm-return"
    FINALIZE = "finalize"


TERMINAL_STATUSES = frozenset(
    {
        BorrowStatus.COMPLETED.value,
        BorrowStatus.REJECTED_FIC.value,
        BorrowStatus.REJECTED_STAFF.value,
        BorrowStatus.CANCELLED.value,
    }
)

FINISHED_STATUSES = frozenset({BorrowStatus.RETURNED.value, BorrowStatus.COMPLETED.value})

APPROVER_ROLES = frozenset({UserRoleName.FACULTY.value, UserRoleName.STAFF.value})

SYSTEM_ROLE = "system"

# 事件 -> 允許的來源狀態
SOURCE_STATUSES: Dict[BorrowEvent, FrozenSet[str]] = {
    BorrowEvent.APPROVE: frozenset({BorrowStatus.PENDING.value}),
    BorrowEvent.REJECT: frozenset({BorrowStatus.PENDING.value}),
    BorrowEvent.CANCEL: frozenset({BorrowStatus.PENDING.value}),
    BorrowEvent.CHECKOUT: frozenset({BorrowStatus.APPROVED.value}),
    BorrowEvent.REJECT_APPROVED: frozenset({BorrowStatus.APPROVED.value}),
    BorrowEvent.MARK_OVERDUE: frozenset({BorrowStatus.OVERDUE.value}),
    BorrowEvent.REQUEST_RETURN: frozenset({BorrowStatus.ACTIVE.value, BorrowStatus.OVERDUE.value}),
    BorrowEvent.CONFIRM_RETURN: frozenset({BorrowStatus.PENDING_RETURN.value}),
    BorrowEvent.FINALIZE: frozenset({BorrowStatus.RETURNED.value}),
}

# 事件 -> 目標狀態 (駁回的目標依角色決定，不在此表)
TARGET_STATUS: Dict[BorrowEvent, str] = {
    BorrowEvent.APPROVE: BorrowStatus.APPROVED.value,
    BorrowEvent.CANCEL: BorrowStatus.CANCELLED.value,
    BorrowEvent.CHECKOUT: BorrowStatus.ACTIVE.value,
    BorrowEvent.MARK_OVERDUE: BorrowStatus.OVERDUE.value,
    BorrowEvent.REQUEST_RETURN: BorrowStatus.PENDING_RETURN.value,
    BorrowEvent.CONFIRM_RETURN: BorrowStatus.RETURNED.value,
    BorrowEvent.FINALIZE: BorrowStatus.COMPLETED.value,
}

OPEN_DATA_REQUEST_STATUSES = frozenset(
    {DataRequestStatus.PENDING.value, DataRequestStatus.IN_PROGRESS.value}
)


@dataclass(frozen=True)
class Actor:
    """執行操作的使用者與其角色"""

    user_id: Optional[str]
    roles: FrozenSet[str] = frozenset()

    @property
    def is_system(self) -> bool:
        return SYSTEM_ROLE in self.roles

    @property
    def is_approver(self) -> bool:
        return bool(self.roles & APPROVER_ROLES)

    def approver_role(self, precedence: Sequence[str]) -> Optional[str]:
        """依設定的角色優先順序回傳審核身分"""
        for role in precedence:
            if role in self.roles and role in APPROVER_ROLES:
                return role
        for role in sorted(self.roles & APPROVER_ROLES):
            return role
        return None

    def rejection_status(self, precedence: Sequence[str]) -> str:
        if self.approver_role(precedence) == UserRoleName.FACULTY.value:
            return BorrowStatus.REJECTED_FIC.value
        return BorrowStatus.REJECTED_STAFF.value


SYSTEM_ACTOR = Actor(user_id=None, roles=frozenset({SYSTEM_ROLE}))


@dataclass
class TransitionPayload:
    """轉換時由呼叫端提供的附加資料"""

    approved_start_time: Optional[datetime] = None
    approved_end_time: Optional[datetime] = None
    return_condition: Optional[str] = None
    return_remarks: Optional[str] = None
    request_data: bool = False
    data_request_remarks: Optional[str] = None
    requested_equipment_ids: List[str] = field(default_factory=list)
    notes: Optional[str] = None


@dataclass(frozen=True)
class TransitionPlan:
    borrow_id: str
    event: BorrowEvent
    from_status: str
    to_status: str
    changes: Dict[str, Any]


def _status(borrow) -> str:
    return getattr(borrow.borrow_status, "value", borrow.borrow_status)


def due_time(borrow) -> Optional[datetime]:
    return borrow.approved_end_time or borrow.requested_end_time


def effective_status(borrow, now: Optional[datetime] = None) -> str:
    """借出中但已超過核准結束時間時，讀取結果為 OVERDUE"""
    status = _status(borrow)
    if status == BorrowStatus.ACTIVE.value:
        now = now or datetime.utcnow()
        due = due_time(borrow)
        if due is not None and now >= due:
            return BorrowStatus.OVERDUE.value
    return status


def is_terminal(borrow) -> bool:
    return _status(borrow) in TERMINAL_STATUSES


def has_open_data_request(borrow) -> bool:
    return bool(borrow.data_requested) and borrow.data_request_status in OPEN_DATA_REQUEST_STATUSES


def _require_approver(borrow, event: BorrowEvent, actor: Actor, current: str, allow_system: bool = False) -> None:
    if actor.is_approver or (allow_system and actor.is_system):
        return
    raise PermissionDeniedError(current, event.value, "只有教職員或授課教師可以執行此操作")


def _require_borrower(borrow, event: BorrowEvent, actor: Actor, current: str) -> None:
    if actor.user_id is None or actor.user_id != borrow.borrower_id:
        raise PermissionDeniedError(current, event.value, "只有借用人本人可以執行此操作")


def _approved_window(borrow, payload: TransitionPayload):
    start = payload.approved_start_time or borrow.requested_start_time
    end = payload.approved_end_time or borrow.requested_end_time
    if end <= start:
        raise ValidationError(
            "核准結束時間必須晚於開始時間",
            details={"approvedStartTime": start.isoformat(), "approvedEndTime": end.isoformat()},
        )
    return start, end


def plan_transition(
    borrow,
    event: BorrowEvent,
    actor: Actor,
    *,
    now: Optional[datetime] = None,
    payload: Optional[TransitionPayload] = None,
    equipment=None,
    equipment_borrows: Iterable = (),
    unresolved_deficiencies: int = 0,
    rejection_precedence: Sequence[str] = (UserRoleName.FACULTY.value, UserRoleName.STAFF.value),
    checkout_grace: timedelta = timedelta(minutes=60),
) -> TransitionPlan:
    """
    檢查狀態轉換的所有前置條件並產生轉換計畫，不修改 borrow

    Args:
        borrow: 借用紀錄
        event: 要執行的事件
        actor: 執行者
        now: 目前時間
        payload: 附加資料 (核准時段、歸還狀況、資料請求等)
        equipment: 核准與借出時需要，用於檢查可用性
        equipment_borrows: 同器材的其他借用紀錄
        unresolved_deficiencies: 未處理的缺失數量，結案時使用
        rejection_precedence: 駁回歸屬的角色優先順序
        checkout_grace: 核准開始時間前多久可以借出

    Raises:
        InvalidTransitionError: 目前狀態不允許此事件
        PermissionDeniedError: 執行者身分不符
        ValidationError: 附加資料不合法
        AvailabilityConflictError: 器材在此時段已無可用數量
    """
    event = BorrowEvent(event)
    now = now or datetime.utcnow()
    payload = payload or TransitionPayload()

    stored = _status(borrow)
    current = effective_status(borrow, now)
    if event == BorrowEvent.MARK_OVERDUE and stored != BorrowStatus.ACTIVE.value:
        raise InvalidTransitionError(stored, event.value)
    if current not in SOURCE_STATUSES[event]:
        raise InvalidTransitionError(current, event.value)

    changes: Dict[str, Any] = {}
    target = TARGET_STATUS.get(event)

    if event == BorrowEvent.APPROVE:
        _require_approver(borrow, event, actor, current)
        start, end = _approved_window(borrow, payload)
        if equipment is None:
            raise ValidationError("核准時需要器材資料以檢查可用性")
        availability.check_available(equipment, start, end, equipment_borrows, exclude_ids=[borrow.id])
        changes.update(
            approved_start_time=start,
            approved_end_time=end,
            approved_by_id=actor.user_id,
            approved_by_role=actor.approver_role(rejection_precedence),
            approved_at=now,
        )

    elif event in (BorrowEvent.REJECT, BorrowEvent.REJECT_APPROVED):
        _require_approver(borrow, event, actor, current)
        target = actor.rejection_status(rejection_precedence)

    elif event == BorrowEvent.CANCEL:
        _require_borrower(borrow, event, actor, current)

    elif event == BorrowEvent.CHECKOUT:
        _require_approver(borrow, event, actor, current)
        start, end = availability.effective_window(borrow)
        if now < start - checkout_grace or now >= end:
            raise InvalidTransitionError(
                current,
                event.value,
                f"目前時間不在核准的借用時段內 ({start.isoformat()} ~ {end.isoformat()})",
            )
        if equipment is None:
            raise ValidationError("借出時需要器材資料以檢查可用性")
        availability.check_available(equipment, start, end, equipment_borrows, exclude_ids=[borrow.id])
        changes.update(checkout_time=now)

    elif event == BorrowEvent.MARK_OVERDUE:
        if not actor.is_system:
            _require_approver(borrow, event, actor, current)

    elif event == BorrowEvent.REQUEST_RETURN:
        _require_borrower(borrow, event, actor, current)
        changes.update(
            return_condition=payload.return_condition,
            return_remarks=payload.return_remarks,
        )
        if payload.request_data:
            changes.update(
                data_requested=True,
                data_request_status=DataRequestStatus.PENDING.value,
                data_request_remarks=payload.data_request_remarks,
                requested_equipment_ids=list(payload.requested_equipment_ids),
            )
        else:
            changes.update(
                data_requested=False,
                data_request_status=None,
                data_request_remarks=None,
                requested_equipment_ids=[],
            )

    elif event == BorrowEvent.CONFIRM_RETURN:
        _require_approver(borrow, event, actor, current)
        if borrow.checkout_time is not None and now <= borrow.checkout_time:
            raise ValidationError("歸還時間必須晚於借出時間")
        changes.update(actual_return_time=now)
        if payload.return_condition is not None:
            changes["return_condition"] = payload.return_condition
        if payload.return_remarks is not None:
            changes["return_remarks"] = payload.return_remarks

    elif event == BorrowEvent.FINALIZE:
        _require_approver(borrow, event, actor, current, allow_system=True)
        if unresolved_deficiencies > 0:
            raise InvalidTransitionError(current, event.value, f"尚有 {unresolved_deficiencies} 項缺失未處理，無法結案")
        if has_open_data_request(borrow):
            raise InvalidTransitionError(current, event.value, "資料請求尚未完成，無法結案")

    return TransitionPlan(
        borrow_id=borrow.id,
        event=event,
        from_status=current,
        to_status=target,
        changes=changes,
    )


def apply_plan(borrow, plan: TransitionPlan) -> None:
    """套用已通過檢查的轉換計畫"""
    for name, value in plan.changes.items():
        setattr(borrow, name, value)
    borrow.borrow_status = plan.to_status


def is_late_request(borrow, threshold_hours: int = 48) -> bool:
    """申請時間距離開始借用不足門檻時數，僅供顯示提示"""
    if borrow.requested_start_time is None or borrow.request_submission_time is None:
        return False
    lead = borrow.requested_start_time - borrow.request_submission_time
    return lead.total_seconds() / 3600 < threshold_hours


def _as_datetime(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def net_contact_seconds(borrows: Iterable) -> float:
    """
    累計已歸還借用的實際使用時間 (秒)

    缺少時間、時間格式錯誤或歸還早於借出的紀錄會被略過並記錄警告
    """
    total = 0.0
    for borrow in borrows:
        if _status(borrow) not in FINISHED_STATUSES:
            continue
        checkout = _as_datetime(borrow.checkout_time)
        returned = _as_datetime(borrow.actual_return_time)
        if checkout is None or returned is None:
            logger.warning(
                "Skipping borrow %s in contact hours: invalid timestamps checkout=%r return=%r",
                borrow.id, borrow.checkout_time, borrow.actual_return_time,
            )
            continue
        try:
            seconds = (returned - checkout).total_seconds()
        except TypeError:
            logger.warning("Skipping borrow %s in contact hours: mixed timezone timestamps", borrow.id)
            continue
        if seconds < 0:
            logger.warning("Skipping borrow %s in contact hours: negative duration %ss", borrow.id, seconds)
            continue
        total += seconds
    return total


def format_duration(total_seconds: float) -> str:
    """格式化時長，例如 5700 秒 -> "1h 35m" """
    total_seconds = max(int(total_seconds), 0)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)

    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if seconds or not parts:
        parts.append(f"{seconds}s")
    return " ".join(parts)
