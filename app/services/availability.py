"""
器材可用性計算

純函式，不存取資料庫：呼叫端先載入器材與相關借用紀錄，
並在狀態轉換的交易內重新檢查，避免並行申請超出庫存
"""
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Set, Tuple

from app.core.exceptions import AvailabilityConflictError
from app.models.enums import BorrowStatus, EquipmentStatus

# 佔用庫存的借用狀態
OCCUPYING_STATUSES = frozenset(
    {
        BorrowStatus.PENDING.value,
        BorrowStatus.APPROVED.value,
        BorrowStatus.ACTIVE.value,
        BorrowStatus.OVERDUE.value,
        BorrowStatus.PENDING_RETURN.value,
    }
)

# 已借出 (實際離開庫房) 的狀態
CHECKED_OUT_STATUSES = frozenset(
    {
        BorrowStatus.ACTIVE.value,
        BorrowStatus.OVERDUE.value,
        BorrowStatus.PENDING_RETURN.value,
    }
)

# 器材處於這些狀態時一律不可借用
UNAVAILABLE_EQUIPMENT_STATUSES = frozenset(
    {
        EquipmentStatus.UNDER_MAINTENANCE.value,
        EquipmentStatus.DEFECTIVE.value,
        EquipmentStatus.OUT_OF_COMMISSION.value,
        EquipmentStatus.ARCHIVED.value,
    }
)

# 人工設定後優先於計算結果的器材狀態
OVERRIDE_EQUIPMENT_STATUSES = UNAVAILABLE_EQUIPMENT_STATUSES | {EquipmentStatus.RESERVED.value}


def _value(status) -> str:
    return getattr(status, "value", status)


def effective_window(borrow) -> Tuple[datetime, datetime]:
    """核准時段優先，未核准時使用申請時段"""
    start = borrow.approved_start_time or borrow.requested_start_time
    end = borrow.approved_end_time or borrow.requested_end_time
    return start, end


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """半開區間 [start, end) 是否重疊"""
    return a_start < b_end and b_start < a_end


def is_occupying(borrow) -> bool:
    return _value(borrow.borrow_status) in OCCUPYING_STATUSES


def count_occupying(
    borrows: Iterable,
    window_start: datetime,
    window_end: datetime,
    exclude_ids: Iterable[str] = (),
) -> int:
    """計算與時段重疊且仍佔用庫存的借用數量"""
    excluded = set(exclude_ids)
    count = 0
    for borrow in borrows:
        if borrow.id in excluded or not is_occupying(borrow):
            continue
        start, end = effective_window(borrow)
        if start is None or end is None:
            continue
        if overlaps(start, end, window_start, window_end):
            count += 1
    return count


def is_available(
    equipment,
    window_start: datetime,
    window_end: datetime,
    borrows: Iterable,
    exclude_ids: Iterable[str] = (),
) -> bool:
    """
    判斷器材在指定時段是否仍有可用數量

    Args:
        equipment: 器材 (需要 id, status, stock_count)
        window_start: 時段開始
        window_end: 時段結束 (不含)
        borrows: 該器材的借用紀錄
        exclude_ids: 不列入計算的借用ID (通常是正在轉換狀態的那一筆)
    """
    if _value(equipment.status) in UNAVAILABLE_EQUIPMENT_STATUSES:
        return False
    occupied = count_occupying(
        (b for b in borrows if b.equipment_id == equipment.id),
        window_start,
        window_end,
        exclude_ids,
    )
    return occupied < (equipment.stock_count or 0)


def check_available(
    equipment,
    window_start: datetime,
    window_end: datetime,
    borrows: Iterable,
    exclude_ids: Iterable[str] = (),
) -> None:
    """與 is_available 相同，但不可用時拋出 AvailabilityConflictError"""
    status = _value(equipment.status)
    if status in UNAVAILABLE_EQUIPMENT_STATUSES:
        raise AvailabilityConflictError(
            equipment.id,
            f"器材「{equipment.name}」目前狀態為 {status}，無法借用",
            details={"equipmentStatus": status},
        )
    borrows = [b for b in borrows if b.equipment_id == equipment.id]
    occupied = count_occupying(borrows, window_start, window_end, exclude_ids)
    if occupied >= (equipment.stock_count or 0):
        raise AvailabilityConflictError(
            equipment.id,
            f"器材「{equipment.name}」在此時段已無可用數量",
            details={"stockCount": equipment.stock_count, "occupied": occupied},
        )


def derive_equipment_status(equipment, borrows: Iterable, now: Optional[datetime] = None) -> str:
    """
    計算器材對外顯示的狀態

    人工覆寫狀態 (維修、故障、停用、封存、保留) 優先，
    其餘依目前已借出的數量與庫存比較得出 BORROWED 或 AVAILABLE
    """
    status = _value(equipment.status)
    if status in OVERRIDE_EQUIPMENT_STATUSES:
        return status
    checked_out = sum(
        1
        for b in borrows
        if b.equipment_id == equipment.id and _value(b.borrow_status) in CHECKED_OUT_STATUSES
    )
    if checked_out >= (equipment.stock_count or 0):
        return EquipmentStatus.BORROWED.value
    return EquipmentStatus.AVAILABLE.value


def unavailable_dates(
    stock_count: int,
    borrows: Iterable,
    start_day: date,
    horizon_days: int,
) -> Set[date]:
    """
    日曆顯示用：回傳佔用數量已達庫存的日期

    以整天 [00:00, 次日 00:00) 為單位判斷重疊，庫存為 0 時每天都不可借
    """
    days = [start_day + timedelta(days=offset) for offset in range(horizon_days + 1)]
    if stock_count <= 0:
        return set(days)

    intervals = []
    for borrow in borrows:
        if not is_occupying(borrow):
            continue
        start, end = effective_window(borrow)
        if start is None or end is None or end <= start:
            continue
        intervals.append((start, end))

    result = set()
    for day in days:
        day_start = datetime(day.year, day.month, day.day)
        day_end = day_start + timedelta(days=1)
        overlapping = sum(1 for start, end in intervals if overlaps(start, end, day_start, day_end))
        if overlapping >= stock_count:
            result.add(day)
    return result
