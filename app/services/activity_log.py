"""
器材活動紀錄

每次查詢時由器材建立時間、借用紀錄、維修日誌與編輯歷史即時組合，
不另外儲存。JSON 日誌的歷史資料格式不一，無法解析的項目略過並記錄警告
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

from app.core.exceptions import MalformedLogEntryWarning
from app.models.enums import BorrowStatus

logger = logging.getLogger(__name__)


class LogEntryType(str, enum.Enum):
    CREATED = "CREATED"
    BORROW_REQUEST = "BORROW_REQUEST"
    BORROW_APPROVED = "BORROW_APPROVED"
    BORROW_REJECTED = "BORROW_REJECTED"
    BORROW_CHECKOUT = "BORROW_CHECKOUT"
    BORROW_RETURN = "BORROW_RETURN"
    BORROW_COMPLETED = "BORROW_COMPLETED"
    MAINTENANCE = "MAINTENANCE"
    EDIT = "EDIT"


@dataclass(frozen=True)
class LogEntry:
    timestamp: datetime
    type: LogEntryType
    details: str
    user: Optional[str] = None
    borrow_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "type": self.type.value,
            "details": self.details,
            "user": self.user,
            "borrowId": self.borrow_id,
        }


@dataclass(frozen=True)
class MaintenanceLogEntry:
    timestamp: datetime
    notes: str
    user: str
    kind: str = "MAINTENANCE"


@dataclass(frozen=True)
class FieldChange:
    field: str
    old_value: Any
    new_value: Any


@dataclass(frozen=True)
class EditLogEntry:
    timestamp: datetime
    user: str
    changes: List[FieldChange] = field(default_factory=list)


@dataclass(frozen=True)
class NoteLogEntry:
    timestamp: datetime
    user_id: Optional[str]
    user_display: str
    text: str


def to_naive_utc(value: datetime) -> datetime:
    """統一轉為不含時區的 UTC 時間，與資料庫欄位比較"""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _require_timestamp(source: str, raw: Any) -> datetime:
    if not isinstance(raw, dict):
        raise MalformedLogEntryWarning(source, "entry is not an object", raw)
    value = raw.get("timestamp")
    if not value or not isinstance(value, str):
        raise MalformedLogEntryWarning(source, "missing timestamp", raw)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise MalformedLogEntryWarning(source, f"unparseable timestamp {value!r}", raw)
    return to_naive_utc(parsed)


def _skip(warning: MalformedLogEntryWarning) -> None:
    logger.warning("Skipping malformed log entry: %s", warning)


def parse_maintenance_entry(raw: Any) -> Optional[MaintenanceLogEntry]:
    try:
        timestamp = _require_timestamp("maintenanceLog", raw)
    except MalformedLogEntryWarning as warning:
        _skip(warning)
        return None
    return MaintenanceLogEntry(
        timestamp=timestamp,
        notes=raw.get("notes") or "未填寫備註",
        user=raw.get("user") or "未指定人員",
        kind=raw.get("type") or "MAINTENANCE",
    )


def parse_edit_entry(raw: Any) -> Optional[EditLogEntry]:
    try:
        timestamp = _require_timestamp("editHistory", raw)
    except MalformedLogEntryWarning as warning:
        _skip(warning)
        return None
    changes = []
    raw_changes = raw.get("changes")
    for change in raw_changes if isinstance(raw_changes, list) else []:
        if isinstance(change, dict) and change.get("field"):
            changes.append(
                FieldChange(
                    field=change["field"],
                    old_value=change.get("oldValue"),
                    new_value=change.get("newValue"),
                )
            )
    return EditLogEntry(timestamp=timestamp, user=raw.get("user") or "未指定人員", changes=changes)


def parse_note_entry(raw: Any) -> Optional[NoteLogEntry]:
    try:
        timestamp = _require_timestamp("customNotesLog", raw)
    except MalformedLogEntryWarning as warning:
        _skip(warning)
        return None
    text = raw.get("text")
    if not isinstance(text, str) or not text.strip():
        _skip(MalformedLogEntryWarning("customNotesLog", "missing text", raw))
        return None
    return NoteLogEntry(
        timestamp=timestamp,
        user_id=raw.get("userId"),
        user_display=raw.get("userDisplay") or "未指定人員",
        text=text,
    )


def _person(user) -> str:
    if user is None:
        return "未知使用者"
    return getattr(user, "username", None) or getattr(user, "email", None) or "未知使用者"


def _fmt(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "N/A"


def _borrow_entries(borrow) -> List[LogEntry]:
    entries = []
    borrower = _person(getattr(borrow, "borrower", None))
    status = getattr(borrow.borrow_status, "value", borrow.borrow_status)
    fallback = borrow.updated_at or borrow.request_submission_time

    if borrow.request_submission_time:
        entries.append(
            LogEntry(
                timestamp=borrow.request_submission_time,
                type=LogEntryType.BORROW_REQUEST,
                details=f"{borrower} 申請借用 {_fmt(borrow.requested_start_time)} ~ {_fmt(borrow.requested_end_time)}",
                user=borrower,
                borrow_id=borrow.id,
            )
        )

    if borrow.approved_by_id:
        approver = _person(getattr(borrow, "approver", None))
        role = "授課教師" if borrow.approved_by_role == "faculty" else "教職員"
        entries.append(
            LogEntry(
                timestamp=borrow.approved_at or fallback,
                type=LogEntryType.BORROW_APPROVED,
                details=f"{role} {approver} 核准，時段 {_fmt(borrow.approved_start_time)} ~ {_fmt(borrow.approved_end_time)}",
                user=approver,
                borrow_id=borrow.id,
            )
        )

    if status in (BorrowStatus.REJECTED_FIC.value, BorrowStatus.REJECTED_STAFF.value):
        by = "授課教師" if status == BorrowStatus.REJECTED_FIC.value else "教職員"
        entries.append(
            LogEntry(
                timestamp=fallback,
                type=LogEntryType.BORROW_REJECTED,
                details=f"已由{by}駁回",
                borrow_id=borrow.id,
            )
        )

    if borrow.checkout_time:
        entries.append(
            LogEntry(
                timestamp=borrow.checkout_time,
                type=LogEntryType.BORROW_CHECKOUT,
                details=f"{borrower} 借出，預計歸還 {_fmt(borrow.approved_end_time or borrow.requested_end_time)}",
                user=borrower,
                borrow_id=borrow.id,
            )
        )

    if borrow.actual_return_time:
        details = (
            f"{borrower} 歸還。狀況：{borrow.return_condition or '未填寫'}。"
            f"備註：{borrow.return_remarks or '無'}"
        )
        deficiencies = getattr(borrow, "deficiencies", None) or []
        if deficiencies:
            summary = ", ".join(
                f"{d.type}: {d.description}" if d.description else f"{d.type}" for d in deficiencies
            )
            details += f" (缺失：{summary})"
        entries.append(
            LogEntry(
                timestamp=borrow.actual_return_time,
                type=LogEntryType.BORROW_RETURN,
                details=details,
                user=borrower,
                borrow_id=borrow.id,
            )
        )

    if status == BorrowStatus.COMPLETED.value and borrow.actual_return_time:
        entries.append(
            LogEntry(
                timestamp=borrow.updated_at or borrow.actual_return_time,
                type=LogEntryType.BORROW_COMPLETED,
                details="借用流程已結案",
                user=borrower,
                borrow_id=borrow.id,
            )
        )
    return entries


def build_activity_log(equipment, borrows: Iterable) -> List[LogEntry]:
    """
    組合器材的活動紀錄，依時間由新到舊排序

    Args:
        equipment: 器材 (需要 created_at, maintenance_log, edit_history)
        borrows: 該器材的借用紀錄，borrower/approver/deficiencies 需已載入

    Returns:
        List[LogEntry]: 由新到舊的紀錄，同時間者維持來源與加入順序
    """
    entries: List[LogEntry] = []

    if equipment.created_at:
        entries.append(
            LogEntry(timestamp=equipment.created_at, type=LogEntryType.CREATED, details="建立器材資料")
        )

    for borrow in borrows:
        entries.extend(_borrow_entries(borrow))

    maintenance_log = equipment.maintenance_log if isinstance(equipment.maintenance_log, list) else []
    for raw in maintenance_log:
        item = parse_maintenance_entry(raw)
        if item is None:
            continue
        label = "維修保養" if item.kind == "MAINTENANCE" else item.kind
        entries.append(
            LogEntry(
                timestamp=item.timestamp,
                type=LogEntryType.MAINTENANCE,
                details=f"{label}。備註：{item.notes}。人員：{item.user}",
                user=item.user,
            )
        )

    edit_history = equipment.edit_history if isinstance(equipment.edit_history, list) else []
    for raw in edit_history:
        item = parse_edit_entry(raw)
        if item is None:
            continue
        changes = "; ".join(
            f'{c.field} 由 "{c.old_value}" 改為 "{c.new_value}"' for c in item.changes
        ) or "更新器材資料"
        entries.append(
            LogEntry(
                timestamp=item.timestamp,
                type=LogEntryType.EDIT,
                details=f"{changes}。人員：{item.user}",
                user=item.user,
            )
        )

    entries = [e for e in entries if e.timestamp is not None]
    entries.sort(key=lambda e: to_naive_utc(e.timestamp), reverse=True)
    return entries
