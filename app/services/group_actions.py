"""
群組借用的批次操作定義

群組在申請階段視為一個整體：核准、駁回、取消任一項失敗就整批不執行。
借出與歸還則逐項處理，失敗的項目另行回報，不回滾已成功的項目
"""
import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from app.services.lifecycle import BorrowEvent

INDIVIDUAL_PREFIX = "individual-"
ABORTED_CODE = "GROUP_ABORTED"


class GroupAction(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    CHECKOUT = "checkout"
    REQUEST_RETURN = "request-return"
    CONFIRM_RETURN = "confirm-return"


ACTION_EVENTS: Dict[GroupAction, BorrowEvent] = {
    GroupAction.APPROVE: BorrowEvent.APPROVE,
    GroupAction.REJECT: BorrowEvent.REJECT,
    GroupAction.CANCEL: BorrowEvent.CANCEL,
    GroupAction.CHECKOUT: BorrowEvent.CHECKOUT,
    GroupAction.REQUEST_RETURN: BorrowEvent.REQUEST_RETURN,
    GroupAction.CONFIRM_RETURN: BorrowEvent.CONFIRM_RETURN,
}

ALL_OR_NOTHING_ACTIONS = frozenset({GroupAction.APPROVE, GroupAction.REJECT, GroupAction.CANCEL})

ACTION_LABELS: Dict[GroupAction, str] = {
    GroupAction.APPROVE: "核准",
    GroupAction.REJECT: "駁回",
    GroupAction.CANCEL: "取消",
    GroupAction.CHECKOUT: "借出",
    GroupAction.REQUEST_RETURN: "申請歸還",
    GroupAction.CONFIRM_RETURN: "確認歸還",
}


def group_key(borrow) -> str:
    """沒有群組ID的借用視為只有一項的群組"""
    return borrow.borrow_group_id or f"{INDIVIDUAL_PREFIX}{borrow.id}"


def individual_borrow_id(group_id: str) -> Optional[str]:
    if group_id.startswith(INDIVIDUAL_PREFIX):
        return group_id[len(INDIVIDUAL_PREFIX):]
    return None


@dataclass(frozen=True)
class ItemOutcome:
    borrow_id: str
    equipment_id: str
    success: bool
    status: str
    error_code: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "borrowId": self.borrow_id,
            "equipmentId": self.equipment_id,
            "success": self.success,
            "status": self.status,
            "errorCode": self.error_code,
            "message": self.message,
        }


@dataclass
class GroupActionResult:
    group_id: str
    action: GroupAction
    total: int
    results: List[ItemOutcome] = field(default_factory=list)

    @property
    def count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failures(self) -> List[ItemOutcome]:
        return [r for r in self.results if not r.success and r.error_code != ABORTED_CODE]

    @property
    def aborted(self) -> bool:
        return self.action in ALL_OR_NOTHING_ACTIONS and bool(self.failures)

    @property
    def message(self) -> str:
        label = ACTION_LABELS[self.action]
        if self.aborted:
            return f"群組中有 {len(self.failures)} 項無法{label}，整批未執行"
        return f"已{label} {self.count}/{self.total} 項器材"

    def to_dict(self) -> dict:
        return {
            "groupId": self.group_id,
            "action": self.action.value,
            "count": self.count,
            "total": self.total,
            "message": self.message,
            "results": [r.to_dict() for r in self.results],
            "failures": [r.to_dict() for r in self.failures],
        }

