import enum


class UserRoleName(str, enum.Enum):
    """使用者角色"""
    REGULAR = "regular"  # 學生 / 一般借用人
    FACULTY = "faculty"  # 授課教師 (FIC)
    STAFF = "staff"


class EquipmentCategory(str, enum.Enum):
    INSTRUMENTS = "INSTRUMENTS"
    ACCESSORIES = "ACCESSORIES"
    TOOLS = "TOOLS"
    CONSUMABLES = "CONSUMABLES"
    OTHER = "OTHER"


class EquipmentStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    BORROWED = "BORROWED"
    RESERVED = "RESERVED"
    UNDER_MAINTENANCE = "UNDER_MAINTENANCE"
    DEFECTIVE = "DEFECTIVE"
    OUT_OF_COMMISSION = "OUT_OF_COMMISSION"
    ARCHIVED = "ARCHIVED"


class BorrowStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    PENDING_RETURN = "PENDING_RETURN"
    RETURNED = "RETURNED"
    COMPLETED = "COMPLETED"
    REJECTED_FIC = "REJECTED_FIC"
    REJECTED_STAFF = "REJECTED_STAFF"
    CANCELLED = "CANCELLED"


class ReservationType(str, enum.Enum):
    IN_CLASS = "IN_CLASS"
    OUT_OF_CLASS = "OUT_OF_CLASS"


class DataRequestStatus(str, enum.Enum):
    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    FAILED = "Failed"


class DeficiencyType(str, enum.Enum):
    DAMAGE = "DAMAGE"
    LOSS = "LOSS"
    MISHANDLING = "MISHANDLING"
    OTHER = "OTHER"


class DeficiencyStatus(str, enum.Enum):
    UNRESOLVED = "UNRESOLVED"
    RESOLVED = "RESOLVED"
