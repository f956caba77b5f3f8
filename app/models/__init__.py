from app.models.users import User, UserRole
from app.models.classes import Class, ClassEnrollment
from app.models.equipment import Equipment
from app.models.borrows import Borrow, BorrowGroupMate, BorrowStatusHistory
from app.models.deficiencies import Deficiency
from app.models.logs import SystemLog

# 為了方便其他模組導入，這裡導出所有模型
__all__ = [
    "User",
    "UserRole",
    "Class",
    "ClassEnrollment",
    "Equipment",
    "Borrow",
    "BorrowGroupMate",
    "BorrowStatusHistory",
    "Deficiency",
    "SystemLog",
]
