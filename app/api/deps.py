from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_user, get_current_user_with_role
from app.database import get_db
from app.models.enums import UserRoleName
from app.models.users import User


# 依賴函數：獲取已認證的使用者
async def get_borrower_user(
    current_user: User = Depends(get_current_user),
) -> User:
    """
    依賴函數：任何已登入的使用者都可以申請借用
    """
    return current_user


async def get_approver_user(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> User:
    """
    依賴函數：獲取具有教職員或授課教師角色的認證使用者
    """
    return await get_current_user_with_role(
        (UserRoleName.STAFF.value, UserRoleName.FACULTY.value), current_user, db
    )


async def get_staff_user(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> User:
    """
    依賴函數：獲取具有教職員角色的認證使用者
    """
    return await get_current_user_with_role((UserRoleName.STAFF.value,), current_user, db)
