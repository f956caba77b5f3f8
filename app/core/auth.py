from datetime import datetime, timedelta
from typing import List, Sequence

from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.models.users import User, UserRole
from app.services.lifecycle import Actor
from app.services.logging import logging_service

# 使用HTTP Bearer Token身分驗證
security = HTTPBearer()


async def create_access_token(user_id: str, role: str) -> str:
    """
    創建 JWT 訪問令牌
    """
    expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode = {"sub": user_id, "role": role, "exp": expire}
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt


async def get_user_by_id(db: AsyncSession, user_id: str) -> User:
    """
    根據 ID 獲取使用者
    """
    query = select(User).where(User.id == user_id)
    result = await db.execute(query)
    return result.scalars().first()


async def get_user_roles(db: AsyncSession, user_id: str) -> List[str]:
    """
    獲取使用者的所有角色
    """
    query = select(UserRole.role).where(UserRole.user_id == user_id)
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_actor(db: AsyncSession, user: User) -> Actor:
    """將使用者與其角色轉換為借用流程的執行者"""
    roles = await get_user_roles(db, user.id)
    return Actor(user_id=user.id, roles=frozenset(roles))


async def get_current_user(
    request: Request = None,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    獲取當前登入的使用者
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "success": False,
            "error": {
                "code": "INVALID_TOKEN",
                "message": "無效的認證憑證"
            }
        },
        headers={"WWW-Authenticate": "Bearer"},
    )
    ip_address = request.client.host if request and request.client else None
    try:
        token = credentials.credentials
        payload = jwt.decode(
            token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM]
        )
        user_id = payload.get("sub")
        role = payload.get("role")
        if user_id is None or role is None:
            await logging_service.warning(
                db,
                component="auth",
                message="認證失敗：無效的令牌內容",
                details={"error": "Missing sub or role in token"}
            )
            raise credentials_exception
    except JWTError as e:
        await logging_service.warning(
            db,
            component="auth",
            message="認證失敗：令牌驗證錯誤",
            details={"error": str(e)},
            ip_address=ip_address
        )
        raise credentials_exception

    user = await get_user_by_id(db, user_id)
    if user is None:
        await logging_service.warning(
            db,
            component="auth",
            message=f"認證失敗：用戶ID {user_id} 不存在",
            ip_address=ip_address
        )
        raise credentials_exception

    # 更新最後登入時間
    user.last_login = datetime.utcnow()
    await db.commit()

    return user


async def get_current_user_with_role(
    required_roles: Sequence[str], current_user: User, db: AsyncSession
) -> User:
    """
    驗證當前使用者是否擁有指定角色之一
    """
    user_roles = await get_user_roles(db, current_user.id)
    if not set(required_roles) & set(user_roles):
        await logging_service.warning(
            db,
            component="auth",
            message=f"權限不足：用戶 {current_user.username} 嘗試使用 {'/'.join(required_roles)} 角色的功能",
            details={"userId": current_user.id, "requiredRoles": list(required_roles), "userRoles": user_roles},
            user_id=current_user.id
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "success": False,
                "error": {
                    "code": "INSUFFICIENT_PERMISSIONS",
                    "message": "權限不足，需要 {} 角色".format("/".join(required_roles))
                }
            }
        )
    return current_user
