from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from app.config import settings

# 創建異步引擎
engine = create_async_engine(
    str(settings.DATABASE_URL),
    echo=settings.DEBUG,
    future=True,
)

# 創建異步會話
async_session = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False, autocommit=False, autoflush=False
)

# 宣告基礎模型
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    依賴函數，用於FastAPI端點獲取異步資料庫會話
    """
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# 初始化資料庫
async def init_db() -> None:
    """
    初始化資料庫，在應用啟動時使用
    """
    # 匯入模型以註冊所有資料表
    import app.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session() as session:
        await _ensure_admin_user(session)
        await session.commit()


async def _ensure_admin_user(session: AsyncSession) -> str:
    """
    Ensure that the default staff account exists
    Returns the admin user ID
    """
    admin_id = "admin001"
    result = await session.execute(text("SELECT COUNT(*) FROM users WHERE id = :id"), {"id": admin_id})
    if result.scalar() == 0:
        await session.execute(
            text(
                """
                INSERT INTO users (id, username, email, created_at)
                VALUES (:id, :username, :email, CURRENT_TIMESTAMP)
                """
            ),
            {"id": admin_id, "username": "系統管理員", "email": "admin@example.com"},
        )
        # 預設帳號同時擁有教職員與一般使用者角色
        for role in ("staff", "regular"):
            await session.execute(
                text(
                    """
                    INSERT INTO user_roles (user_id, role, assigned_at)
                    VALUES (:user_id, :role, CURRENT_TIMESTAMP)
                    """
                ),
                {"user_id": admin_id, "role": role},
            )
    return admin_id
