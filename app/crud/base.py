import logging
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import ConcurrentModificationError, NotFoundError, PersistenceError
from app.database import Base

ModelType = TypeVar("ModelType", bound=Base)
CreateSchemaType = TypeVar("CreateSchemaType", bound=BaseModel)
UpdateSchemaType = TypeVar("UpdateSchemaType", bound=BaseModel)

logger = logging.getLogger(__name__)


class CRUDBase(Generic[ModelType, CreateSchemaType, UpdateSchemaType]):
    """
    CRUD 操作基礎類，提供通用的查詢與交易提交
    """

    # 找不到資料時的錯誤訊息
    not_found_message = "資料不存在"

    def __init__(self, model: Type[ModelType]):
        self.model = model

    async def get(self, db: AsyncSession, id: Any, *, for_update: bool = False) -> Optional[ModelType]:
        """
        根據 ID 獲取資料，for_update 時鎖定該列直到交易結束
        """
        query = select(self.model).where(self.model.id == id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(query)
        return result.scalars().first()

    async def get_required(self, db: AsyncSession, id: Any, *, for_update: bool = False) -> ModelType:
        """與 get 相同，但找不到時拋出 NotFoundError"""
        obj = await self.get(db, id, for_update=for_update)
        if obj is None:
            raise NotFoundError(self.not_found_message, details={"id": id})
        return obj

    async def get_multi(
        self, db: AsyncSession, *, skip: int = 0, limit: int = 100
    ) -> List[ModelType]:
        """
        獲取多筆資料，支援分頁
        """
        query = select(self.model).offset(skip).limit(limit)
        result = await db.execute(query)
        return result.scalars().all()

    async def update_fields(
        self,
        db: AsyncSession,
        *,
        db_obj: ModelType,
        obj_in: Union[UpdateSchemaType, Dict[str, Any]]
    ) -> ModelType:
        """
        更新指定欄位 (欄位名稱需與模型屬性相同)
        """
        if isinstance(obj_in, dict):
            update_data = obj_in
        else:
            update_data = obj_in.model_dump(exclude_unset=True)
        for field, value in update_data.items():
            if hasattr(db_obj, field):
                setattr(db_obj, field, value)
        db.add(db_obj)
        await self.commit(db)
        return db_obj

    async def commit(self, db: AsyncSession) -> None:
        """
        提交交易，資料庫錯誤轉換為 PersistenceError

        Raises:
            ConcurrentModificationError: 樂觀鎖版本不符 (資料已被其他請求修改)
            PersistenceError: 其他資料庫錯誤
        """
        try:
            await db.commit()
        except SQLAlchemyError as e:
            await self._handle_db_error(db, e)

    async def flush(self, db: AsyncSession) -> None:
        """寫入目前的變更但不提交，錯誤處理與 commit 相同"""
        try:
            await db.flush()
        except SQLAlchemyError as e:
            await self._handle_db_error(db, e)

    async def _handle_db_error(self, db: AsyncSession, error: SQLAlchemyError) -> None:
        await db.rollback()
        if isinstance(error, StaleDataError):
            logger.warning("Concurrent modification detected on %s: %s", self.model.__name__, error)
            raise ConcurrentModificationError("資料已被其他操作修改，請重新讀取後再試") from error
        logger.exception("Failed to write %s changes", self.model.__name__)
        raise PersistenceError("資料庫寫入失敗", details={"error": str(error)}) from error
