import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import relationship

from app.database import Base
from app.models.enums import EquipmentCategory, EquipmentStatus


class Equipment(Base):
    """器材模型，對應資料庫 equipment 資料表"""
    __tablename__ = "equipment"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(100), nullable=False, unique=True, index=True)
    category = Column(String(20), nullable=False, default=EquipmentCategory.OTHER.value)
    stock_count = Column(Integer, nullable=False, default=1)
    # 只儲存人工設定的覆寫狀態，AVAILABLE 表示沒有覆寫，借出/預約狀態於讀取時計算
    status = Column(String(20), nullable=False, default=EquipmentStatus.AVAILABLE.value, index=True)
    is_data_generating = Column(Boolean, nullable=False, default=False)
    condition = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    purchase_cost = Column(Numeric(12, 2), nullable=True)
    # JSON 陣列，內容格式不保證，讀取時需要驗證
    maintenance_log = Column(JSON, nullable=False, default=list)
    edit_history = Column(JSON, nullable=False, default=list)
    custom_notes_log = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=datetime.utcnow)
    created_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # 關聯
    creator = relationship("User", foreign_keys=[created_by])
    borrows = relationship("Borrow", back_populates="equipment", passive_deletes=True)

    def __repr__(self) -> str:
        return f"<Equipment {self.name}>"
