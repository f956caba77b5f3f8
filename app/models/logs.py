import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from app.database import Base


class SystemLog(Base):
    """系統日誌模型，對應資料庫 system_logs 資料表"""
    __tablename__ = "system_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    level = Column(String(10), nullable=False, index=True)  # info, warning, error
    component = Column(String(20), nullable=False, index=True)  # auth, borrow, group, equipment, deficiency
    message = Column(Text, nullable=False)
    details = Column(Text, nullable=True)  # JSON格式
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    borrow_id = Column(String(36), ForeignKey("borrows.id", ondelete="SET NULL"), nullable=True, index=True)
    ip_address = Column(String(45), nullable=True)

    # 關聯
    user = relationship("User", foreign_keys=[user_id])
    borrow = relationship("Borrow", foreign_keys=[borrow_id])

    def __repr__(self) -> str:
        return f"<SystemLog {self.id} {self.level}>"
