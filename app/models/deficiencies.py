import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from app.database import Base
from app.models.enums import DeficiencyStatus


class Deficiency(Base):
    """缺失 (損壞/遺失) 紀錄模型，對應資料庫 deficiencies 資料表"""
    __tablename__ = "deficiencies"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    borrow_id = Column(String(36), ForeignKey("borrows.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(20), nullable=False)  # DAMAGE, LOSS, MISHANDLING, OTHER
    description = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=DeficiencyStatus.UNRESOLVED.value, index=True)
    reported_by_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    resolved_by_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    resolved_at = Column(DateTime, nullable=True)

    # 關聯
    borrow = relationship("Borrow", back_populates="deficiencies")
    reporter = relationship("User", foreign_keys=[reported_by_id])
    resolver = relationship("User", foreign_keys=[resolved_by_id])

    def __repr__(self) -> str:
        return f"<Deficiency {self.type} for {self.borrow_id}>"
