import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.database import Base
from app.models.enums import BorrowStatus, ReservationType


class Borrow(Base):
    """借用紀錄模型，對應資料庫 borrows 資料表"""
    __tablename__ = "borrows"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    equipment_id = Column(String(36), ForeignKey("equipment.id", ondelete="CASCADE"), nullable=False, index=True)
    borrower_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    class_id = Column(String(36), ForeignKey("classes.id", ondelete="SET NULL"), nullable=True)
    # 同一次送出的多項器材共用群組ID，單項借用為 NULL
    borrow_group_id = Column(String(36), nullable=True, index=True)
    reservation_type = Column(String(20), nullable=False, default=ReservationType.OUT_OF_CLASS.value)
    borrow_status = Column(String(20), nullable=False, default=BorrowStatus.PENDING.value, index=True)

    request_submission_time = Column(DateTime, nullable=False, default=datetime.utcnow)
    requested_start_time = Column(DateTime, nullable=False)
    requested_end_time = Column(DateTime, nullable=False)
    approved_start_time = Column(DateTime, nullable=True)
    approved_end_time = Column(DateTime, nullable=True)
    checkout_time = Column(DateTime, nullable=True)
    actual_return_time = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True, onupdate=datetime.utcnow)

    approved_by_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_by_role = Column(String(20), nullable=True)  # faculty, staff
    approved_at = Column(DateTime, nullable=True)

    # 歸還資訊
    return_condition = Column(Text, nullable=True)
    return_remarks = Column(Text, nullable=True)

    # 資料請求 (產生資料檔案的器材)
    data_requested = Column(Boolean, nullable=False, default=False)
    data_request_status = Column(String(20), nullable=True)
    data_request_remarks = Column(Text, nullable=True)
    data_files = Column(JSON, nullable=False, default=list)
    requested_equipment_ids = Column(JSON, nullable=False, default=list)

    # 樂觀鎖版本號
    version = Column(Integer, nullable=False, default=1)

    # 關聯
    equipment = relationship("Equipment", back_populates="borrows")
    borrower = relationship("User", foreign_keys=[borrower_id])
    approver = relationship("User", foreign_keys=[approved_by_id])
    course = relationship("Class", back_populates="borrows")
    deficiencies = relationship("Deficiency", back_populates="borrow", cascade="all, delete-orphan")
    status_history = relationship("BorrowStatusHistory", back_populates="borrow", cascade="all, delete-orphan")

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Borrow {self.id} {self.borrow_status}>"


class BorrowGroupMate(Base):
    """群組借用成員模型，對應資料庫 borrow_group_mates 資料表"""
    __tablename__ = "borrow_group_mates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    borrow_group_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    added_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    user = relationship("User")

    __table_args__ = (
        UniqueConstraint("borrow_group_id", "user_id", name="uq_borrow_group_mate"),
    )

    def __repr__(self) -> str:
        return f"<BorrowGroupMate {self.user_id} in {self.borrow_group_id}>"


class BorrowStatusHistory(Base):
    """借用狀態歷史模型，對應資料庫 borrow_status_history 資料表"""
    __tablename__ = "borrow_status_history"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    borrow_id = Column(String(36), ForeignKey("borrows.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status = Column(String(20), nullable=True)
    status = Column(String(20), nullable=False)
    event = Column(String(30), nullable=False)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)
    operator_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    notes = Column(Text, nullable=True)

    # 關聯
    borrow = relationship("Borrow", back_populates="status_history")
    operator = relationship("User", foreign_keys=[operator_id])

    def __repr__(self) -> str:
        return f"<BorrowStatusHistory {self.status} for {self.borrow_id}>"
