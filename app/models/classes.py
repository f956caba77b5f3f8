import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from app.database import Base


class Class(Base):
    """課程模型，對應資料庫 classes 資料表"""
    __tablename__ = "classes"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    course_code = Column(String(30), nullable=False, index=True)
    section = Column(String(20), nullable=False)
    academic_year = Column(String(20), nullable=True)
    # 授課教師 (Faculty-in-Charge)
    fic_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # 關聯
    fic = relationship("User", foreign_keys=[fic_id])
    enrollments = relationship("ClassEnrollment", back_populates="course", cascade="all, delete-orphan")
    borrows = relationship("Borrow", back_populates="course")

    def __repr__(self) -> str:
        return f"<Class {self.course_code}-{self.section}>"


class ClassEnrollment(Base):
    """選課紀錄模型，對應資料庫 class_enrollments 資料表"""
    __tablename__ = "class_enrollments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    class_id = Column(String(36), ForeignKey("classes.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    enrolled_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    course = relationship("Class", back_populates="enrollments")
    user = relationship("User")

    __table_args__ = (
        UniqueConstraint("class_id", "user_id", name="uq_class_enrollment"),
    )

    def __repr__(self) -> str:
        return f"<ClassEnrollment {self.user_id} in {self.class_id}>"
