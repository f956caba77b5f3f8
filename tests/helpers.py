import unittest
import uuid
from datetime import datetime
from types import SimpleNamespace
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.database import Base
from app.models.classes import Class, ClassEnrollment
from app.models.enums import BorrowStatus, EquipmentStatus, UserRoleName
from app.models.equipment import Equipment
from app.models.users import User, UserRole
from app.services.cache import summary_cache
from app.services.lifecycle import Actor

# 固定時間，借用時段為 2030-05-01 09:00 ~ 12:00
NOW = datetime(2030, 5, 1, 8, 0)
START = datetime(2030, 5, 1, 9, 0)
END = datetime(2030, 5, 1, 12, 0)

STAFF = Actor(user_id="staff-1", roles=frozenset({UserRoleName.STAFF.value}))
FACULTY = Actor(user_id="faculty-1", roles=frozenset({UserRoleName.FACULTY.value}))
STUDENT = Actor(user_id="student-1", roles=frozenset({UserRoleName.REGULAR.value}))


def fake_equipment(**overrides):
    values = dict(
        id="eq-1",
        name="示波器",
        status=EquipmentStatus.AVAILABLE.value,
        stock_count=1,
        created_at=datetime(2030, 1, 1),
        maintenance_log=[],
        edit_history=[],
        custom_notes_log=[],
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def fake_borrow(**overrides):
    values = dict(
        id="b-1",
        equipment_id="eq-1",
        borrower_id=STUDENT.user_id,
        borrow_group_id=None,
        borrow_status=BorrowStatus.PENDING.value,
        request_submission_time=datetime(2030, 4, 20, 10, 0),
        requested_start_time=START,
        requested_end_time=END,
        approved_start_time=None,
        approved_end_time=None,
        approved_by_id=None,
        approved_by_role=None,
        approved_at=None,
        checkout_time=None,
        actual_return_time=None,
        updated_at=None,
        return_condition=None,
        return_remarks=None,
        data_requested=False,
        data_request_status=None,
        data_request_remarks=None,
        requested_equipment_ids=[],
        borrower=SimpleNamespace(username="王小明"),
        approver=None,
        deficiencies=[],
    )
    values.update(overrides)
    return SimpleNamespace(**values)


class DatabaseTestCase(unittest.IsolatedAsyncioTestCase):
    """每個測試使用獨立的記憶體 SQLite 資料庫"""

    async def asyncSetUp(self):
        summary_cache.clear()
        self.engine = create_async_engine(
            "sqlite+aiosqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.session_factory = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
        )
        self.db = self.session_factory()

        await self.add_user(STAFF.user_id, "教職員", [UserRoleName.STAFF.value])
        await self.add_user(FACULTY.user_id, "授課教師", [UserRoleName.FACULTY.value])
        await self.add_user(STUDENT.user_id, "王小明", [UserRoleName.REGULAR.value])
        self.course = await self.add_class(fic_id=FACULTY.user_id, students=[STUDENT.user_id])

    async def asyncTearDown(self):
        await self.db.close()
        await self.engine.dispose()
        summary_cache.clear()

    async def add_user(self, user_id: str, username: str, roles: Iterable[str]) -> User:
        user = User(id=user_id, username=username, email=f"{user_id}@example.com", created_at=NOW)
        self.db.add(user)
        for role in roles:
            self.db.add(UserRole(user_id=user_id, role=role, assigned_at=NOW))
        await self.db.commit()
        return user

    async def add_class(self, *, fic_id: Optional[str], students: Iterable[str] = ()) -> Class:
        course = Class(id=str(uuid.uuid4()), course_code="EE101", section="A", fic_id=fic_id, is_active=True)
        self.db.add(course)
        for user_id in students:
            self.db.add(ClassEnrollment(class_id=course.id, user_id=user_id, enrolled_at=NOW))
        await self.db.commit()
        return course

    async def add_equipment(
        self, name: str, *, stock: int = 1, status: str = EquipmentStatus.AVAILABLE.value
    ) -> Equipment:
        equipment = Equipment(
            id=str(uuid.uuid4()),
            name=name,
            stock_count=stock,
            status=status,
            maintenance_log=[],
            edit_history=[],
            custom_notes_log=[],
            created_at=datetime(2030, 1, 1),
        )
        self.db.add(equipment)
        await self.db.commit()
        return equipment
