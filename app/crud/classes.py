from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.exceptions import NotFoundError, ValidationError
from app.crud.base import CRUDBase
from app.models.classes import Class, ClassEnrollment
from app.models.enums import UserRoleName
from app.models.users import User, UserRole
from app.schemas.classes import ClassCreate
from app.services.lifecycle import Actor


def class_to_dict(course: Class) -> Dict[str, Any]:
    return {
        "classId": course.id,
        "courseCode": course.course_code,
        "section": course.section,
        "academicYear": course.academic_year,
        "ficId": course.fic_id,
        "ficName": course.fic.username if course.fic else None,
        "isActive": course.is_active,
        "studentIds": sorted(e.user_id for e in course.enrollments),
        "createdAt": course.created_at,
    }


class CRUDClass(CRUDBase[Class, ClassCreate, Any]):
    """課程與選課 CRUD 操作類"""

    not_found_message = "課程不存在"

    def _with_relations(self):
        return select(Class).options(selectinload(Class.fic), selectinload(Class.enrollments))

    async def get_detail(self, db: AsyncSession, class_id: str) -> Class:
        result = await db.execute(
            self._with_relations().where(Class.id == class_id).execution_options(populate_existing=True)
        )
        course = result.scalars().first()
        if course is None:
            raise NotFoundError(self.not_found_message, details={"classId": class_id})
        return course

    async def get_list(self, db: AsyncSession, *, actor: Actor, include_inactive: bool = False) -> List[Class]:
        """
        獲取課程列表

        學生只看到自己修習的課程，教職員與教師看到全部
        """
        query = self._with_relations().order_by(
            Class.academic_year.desc(), Class.course_code, Class.section
        )
        if not include_inactive:
            query = query.where(Class.is_active.is_(True))
        if not actor.is_approver:
            enrolled = select(ClassEnrollment.class_id).where(ClassEnrollment.user_id == actor.user_id)
            query = query.where(Class.id.in_(enrolled))
        result = await db.execute(query)
        return result.scalars().all()

    async def create(self, db: AsyncSession, *, obj_in: ClassCreate) -> Optional[Class]:
        """
        建立課程，同學年度的課程代碼與班別重複時回傳 None

        Raises:
            ValidationError: 授課教師不存在或不具教師身分
        """
        is_faculty = await db.execute(
            select(UserRole.user_id).where(
                and_(UserRole.user_id == obj_in.ficId, UserRole.role == UserRoleName.FACULTY.value)
            )
        )
        if is_faculty.first() is None:
            raise ValidationError("授課教師必須是具有教師身分的使用者", details={"ficId": obj_in.ficId})

        existing = await db.execute(
            select(Class.id).where(
                and_(
                    Class.course_code == obj_in.courseCode,
                    Class.section == obj_in.section,
                    Class.academic_year == obj_in.academicYear
                    if obj_in.academicYear
                    else Class.academic_year.is_(None),
                )
            )
        )
        if existing.first() is not None:
            return None

        course = Class(
            course_code=obj_in.courseCode,
            section=obj_in.section,
            academic_year=obj_in.academicYear,
            fic_id=obj_in.ficId,
            is_active=True,
            created_at=datetime.utcnow(),
        )
        db.add(course)
        await self.commit(db)
        return await self.get_detail(db, course.id)

    async def add_enrollments(
        self, db: AsyncSession, *, db_obj: Class, user_ids: List[str]
    ) -> Dict[str, List[str]]:
        """
        將學生加入課程，已在課程中的學生略過

        Raises:
            NotFoundError: 有使用者不存在，此時不會加入任何人
        """
        result = await db.execute(select(User.id).where(User.id.in_(user_ids)))
        missing = set(user_ids) - set(result.scalars().all())
        if missing:
            raise NotFoundError("使用者不存在", details={"userIds": sorted(missing)})

        current = {e.user_id for e in db_obj.enrollments}
        added = [user_id for user_id in user_ids if user_id not in current]
        now = datetime.utcnow()
        for user_id in added:
            db.add(ClassEnrollment(class_id=db_obj.id, user_id=user_id, enrolled_at=now))
        await self.commit(db)
        return {"added": added, "alreadyEnrolled": [u for u in user_ids if u in current]}

    async def remove_enrollment(self, db: AsyncSession, *, db_obj: Class, user_id: str) -> bool:
        """將學生移出課程，不在課程中時回傳 False"""
        result = await db.execute(
            delete(ClassEnrollment).where(
                and_(ClassEnrollment.class_id == db_obj.id, ClassEnrollment.user_id == user_id)
            )
        )
        if not result.rowcount:
            return False
        await self.commit(db)
        return True


course = CRUDClass(Class)
