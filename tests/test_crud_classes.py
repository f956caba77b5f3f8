from app.core.exceptions import NotFoundError, ValidationError
from app.crud.borrows import borrow as crud_borrow
from app.crud.classes import class_to_dict
from app.crud.classes import course as crud_class
from app.models.enums import BorrowStatus, UserRoleName
from app.schemas.borrows import BorrowCreate
from app.schemas.classes import ClassCreate
from app.services.lifecycle import Actor
from tests.helpers import END, FACULTY, NOW, STAFF, START, STUDENT, DatabaseTestCase

NEW_STUDENT = Actor(user_id="student-2", roles=frozenset({UserRoleName.REGULAR.value}))


class ClassTestCase(DatabaseTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.add_user(NEW_STUDENT.user_id, "李小華", [UserRoleName.REGULAR.value])

    async def create_class(self, code="ME201", section="B", fic_id=FACULTY.user_id):
        return await crud_class.create(
            self.db, obj_in=ClassCreate(courseCode=code, section=section, academicYear="2029-2030", ficId=fic_id)
        )


class CreateClassTests(ClassTestCase):
    async def test_create_and_reject_duplicate(self):
        course = await self.create_class()
        data = class_to_dict(course)
        self.assertEqual((data["courseCode"], data["section"]), ("ME201", "B"))
        self.assertEqual(data["ficName"], "授課教師")
        self.assertEqual(data["studentIds"], [])

        self.assertIsNone(await self.create_class())
        self.assertIsNotNone(await self.create_class(section="C"))

    async def test_fic_must_be_faculty(self):
        with self.assertRaises(ValidationError):
            await self.create_class(fic_id=STUDENT.user_id)
        with self.assertRaises(ValidationError):
            await self.create_class(fic_id="nobody")


class EnrollmentTests(ClassTestCase):
    async def test_enrolled_student_can_request_borrow(self):
        course = await self.create_class()
        equipment = await self.add_equipment("示波器")
        obj_in = BorrowCreate(
            equipmentIds=[equipment.id], requestedStartTime=START, requestedEndTime=END, classId=course.id
        )
        with self.assertRaises(ValidationError):
            await crud_borrow.create_request(self.db, obj_in=obj_in, borrower=NEW_STUDENT, now=NOW)

        result = await crud_class.add_enrollments(self.db, db_obj=course, user_ids=[NEW_STUDENT.user_id])
        self.assertEqual(result, {"added": [NEW_STUDENT.user_id], "alreadyEnrolled": []})

        (borrow,) = await crud_borrow.create_request(self.db, obj_in=obj_in, borrower=NEW_STUDENT, now=NOW)
        self.assertEqual(borrow.borrow_status, BorrowStatus.PENDING.value)
        self.assertEqual(borrow.class_id, course.id)

    async def test_add_skips_existing_and_rejects_unknown_users(self):
        course = await crud_class.get_detail(self.db, self.course.id)
        result = await crud_class.add_enrollments(
            self.db, db_obj=course, user_ids=[STUDENT.user_id, NEW_STUDENT.user_id]
        )
        self.assertEqual(result["added"], [NEW_STUDENT.user_id])
        self.assertEqual(result["alreadyEnrolled"], [STUDENT.user_id])

        course = await crud_class.get_detail(self.db, self.course.id)
        with self.assertRaises(NotFoundError):
            await crud_class.add_enrollments(self.db, db_obj=course, user_ids=["ghost"])
        self.assertEqual(class_to_dict(course)["studentIds"], sorted([STUDENT.user_id, NEW_STUDENT.user_id]))

    async def test_remove_enrollment(self):
        course = await crud_class.get_detail(self.db, self.course.id)
        self.assertTrue(await crud_class.remove_enrollment(self.db, db_obj=course, user_id=STUDENT.user_id))
        self.assertFalse(await crud_class.remove_enrollment(self.db, db_obj=course, user_id=STUDENT.user_id))

        course = await crud_class.get_detail(self.db, self.course.id)
        self.assertEqual(class_to_dict(course)["studentIds"], [])

    async def test_list_is_scoped_for_students(self):
        await self.create_class()

        self.assertEqual(len(await crud_class.get_list(self.db, actor=STAFF)), 2)
        self.assertEqual(len(await crud_class.get_list(self.db, actor=FACULTY)), 2)
        self.assertEqual([c.id for c in await crud_class.get_list(self.db, actor=STUDENT)], [self.course.id])
        self.assertEqual(await crud_class.get_list(self.db, actor=NEW_STUDENT), [])

    async def test_unknown_class(self):
        with self.assertRaises(NotFoundError):
            await crud_class.get_detail(self.db, "missing")
