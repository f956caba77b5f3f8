import unittest
from datetime import datetime, timedelta

from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import settings
from app.core.auth import create_access_token
from app.database import Base, get_db
from app.main import app
from app.models.classes import Class, ClassEnrollment
from app.models.enums import UserRoleName
from app.models.logs import SystemLog
from app.models.users import User, UserRole
from app.services.cache import summary_cache


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        summary_cache.clear()
        self.engine = create_async_engine(
            "sqlite+aiosqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        self.session_factory = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
        )

        async def override_get_db():
            async with self.session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

        app.dependency_overrides[get_db] = override_get_db
        self.client = TestClient(app)
        self.client.__enter__()
        self.client.portal.call(self._seed)
        self.tokens = {
            user_id: self.client.portal.call(create_access_token, user_id, role)
            for user_id, role in (("staff-1", "staff"), ("faculty-1", "faculty"), ("student-1", "regular"))
        }

    def tearDown(self):
        self.client.portal.call(self.engine.dispose)
        self.client.__exit__(None, None, None)
        app.dependency_overrides.clear()
        summary_cache.clear()

    async def _seed(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with self.session_factory() as session:
            for user_id, name, role in (
                ("staff-1", "教職員", UserRoleName.STAFF.value),
                ("faculty-1", "授課教師", UserRoleName.FACULTY.value),
                ("student-1", "王小明", UserRoleName.REGULAR.value),
            ):
                session.add(User(id=user_id, username=name, email=f"{user_id}@example.com"))
                session.add(UserRole(user_id=user_id, role=role))
            session.add(Class(id="class-1", course_code="EE101", section="A", fic_id="faculty-1", is_active=True))
            session.add(ClassEnrollment(class_id="class-1", user_id="student-1"))
            await session.commit()

    def headers(self, user_id):
        return {"Authorization": f"Bearer {self.tokens[user_id]}"}

    def create_equipment(self, name, **fields):
        body = {"name": name, "stockCount": 1, **fields}
        response = self.client.post("/api/equipment", json=body, headers=self.headers("staff-1"))
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["data"]["equipmentId"]

    def request_borrow(self, equipment_ids, *, start=None, end=None, user_id="student-1"):
        start = start or datetime.utcnow() + timedelta(minutes=10)
        end = end or start + timedelta(hours=2)
        body = {
            "equipmentIds": list(equipment_ids),
            "requestedStartTime": start.isoformat(),
            "requestedEndTime": end.isoformat(),
            "classId": "class-1",
        }
        return self.client.post("/api/borrows", json=body, headers=self.headers(user_id))

    def event(self, borrow_id, event, user_id, body=None):
        return self.client.post(f"/api/borrows/{borrow_id}/{event}", json=body, headers=self.headers(user_id))


class AuthTests(ApiTestCase):
    def test_health_check(self):
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")

    def test_missing_token(self):
        response = self.client.get("/api/borrows")
        self.assertIn(response.status_code, (401, 403))

    def test_invalid_token(self):
        response = self.client.get("/api/borrows", headers={"Authorization": "Bearer not-a-token"})
        self.assertEqual(response.status_code, 401)

    def test_token_without_role_is_rejected(self):
        token = jwt.encode({"sub": "student-1"}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
        response = self.client.get("/api/borrows", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["detail"]["error"]["code"], "INVALID_TOKEN")

    def test_student_cannot_create_equipment(self):
        response = self.client.post("/api/equipment", json={"name": "示波器"}, headers=self.headers("student-1"))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["detail"]["error"]["code"], "INSUFFICIENT_PERMISSIONS")


class BorrowFlowTests(ApiTestCase):
    def test_full_borrow_flow(self):
        equipment_id = self.create_equipment("示波器")
        response = self.request_borrow([equipment_id])
        self.assertEqual(response.status_code, 200, response.text)
        data = response.json()["data"]
        self.assertEqual(data["status"], "PENDING")
        (borrow_id,) = data["borrowIds"]

        response = self.event(borrow_id, "approve", "student-1")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")

        response = self.event(borrow_id, "approve", "staff-1")
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["data"]["borrowStatus"], "APPROVED")

        response = self.event(borrow_id, "checkout", "staff-1")
        self.assertEqual(response.json()["data"]["borrowStatus"], "ACTIVE")

        response = self.event(borrow_id, "request-return", "student-1", {"returnCondition": "外殼刮傷"})
        self.assertEqual(response.json()["data"]["borrowStatus"], "PENDING_RETURN")

        response = self.event(
            borrow_id,
            "confirm-return",
            "staff-1",
            {"deficiencies": [{"type": "DAMAGE", "description": "外殼刮傷"}]},
        )
        self.assertEqual(response.status_code, 200, response.text)
        detail = response.json()["data"]
        self.assertEqual(detail["borrowStatus"], "RETURNED")
        (deficiency,) = detail["deficiencies"]

        response = self.client.patch(
            f"/api/deficiencies/{deficiency['deficiencyId']}/resolve",
            json={"resolutionNotes": "已維修"},
            headers=self.headers("staff-1"),
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["data"]["status"], "RESOLVED")

        response = self.client.get(f"/api/borrows/{borrow_id}", headers=self.headers("student-1"))
        self.assertEqual(response.json()["data"]["borrowStatus"], "COMPLETED")

        response = self.client.get(f"/api/equipment/{equipment_id}/activity-log", headers=self.headers("staff-1"))
        types = [entry["type"] for entry in response.json()["data"]["entries"]]
        self.assertEqual(types[-1], "CREATED")
        self.assertIn("BORROW_RETURN", types)

    def test_invalid_transition_returns_conflict(self):
        equipment_id = self.create_equipment("示波器")
        (borrow_id,) = self.request_borrow([equipment_id]).json()["data"]["borrowIds"]

        response = self.event(borrow_id, "checkout", "staff-1")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "INVALID_STATE")
        self.assertEqual(response.json()["error"]["details"]["currentStatus"], "PENDING")

    def test_overdue_event_is_not_exposed(self):
        equipment_id = self.create_equipment("示波器")
        (borrow_id,) = self.request_borrow([equipment_id]).json()["data"]["borrowIds"]
        response = self.event(borrow_id, "mark-overdue", "staff-1")
        self.assertEqual(response.status_code, 400)

    def test_staff_finalize_checks_outstanding_deficiencies(self):
        equipment_id = self.create_equipment("示波器")
        (borrow_id,) = self.request_borrow([equipment_id]).json()["data"]["borrowIds"]
        for event, user_id, body in (
            ("approve", "staff-1", None),
            ("checkout", "staff-1", None),
            ("request-return", "student-1", None),
            ("confirm-return", "staff-1", {"deficiencies": [{"type": "LOSS", "description": "缺探棒"}]}),
        ):
            response = self.event(borrow_id, event, user_id, body)
            self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["data"]["borrowStatus"], "RETURNED")

        response = self.event(borrow_id, "finalize", "student-1")
        self.assertEqual(response.status_code, 403)

        response = self.event(borrow_id, "finalize", "staff-1")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "INVALID_STATE")

    def test_audit_and_warning_rows_link_to_borrow(self):
        equipment_id = self.create_equipment("示波器")
        (borrow_id,) = self.request_borrow([equipment_id]).json()["data"]["borrowIds"]
        self.assertEqual(self.event(borrow_id, "checkout", "staff-1").status_code, 409)
        self.assertEqual(self.event("missing", "checkout", "staff-1").status_code, 404)

        async def borrow_logs():
            async with self.session_factory() as session:
                result = await session.execute(
                    select(SystemLog.level).where(SystemLog.borrow_id == borrow_id).order_by(SystemLog.timestamp)
                )
                return list(result.scalars().all())

        self.assertEqual(self.client.portal.call(borrow_logs), ["info", "warning"])

    def test_availability_conflict(self):
        equipment_id = self.create_equipment("示波器")
        start = datetime(2030, 5, 1, 9, 0)
        self.assertEqual(self.request_borrow([equipment_id], start=start).status_code, 200)

        response = self.request_borrow([equipment_id], start=start + timedelta(hours=1))
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "AVAILABILITY_CONFLICT")

        response = self.client.get(
            f"/api/equipment/{equipment_id}/availability",
            params={"start": "2030-05-01T09:30:00Z", "end": "2030-05-01T10:00:00Z"},
            headers=self.headers("student-1"),
        )
        self.assertFalse(response.json()["data"]["available"])

    def test_end_before_start_is_rejected(self):
        equipment_id = self.create_equipment("示波器")
        start = datetime(2030, 5, 1, 9, 0)
        response = self.request_borrow([equipment_id], start=start, end=start - timedelta(hours=1))
        self.assertEqual(response.status_code, 422)

    def test_group_approve(self):
        first = self.create_equipment("示波器")
        second = self.create_equipment("電源供應器")
        data = self.request_borrow([first, second]).json()["data"]

        response = self.client.post(
            f"/api/borrows/groups/{data['borrowGroupId']}/approve", headers=self.headers("faculty-1")
        )
        self.assertEqual(response.status_code, 200, response.text)
        result = response.json()["data"]
        self.assertEqual((result["count"], result["total"]), (2, 2))
        self.assertEqual(result["failures"], [])

        response = self.client.get(f"/api/borrows/groups/{data['borrowGroupId']}", headers=self.headers("student-1"))
        statuses = {b["borrowStatus"] for b in response.json()["data"]["borrows"]}
        self.assertEqual(statuses, {"APPROVED"})

    def test_dashboard_summary(self):
        equipment_id = self.create_equipment("示波器")
        self.request_borrow([equipment_id])
        response = self.client.get("/api/borrows/dashboard-summary", headers=self.headers("student-1"))
        self.assertEqual(response.json()["data"]["PENDING"], 1)

    def test_list_borrows(self):
        equipment_id = self.create_equipment("示波器")
        self.request_borrow([equipment_id])
        response = self.client.get("/api/borrows", params={"status": "PENDING"}, headers=self.headers("faculty-1"))
        data = response.json()["data"]
        self.assertEqual(data["total"], 1)
        self.assertEqual(data["borrows"][0]["equipmentName"], "示波器")


class EquipmentApiTests(ApiTestCase):
    def test_update_and_archive(self):
        equipment_id = self.create_equipment("示波器", category="INSTRUMENTS")

        response = self.client.put(
            f"/api/equipment/{equipment_id}", json={"stockCount": 2}, headers=self.headers("staff-1")
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["data"]["stockCount"], 2)

        response = self.client.delete(f"/api/equipment/{equipment_id}", headers=self.headers("staff-1"))
        self.assertEqual(response.json()["data"], {"equipmentId": equipment_id, "deleted": False, "status": "ARCHIVED"})

        response = self.client.delete(f"/api/equipment/{equipment_id}", headers=self.headers("staff-1"))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

        response = self.client.delete(
            f"/api/equipment/{equipment_id}", params={"confirm": "true"}, headers=self.headers("staff-1")
        )
        self.assertTrue(response.json()["data"]["deleted"])
        response = self.client.get(f"/api/equipment/{equipment_id}", headers=self.headers("staff-1"))
        self.assertEqual(response.status_code, 404)

    def test_duplicate_name(self):
        self.create_equipment("示波器")
        response = self.client.post("/api/equipment", json={"name": "示波器"}, headers=self.headers("staff-1"))
        self.assertEqual(response.status_code, 409)

    def test_notes_and_maintenance(self):
        equipment_id = self.create_equipment("示波器")
        response = self.client.post(
            f"/api/equipment/{equipment_id}/notes", json={"text": "放在 A 櫃"}, headers=self.headers("staff-1")
        )
        timestamp = response.json()["data"]["note"]["timestamp"]

        response = self.client.post(
            f"/api/equipment/{equipment_id}/maintenance",
            json={"notes": "更換探棒", "markUnderMaintenance": True},
            headers=self.headers("staff-1"),
        )
        self.assertEqual(response.status_code, 200, response.text)

        response = self.client.get(f"/api/equipment/{equipment_id}", headers=self.headers("student-1"))
        data = response.json()["data"]
        self.assertEqual(data["status"], "UNDER_MAINTENANCE")
        self.assertEqual(data["customNotes"][0]["text"], "放在 A 櫃")

        response = self.client.delete(
            f"/api/equipment/{equipment_id}/notes/{timestamp}", headers=self.headers("staff-1")
        )
        self.assertTrue(response.json()["data"]["deleted"])

        response = self.client.get(f"/api/equipment/{equipment_id}/unavailable-dates", headers=self.headers("student-1"))
        self.assertEqual(len(response.json()["data"]["dates"]), 91)

    def test_contact_hours_without_borrows(self):
        equipment_id = self.create_equipment("示波器")
        response = self.client.get(f"/api/equipment/{equipment_id}/contact-hours", headers=self.headers("staff-1"))
        self.assertEqual(response.json()["data"], {"equipmentId": equipment_id, "totalSeconds": 0, "formatted": "0s"})


class ClassApiTests(ApiTestCase):
    def test_class_management(self):
        body = {"courseCode": "ME201", "section": "B", "academicYear": "2029-2030", "ficId": "faculty-1"}
        response = self.client.post("/api/classes", json=body, headers=self.headers("student-1"))
        self.assertEqual(response.status_code, 403)

        response = self.client.post("/api/classes", json=body, headers=self.headers("staff-1"))
        self.assertEqual(response.status_code, 200, response.text)
        class_id = response.json()["data"]["classId"]

        response = self.client.post("/api/classes", json=body, headers=self.headers("staff-1"))
        self.assertEqual(response.status_code, 409)

        response = self.client.post(
            f"/api/classes/{class_id}/enrollments",
            json={"userIds": ["student-1", "student-1"]},
            headers=self.headers("staff-1"),
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["data"]["added"], ["student-1"])

        response = self.client.get("/api/classes", headers=self.headers("student-1"))
        self.assertEqual(len(response.json()["data"]["classes"]), 2)

        response = self.client.delete(f"/api/classes/{class_id}/enrollments/student-1", headers=self.headers("staff-1"))
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["data"]["studentIds"], [])

        response = self.client.delete(f"/api/classes/{class_id}/enrollments/student-1", headers=self.headers("staff-1"))
        self.assertEqual(response.status_code, 404)

    def test_enrollment_with_unknown_user(self):
        response = self.client.post(
            "/api/classes/class-1/enrollments", json={"userIds": ["ghost"]}, headers=self.headers("staff-1")
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "NOT_FOUND")

    def test_fic_must_be_faculty(self):
        body = {"courseCode": "ME201", "section": "B", "ficId": "student-1"}
        response = self.client.post("/api/classes", json=body, headers=self.headers("staff-1"))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")
