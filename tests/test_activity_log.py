import unittest
from datetime import datetime
from types import SimpleNamespace

from app.models.enums import BorrowStatus
from app.services.activity_log import (
    LogEntryType,
    build_activity_log,
    parse_edit_entry,
    parse_maintenance_entry,
    parse_note_entry,
)
from tests.helpers import fake_borrow, fake_equipment

T0 = datetime(2030, 1, 1, 8, 0)
T1 = datetime(2030, 1, 2, 8, 0)
T2 = datetime(2030, 1, 3, 8, 0)
T3 = datetime(2030, 1, 4, 8, 0)


class BuildActivityLogTests(unittest.TestCase):
    def test_entries_are_newest_first(self):
        equipment = fake_equipment(
            created_at=T0,
            maintenance_log=[{"timestamp": "2030-01-03T08:00:00Z", "notes": "校正", "user": "教職員"}],
            edit_history=[
                {
                    "timestamp": "2030-01-04T08:00:00Z",
                    "user": "教職員",
                    "changes": [{"field": "stockCount", "oldValue": 1, "newValue": 2}],
                }
            ],
        )
        borrows = [fake_borrow(request_submission_time=T1)]

        entries = build_activity_log(equipment, borrows)

        self.assertEqual(
            [e.type for e in entries],
            [LogEntryType.EDIT, LogEntryType.MAINTENANCE, LogEntryType.BORROW_REQUEST, LogEntryType.CREATED],
        )
        self.assertEqual([e.timestamp for e in entries], [T3, T2, T1, T0])
        self.assertIn('stockCount 由 "1" 改為 "2"', entries[0].details)
        self.assertEqual(entries[2].borrow_id, "b-1")

    def test_malformed_entries_are_skipped(self):
        equipment = fake_equipment(
            maintenance_log=[
                {"notes": "沒有時間"},
                "not-an-object",
                {"timestamp": "yesterday", "notes": "格式錯誤"},
                {"timestamp": "2030-01-03T08:00:00", "notes": "正常"},
            ],
            edit_history={"unexpected": "shape"},
        )
        with self.assertLogs("app.services.activity_log", level="WARNING") as logs:
            entries = build_activity_log(equipment, [])
        self.assertEqual(len(logs.output), 3)
        self.assertEqual([e.type for e in entries], [LogEntryType.MAINTENANCE, LogEntryType.CREATED])

    def test_ties_keep_insertion_order(self):
        equipment = fake_equipment(created_at=T1)
        entries = build_activity_log(equipment, [fake_borrow(request_submission_time=T1)])
        self.assertEqual([e.type for e in entries], [LogEntryType.CREATED, LogEntryType.BORROW_REQUEST])

    def test_full_borrow_history(self):
        borrow = fake_borrow(
            borrow_status=BorrowStatus.COMPLETED.value,
            request_submission_time=datetime(2030, 4, 20, 10, 0),
            approved_by_id="staff-1",
            approved_by_role="staff",
            approved_at=datetime(2030, 4, 21, 10, 0),
            approved_start_time=datetime(2030, 5, 1, 9, 0),
            approved_end_time=datetime(2030, 5, 1, 12, 0),
            checkout_time=datetime(2030, 5, 1, 9, 0),
            actual_return_time=datetime(2030, 5, 1, 11, 0),
            updated_at=datetime(2030, 5, 2, 9, 0),
            return_condition="外殼刮傷",
            approver=SimpleNamespace(username="教職員"),
            deficiencies=[SimpleNamespace(type="DAMAGE", description="外殼刮傷")],
        )
        entries = build_activity_log(fake_equipment(created_at=None), [borrow])
        self.assertEqual(
            [e.type for e in entries],
            [
                LogEntryType.BORROW_COMPLETED,
                LogEntryType.BORROW_RETURN,
                LogEntryType.BORROW_CHECKOUT,
                LogEntryType.BORROW_APPROVED,
                LogEntryType.BORROW_REQUEST,
            ],
        )
        self.assertIn("DAMAGE: 外殼刮傷", entries[1].details)
        self.assertEqual(entries[3].user, "教職員")

    def test_rejected_borrow(self):
        borrow = fake_borrow(
            borrow_status=BorrowStatus.REJECTED_FIC.value,
            updated_at=datetime(2030, 4, 22, 10, 0),
        )
        entries = build_activity_log(fake_equipment(created_at=None), [borrow])
        self.assertEqual(entries[0].type, LogEntryType.BORROW_REJECTED)
        self.assertIn("授課教師", entries[0].details)

    def test_to_dict(self):
        entry = build_activity_log(fake_equipment(created_at=T0), [])[0]
        self.assertEqual(
            entry.to_dict(),
            {"timestamp": T0, "type": "CREATED", "details": "建立器材資料", "user": None, "borrowId": None},
        )


class ParserTests(unittest.TestCase):
    def test_timezone_aware_timestamps_are_normalized(self):
        entry = parse_maintenance_entry({"timestamp": "2030-01-03T16:00:00+08:00", "notes": "校正"})
        self.assertEqual(entry.timestamp, T2)
        self.assertEqual(entry.user, "未指定人員")

    def test_edit_entry_ignores_invalid_changes(self):
        entry = parse_edit_entry(
            {"timestamp": "2030-01-04T08:00:00Z", "changes": [{"oldValue": 1}, {"field": "name", "newValue": "新"}]}
        )
        self.assertEqual([c.field for c in entry.changes], ["name"])

    def test_note_without_text_is_skipped(self):
        with self.assertLogs("app.services.activity_log", level="WARNING"):
            self.assertIsNone(parse_note_entry({"timestamp": "2030-01-04T08:00:00Z", "text": "  "}))
        note = parse_note_entry({"timestamp": "2030-01-04T08:00:00Z", "text": "放在 A 櫃", "userId": "staff-1"})
        self.assertEqual(note.text, "放在 A 櫃")
