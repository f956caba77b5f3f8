import unittest

from app.services.group_actions import (
    ABORTED_CODE,
    GroupAction,
    GroupActionResult,
    ItemOutcome,
    group_key,
    individual_borrow_id,
)
from tests.helpers import fake_borrow


class GroupKeyTests(unittest.TestCase):
    def test_ungrouped_borrow_gets_individual_key(self):
        self.assertEqual(group_key(fake_borrow(id="b-7")), "individual-b-7")
        self.assertEqual(group_key(fake_borrow(borrow_group_id="g-1")), "g-1")

    def test_individual_key_round_trip(self):
        self.assertEqual(individual_borrow_id("individual-b-7"), "b-7")
        self.assertIsNone(individual_borrow_id("g-1"))


class GroupActionResultTests(unittest.TestCase):
    def test_aborted_result_reports_only_real_failures(self):
        result = GroupActionResult(group_id="g-1", action=GroupAction.APPROVE, total=3)
        result.results = [
            ItemOutcome("b-1", "eq-1", False, "PENDING", "AVAILABILITY_CONFLICT", "額滿"),
            ItemOutcome("b-2", "eq-2", False, "PENDING", ABORTED_CODE, "未執行"),
            ItemOutcome("b-3", "eq-3", False, "PENDING", ABORTED_CODE, "未執行"),
        ]
        self.assertTrue(result.aborted)
        self.assertEqual(result.count, 0)
        self.assertEqual([f.borrow_id for f in result.failures], ["b-1"])
        self.assertIn("整批未執行", result.message)

    def test_best_effort_result(self):
        result = GroupActionResult(group_id="g-1", action=GroupAction.CHECKOUT, total=3)
        result.results = [
            ItemOutcome("b-1", "eq-1", True, "ACTIVE"),
            ItemOutcome("b-2", "eq-2", False, "CANCELLED", "INVALID_STATE", "無法借出"),
            ItemOutcome("b-3", "eq-3", True, "ACTIVE"),
        ]
        self.assertFalse(result.aborted)
        data = result.to_dict()
        self.assertEqual(data["count"], 2)
        self.assertEqual(data["total"], 3)
        self.assertEqual(len(data["failures"]), 1)
        self.assertEqual(data["message"], "已借出 2/3 項器材")
