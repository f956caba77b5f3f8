import unittest
from unittest import mock

from app.services.cache import SummaryCache


class SummaryCacheTests(unittest.TestCase):
    def setUp(self):
        self.cache = SummaryCache(ttl_seconds=60)

    def test_entries_expire(self):
        with mock.patch("app.services.cache.time.monotonic", return_value=100.0):
            self.cache.set("user:u-1", {"PENDING": 1})
            self.assertEqual(self.cache.get("user:u-1"), {"PENDING": 1})
        with mock.patch("app.services.cache.time.monotonic", return_value=160.0):
            self.assertIsNone(self.cache.get("user:u-1"))

    def test_invalidate_by_user_and_equipment(self):
        self.cache.set(SummaryCache.user_key("u-1"), 1)
        self.cache.set(SummaryCache.user_key("u-2"), 2)
        self.cache.set(SummaryCache.equipment_key("eq-1"), 3)

        self.cache.invalidate(user_ids=["u-1"], equipment_ids=["eq-1"])

        self.assertIsNone(self.cache.get("user:u-1"))
        self.assertEqual(self.cache.get("user:u-2"), 2)
        self.assertIsNone(self.cache.get("equipment:eq-1"))
