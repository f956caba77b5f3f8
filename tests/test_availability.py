import unittest
from datetime import date, datetime

from app.core.exceptions import AvailabilityConflictError
from app.models.enums import BorrowStatus, EquipmentStatus
from app.services import availability
from tests.helpers import END, START, fake_borrow, fake_equipment


class OverlapTests(unittest.TestCase):
    def test_adjacent_windows_do_not_overlap(self):
        self.assertFalse(availability.overlaps(START, END, END, datetime(2030, 5, 1, 13, 0)))
        self.assertTrue(availability.overlaps(START, END, datetime(2030, 5, 1, 11, 59), datetime(2030, 5, 1, 13, 0)))

    def test_approved_window_takes_precedence(self):
        borrow = fake_borrow(
            approved_start_time=datetime(2030, 5, 1, 10, 0),
            approved_end_time=datetime(2030, 5, 1, 11, 0),
        )
        self.assertEqual(
            availability.effective_window(borrow),
            (datetime(2030, 5, 1, 10, 0), datetime(2030, 5, 1, 11, 0)),
        )


class CountOccupyingTests(unittest.TestCase):
    def test_only_occupying_statuses_are_counted(self):
        borrows = [
            fake_borrow(id="b-1", borrow_status=BorrowStatus.PENDING.value),
            fake_borrow(id="b-2", borrow_status=BorrowStatus.ACTIVE.value),
            fake_borrow(id="b-3", borrow_status=BorrowStatus.CANCELLED.value),
            fake_borrow(id="b-4", borrow_status=BorrowStatus.COMPLETED.value),
            fake_borrow(id="b-5", borrow_status=BorrowStatus.REJECTED_STAFF.value),
        ]
        self.assertEqual(availability.count_occupying(borrows, START, END), 2)

    def test_excluded_ids_are_skipped(self):
        borrows = [fake_borrow(id="b-1"), fake_borrow(id="b-2")]
        self.assertEqual(availability.count_occupying(borrows, START, END, exclude_ids=["b-1"]), 1)


class IsAvailableTests(unittest.TestCase):
    def test_stock_reached(self):
        equipment = fake_equipment(stock_count=2)
        borrows = [fake_borrow(id="b-1"), fake_borrow(id="b-2")]
        self.assertFalse(availability.is_available(equipment, START, END, borrows))
        self.assertTrue(availability.is_available(equipment, START, END, borrows[:1]))

    def test_borrows_of_other_equipment_ignored(self):
        equipment = fake_equipment(stock_count=1)
        borrows = [fake_borrow(id="b-1", equipment_id="eq-2")]
        self.assertTrue(availability.is_available(equipment, START, END, borrows))

    def test_unavailable_equipment_status(self):
        for status in (EquipmentStatus.UNDER_MAINTENANCE, EquipmentStatus.ARCHIVED, EquipmentStatus.DEFECTIVE):
            equipment = fake_equipment(status=status.value, stock_count=5)
            self.assertFalse(availability.is_available(equipment, START, END, []))

    def test_check_available_raises_with_details(self):
        equipment = fake_equipment(stock_count=1)
        with self.assertRaises(AvailabilityConflictError) as ctx:
            availability.check_available(equipment, START, END, [fake_borrow()])
        self.assertEqual(ctx.exception.equipment_id, "eq-1")
        self.assertEqual(ctx.exception.details["occupied"], 1)


class DerivedStatusTests(unittest.TestCase):
    def test_override_status_wins(self):
        equipment = fake_equipment(status=EquipmentStatus.RESERVED.value)
        self.assertEqual(availability.derive_equipment_status(equipment, []), "RESERVED")

    def test_borrowed_when_all_units_checked_out(self):
        equipment = fake_equipment(stock_count=2)
        borrows = [
            fake_borrow(id="b-1", borrow_status=BorrowStatus.ACTIVE.value),
            fake_borrow(id="b-2", borrow_status=BorrowStatus.PENDING_RETURN.value),
        ]
        self.assertEqual(availability.derive_equipment_status(equipment, borrows), "BORROWED")
        self.assertEqual(availability.derive_equipment_status(equipment, borrows[:1]), "AVAILABLE")


class UnavailableDatesTests(unittest.TestCase):
    def test_full_days_are_reported(self):
        borrows = [
            fake_borrow(
                requested_start_time=datetime(2030, 5, 2, 23, 0),
                requested_end_time=datetime(2030, 5, 3, 1, 0),
            )
        ]
        dates = availability.unavailable_dates(1, borrows, date(2030, 5, 1), 5)
        self.assertEqual(dates, {date(2030, 5, 2), date(2030, 5, 3)})

    def test_cancelled_borrows_free_the_day(self):
        borrows = [fake_borrow(borrow_status=BorrowStatus.CANCELLED.value)]
        self.assertEqual(availability.unavailable_dates(1, borrows, date(2030, 5, 1), 5), set())

    def test_zero_stock_agrees_with_availability_check(self):
        equipment = fake_equipment(stock_count=0)
        self.assertFalse(availability.is_available(equipment, START, END, []))

        dates = availability.unavailable_dates(0, [], date(2030, 5, 1), 5)
        self.assertEqual(len(dates), 6)
        self.assertIn(START.date(), dates)
