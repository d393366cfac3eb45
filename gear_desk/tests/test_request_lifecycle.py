import unittest
from datetime import datetime, timedelta

from support import add_gear, memory_sessionmaker

from sqlalchemy import select

from models.reservation_models import Gear, GearRequest, NotificationQueue
from services.errors import ConflictError, InputValidationError, InsufficientAvailability, NotFoundError
from services.request_service import (
    approve_checkin,
    approve_request,
    calculate_due_date,
    create_request,
    mark_checked_out,
    reject_checkin,
    reject_request,
    serialize_request,
    submit_checkin,
)


class RequestLifecycleTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = memory_sessionmaker()
        self.db = self.Session()
        self.lens = add_gear(self.db, name="Lens", total=2)
        self.light = add_gear(self.db, name="Light", total=1)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _gear(self, gear_id):
        return self.db.get(Gear, gear_id, populate_existing=True)

    def _approved_request(self, requester_id=7):
        request = create_request(
            self.db,
            requester_id=requester_id,
            lines=[(self.lens.GearID, 1), (self.light.GearID, 1)],
            expected_duration="2 weeks",
        )
        return approve_request(self.db, request.RequestID, approver_id=1)

    def test_approval_is_all_or_nothing(self):
        request = create_request(
            self.db,
            requester_id=7,
            lines=[(self.lens.GearID, 2), (self.light.GearID, 2)],
        )
        with self.assertRaises(InsufficientAvailability) as ctx:
            approve_request(self.db, request.RequestID, approver_id=1)
        self.assertEqual(ctx.exception.details["gearID"], self.light.GearID)

        self.assertEqual(self._gear(self.lens.GearID).QuantityAvailable, 2)
        self.assertEqual(self._gear(self.light.GearID).QuantityAvailable, 1)
        stored = self.db.get(GearRequest, request.RequestID, populate_existing=True)
        self.assertEqual(stored.Status, "Pending")

    def test_approval_decrements_every_line(self):
        request = self._approved_request()
        self.assertEqual(request.Status, "Approved")
        self.assertEqual(self._gear(self.lens.GearID).Status, "Partially Available")
        self.assertEqual(self._gear(self.light.GearID).Status, "Checked Out")
        self.assertEqual(request.DueDate - request.ApprovedAt, timedelta(days=14))

        again = approve_request(self.db, request.RequestID, approver_id=1)
        self.assertEqual(again.Status, "Approved")
        self.assertEqual(self._gear(self.lens.GearID).QuantityAvailable, 1)

        kinds = self.db.execute(select(NotificationQueue.NotificationType)).scalars().all()
        self.assertEqual(kinds, ["GearRequestApproved"])

    def test_duplicate_lines_are_merged(self):
        request = create_request(
            self.db,
            requester_id=7,
            lines=[(self.lens.GearID, 1), {"gearID": self.lens.GearID, "quantity": 1}],
        )
        body = serialize_request(request)
        self.assertEqual(len(body["lines"]), 1)
        self.assertEqual(body["lines"][0]["quantity"], 2)
        self.assertEqual(body["lines"][0]["gearName"], "Lens")

    def test_create_request_validates_lines(self):
        with self.assertRaises(InputValidationError):
            create_request(self.db, requester_id=7, lines=[])
        with self.assertRaises(InputValidationError):
            create_request(self.db, requester_id=7, lines=[(self.lens.GearID, 0)])
        with self.assertRaises(NotFoundError):
            create_request(self.db, requester_id=7, lines=[(999, 1)])

    def test_reject_requires_reason(self):
        request = create_request(self.db, requester_id=7, lines=[(self.lens.GearID, 1)])
        with self.assertRaises(InputValidationError):
            reject_request(self.db, request.RequestID, reason="  ")
        rejected = reject_request(self.db, request.RequestID, reason="Not needed", actor_id=1)
        self.assertEqual(rejected.Status, "Rejected")
        with self.assertRaises(InputValidationError):
            approve_request(self.db, request.RequestID, approver_id=1)

    def test_due_date_durations(self):
        start = datetime(2024, 6, 1, 9, 0)
        self.assertEqual(calculate_due_date("24hours", start), start + timedelta(days=1))
        self.assertEqual(calculate_due_date("72 hours", start), start + timedelta(days=3))
        self.assertEqual(calculate_due_date("Month", start), start + timedelta(days=30))
        self.assertEqual(calculate_due_date("1year", start), start + timedelta(days=365))
        self.assertEqual(calculate_due_date(None, start), start + timedelta(days=7))
        self.assertEqual(calculate_due_date("someday", start), start + timedelta(days=7))

    def test_checkin_flow_returns_request(self):
        request = self._approved_request()
        mark_checked_out(self.db, request.RequestID, actor_id=1)

        light_checkin = submit_checkin(self.db, request.RequestID, self.light.GearID, user_id=7, quantity=1)
        self.assertEqual(light_checkin.Status, "Pending Admin Approval")
        with self.assertRaises(ConflictError):
            submit_checkin(self.db, request.RequestID, self.light.GearID, user_id=7, quantity=1)

        outcome = approve_checkin(self.db, light_checkin.CheckinID, actor_id=1)
        self.assertIsNone(outcome.to_dict()["anomaly"])
        self.assertEqual(self._gear(self.light.GearID).Status, "Available")
        self.assertEqual(outcome.request.Status, "Checked Out")

        with self.assertRaises(InputValidationError):
            submit_checkin(self.db, request.RequestID, self.lens.GearID, user_id=7, quantity=2)
        lens_checkin = submit_checkin(self.db, request.RequestID, self.lens.GearID, user_id=7, quantity=1)
        outcome = approve_checkin(self.db, lens_checkin.CheckinID, actor_id=1)
        self.assertEqual(outcome.request.Status, "Returned")
        self.assertIsNotNone(outcome.request.ReturnedAt)
        self.assertEqual(self._gear(self.lens.GearID).QuantityAvailable, 2)

        repeat = approve_checkin(self.db, lens_checkin.CheckinID, actor_id=1)
        self.assertIsNone(repeat.ledger)
        self.assertEqual(self._gear(self.lens.GearID).QuantityAvailable, 2)

    def test_rejected_checkin_leaves_counters(self):
        request = self._approved_request()
        checkin = submit_checkin(self.db, request.RequestID, self.light.GearID, user_id=7)
        rejected = reject_checkin(self.db, checkin.CheckinID, actor_id=1, reason="Box missing")
        self.assertEqual(rejected.Status, "Rejected")
        self.assertEqual(self._gear(self.light.GearID).QuantityAvailable, 0)
        self.assertEqual(self._gear(self.light.GearID).Status, "Checked Out")
        with self.assertRaises(InputValidationError):
            approve_checkin(self.db, checkin.CheckinID, actor_id=1)

        again = submit_checkin(self.db, request.RequestID, self.light.GearID, user_id=7)
        self.assertEqual(again.Status, "Pending Admin Approval")

    def test_checkin_requires_open_request(self):
        request = create_request(self.db, requester_id=7, lines=[(self.lens.GearID, 1)])
        with self.assertRaises(InputValidationError):
            submit_checkin(self.db, request.RequestID, self.lens.GearID, user_id=7)
        approved = approve_request(self.db, request.RequestID, approver_id=1)
        with self.assertRaises(NotFoundError):
            submit_checkin(self.db, approved.RequestID, self.light.GearID, user_id=7)


if __name__ == "__main__":
    unittest.main()
