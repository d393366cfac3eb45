import os
import tempfile
import threading
import unittest
from datetime import datetime
from unittest import mock

from support import add_gear, file_sessionmaker, memory_sessionmaker

from sqlalchemy import select

from models.reservation_models import AuditLog, Checkin, Gear
from services import unit_of_work
from services.errors import (
    InputValidationError,
    InsufficientAvailability,
    InvalidAdjustment,
    NotFoundError,
    TransientStoreError,
)
from services.inventory_ledger import (
    CHECKIN_PENDING,
    adjust_total,
    approve_checkout,
    create_gear,
    recompute_status,
    register_return,
    set_admin_status,
)
from services.status_projection import project_status


class InventoryLedgerTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = memory_sessionmaker()
        self.db = self.Session()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _reload(self, gear_id):
        return self.db.get(Gear, gear_id, populate_existing=True)

    def _assert_consistent(self, gear):
        self.assertGreaterEqual(gear.QuantityAvailable, 0)
        self.assertLessEqual(gear.QuantityAvailable, gear.QuantityTotal)
        self.assertEqual(gear.Status, project_status(gear.QuantityAvailable, gear.QuantityTotal))

    def test_checkout_then_insufficient_availability(self):
        gear = add_gear(self.db, total=5)

        result = approve_checkout(self.db, gear.GearID, 3, actor_id=1)
        self.assertEqual(result.gear.QuantityAvailable, 2)
        self.assertEqual(result.gear.Status, "Partially Available")

        with self.assertRaises(InsufficientAvailability) as ctx:
            approve_checkout(self.db, gear.GearID, 3, actor_id=1)
        self.assertEqual(ctx.exception.details["requested"], 3)
        self.assertEqual(ctx.exception.details["available"], 2)
        self.assertIn("Requested 3, available 2", ctx.exception.message)

        stored = self._reload(gear.GearID)
        self.assertEqual(stored.QuantityAvailable, 2)
        self.assertEqual(stored.Status, "Partially Available")

    def test_checkout_all_units_marks_checked_out(self):
        gear = add_gear(self.db, total=2)
        result = approve_checkout(self.db, gear.GearID, 2)
        self.assertEqual(result.gear.QuantityAvailable, 0)
        self.assertEqual(result.gear.Status, "Checked Out")

    def test_non_positive_quantity_rejected_before_store_access(self):
        gear = add_gear(self.db, total=5)
        for qty in (0, -2):
            with self.assertRaises(InputValidationError):
                approve_checkout(self.db, gear.GearID, qty)
            with self.assertRaises(InputValidationError):
                register_return(self.db, gear.GearID, qty)
        audits = self.db.execute(select(AuditLog)).scalars().all()
        self.assertEqual(audits, [])
        self.assertEqual(self._reload(gear.GearID).QuantityAvailable, 5)

    def test_missing_gear_is_not_found(self):
        with self.assertRaises(NotFoundError):
            approve_checkout(self.db, 999, 1)
        with self.assertRaises(NotFoundError):
            register_return(self.db, 999, 1)

    def test_retired_gear_cannot_be_checked_out(self):
        gear = add_gear(self.db, total=3, status="Retired")
        with self.assertRaises(InsufficientAvailability) as ctx:
            approve_checkout(self.db, gear.GearID, 1)
        self.assertEqual(ctx.exception.details["status"], "Retired")
        self.assertEqual(self._reload(gear.GearID).QuantityAvailable, 3)

    def test_legacy_admin_spellings_cannot_be_checked_out(self):
        for stored, canonical in (
            ("Needs Repair", "Under Repair"),
            ("under_repair", "Under Repair"),
            ("maintenance", "Under Repair"),
            ("retired", "Retired"),
            ("Under-Repair", "Under Repair"),
        ):
            with self.subTest(stored=stored):
                gear = add_gear(self.db, name=stored, total=3, status=stored)
                with self.assertRaises(InsufficientAvailability) as ctx:
                    approve_checkout(self.db, gear.GearID, 2)
                self.assertEqual(ctx.exception.details["status"], canonical)
                self.assertEqual(self._reload(gear.GearID).QuantityAvailable, 3)

    def test_over_return_is_clamped_and_reported(self):
        gear = add_gear(self.db, total=5, available=4, status="Partially Available")

        result = register_return(self.db, gear.GearID, 2, actor_id=9)

        self.assertEqual(result.gear.QuantityAvailable, 5)
        self.assertEqual(result.gear.Status, "Available")
        self.assertIsNotNone(result.anomaly)
        self.assertEqual(result.anomaly.code, "over_return")
        self.assertEqual(result.anomaly.details["accepted"], 1)
        self.assertEqual(result.anomaly.details["excess"], 1)
        actions = self.db.execute(
            select(AuditLog.Action).where(AuditLog.EntityID == gear.GearID)
        ).scalars().all()
        self.assertIn("OverReturn", actions)
        self.assertEqual(result.to_dict()["anomaly"]["code"], "over_return")

    def test_regular_return_has_no_anomaly(self):
        gear = add_gear(self.db, total=5, available=1, status="Partially Available")
        result = register_return(self.db, gear.GearID, 2)
        self.assertIsNone(result.anomaly)
        self.assertEqual(result.gear.QuantityAvailable, 3)

    def test_adjust_total_keeps_checked_out_units(self):
        gear = add_gear(self.db, total=5)
        approve_checkout(self.db, gear.GearID, 3)

        with self.assertRaises(InvalidAdjustment) as ctx:
            adjust_total(self.db, gear.GearID, 2)
        self.assertEqual(ctx.exception.details["checkedOut"], 3)

        result = adjust_total(self.db, gear.GearID, 4)
        self.assertEqual(result.gear.QuantityTotal, 4)
        self.assertEqual(result.gear.QuantityAvailable, 1)
        self.assertEqual(result.gear.Status, "Partially Available")

        result = adjust_total(self.db, gear.GearID, 3)
        self.assertEqual(result.gear.QuantityAvailable, 0)
        self.assertEqual(result.gear.Status, "Checked Out")

        with self.assertRaises(InputValidationError):
            adjust_total(self.db, gear.GearID, -1)

    def test_counters_stay_in_bounds_across_operations(self):
        gear = create_gear(self.db, name="Tripod", quantity_total=4)
        steps = [
            lambda: approve_checkout(self.db, gear.GearID, 1),
            lambda: approve_checkout(self.db, gear.GearID, 3),
            lambda: register_return(self.db, gear.GearID, 2),
            lambda: adjust_total(self.db, gear.GearID, 6),
            lambda: register_return(self.db, gear.GearID, 5),
            lambda: approve_checkout(self.db, gear.GearID, 6),
        ]
        for step in steps:
            step()
            self._assert_consistent(self._reload(gear.GearID))

    def test_create_gear_allows_zero_total(self):
        gear = create_gear(self.db, name="Placeholder", quantity_total=0)
        self.assertEqual(gear.QuantityTotal, 0)
        self.assertEqual(gear.QuantityAvailable, 0)
        self.assertEqual(gear.Status, "Available")
        with self.assertRaises(InsufficientAvailability):
            approve_checkout(self.db, gear.GearID, 1)
        with self.assertRaises(InputValidationError):
            create_gear(self.db, name="Broken", quantity_total=-1)

        grown = adjust_total(self.db, gear.GearID, 2)
        self.assertEqual(grown.gear.QuantityAvailable, 2)

    def test_admin_status_is_kept_and_cleared(self):
        gear = add_gear(self.db, total=2)
        approve_checkout(self.db, gear.GearID, 1)

        repaired = set_admin_status(self.db, gear.GearID, "Under Repair")
        self.assertEqual(repaired.Status, "Under Repair")
        result = register_return(self.db, gear.GearID, 1)
        self.assertEqual(result.gear.Status, "Under Repair")
        self.assertEqual(result.gear.QuantityAvailable, 2)

        cleared = set_admin_status(self.db, gear.GearID, None)
        self.assertEqual(cleared.Status, "Available")

        with self.assertRaises(InputValidationError):
            set_admin_status(self.db, gear.GearID, "Checked Out")

    def test_pending_checkin_projection(self):
        gear = add_gear(self.db, total=2)
        self.db.add(
            Checkin(GearID=gear.GearID, UserID=4, Quantity=1, Status=CHECKIN_PENDING, CreatedDate=datetime.now())
        )
        self.db.commit()
        recompute_status(self.db, gear.GearID)
        self.db.commit()
        self.assertEqual(self._reload(gear.GearID).Status, "Pending Check-in")


class ConcurrentCheckoutTests(unittest.TestCase):
    def setUp(self):
        handle, self.path = tempfile.mkstemp(suffix=".db")
        os.close(handle)
        self.engine, self.Session = file_sessionmaker(self.path)

    def tearDown(self):
        self.engine.dispose()
        os.remove(self.path)

    def test_parallel_approvals_never_oversell(self):
        seed = self.Session()
        gear = add_gear(seed, name="Drone", total=3)
        gear_id = gear.GearID
        seed.close()

        outcomes = []
        lock = threading.Lock()
        start = threading.Barrier(8)

        def _worker():
            db = self.Session()
            try:
                start.wait()
                approve_checkout(db, gear_id, 1)
                outcome = "granted"
            except InsufficientAvailability:
                outcome = "refused"
            except TransientStoreError:
                outcome = "transient"
            finally:
                db.close()
            with lock:
                outcomes.append(outcome)

        with mock.patch.object(unit_of_work, "STORE_RETRY_ATTEMPTS", 20), mock.patch.object(
            unit_of_work, "STORE_RETRY_BACKOFF_SECONDS", 0.01
        ):
            threads = [threading.Thread(target=_worker) for _ in range(8)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

        self.assertEqual(len(outcomes), 8)
        self.assertEqual(outcomes.count("granted"), 3)
        self.assertEqual(outcomes.count("refused"), 5)
        self.assertNotIn("transient", outcomes)

        check = self.Session()
        try:
            stored = check.get(Gear, gear_id)
            self.assertEqual(stored.QuantityAvailable, 0)
            self.assertEqual(stored.Status, project_status(stored.QuantityAvailable, stored.QuantityTotal))
        finally:
            check.close()


if __name__ == "__main__":
    unittest.main()
