import unittest
from unittest import mock

from support import add_gear, memory_sessionmaker

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from models.reservation_models import Gear
from services import inventory_ledger, unit_of_work
from services.errors import InsufficientAvailability, TransientStoreError
from services.inventory_ledger import approve_checkout
from services.unit_of_work import run_in_transaction


def _database_locked():
    return OperationalError("UPDATE Gears", {}, Exception("database is locked"))


class RunInTransactionTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = memory_sessionmaker()
        self.db = self.Session()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _gear_names(self):
        check = self.Session()
        try:
            return check.execute(select(Gear.Name)).scalars().all()
        finally:
            check.close()

    def test_store_failure_is_retried_then_surfaced(self):
        calls = []

        def _work():
            calls.append(len(calls))
            self.db.add(Gear(Name=f"Ghost {len(calls)}", QuantityTotal=1, QuantityAvailable=1, Status="Available"))
            self.db.flush()
            raise _database_locked()

        with self.assertRaises(TransientStoreError) as ctx:
            run_in_transaction(self.db, _work, operation="approve_checkout", retries=1, backoff_seconds=0)

        self.assertEqual(len(calls), 2)
        self.assertEqual(ctx.exception.details["attempts"], 2)
        self.assertEqual(ctx.exception.details["operation"], "approve_checkout")
        self.assertEqual(ctx.exception.http_status, 503)
        self.assertIsInstance(ctx.exception.__cause__, OperationalError)
        self.assertEqual(self._gear_names(), [])

    def test_store_failure_recovers_on_retry(self):
        calls = []

        def _work():
            calls.append(len(calls))
            if len(calls) == 1:
                raise _database_locked()
            gear = Gear(Name="Tripod", QuantityTotal=2, QuantityAvailable=2, Status="Available")
            self.db.add(gear)
            return gear

        gear = run_in_transaction(self.db, _work, operation="create_gear", retries=1, backoff_seconds=0)

        self.assertEqual(len(calls), 2)
        self.assertEqual(gear.Name, "Tripod")
        self.assertEqual(self._gear_names(), ["Tripod"])

    def test_business_errors_are_not_retried(self):
        calls = []

        def _work():
            calls.append(len(calls))
            self.db.add(Gear(Name="Half written", QuantityTotal=1, QuantityAvailable=1, Status="Available"))
            self.db.flush()
            raise InsufficientAvailability("Not enough available units.")

        with self.assertRaises(InsufficientAvailability):
            run_in_transaction(self.db, _work, operation="approve_checkout", retries=3, backoff_seconds=0)

        self.assertEqual(len(calls), 1)
        self.assertEqual(self._gear_names(), [])

    def test_ledger_checkout_surfaces_store_outage(self):
        gear = add_gear(self.db, total=3)
        outage = mock.Mock(side_effect=_database_locked())

        with mock.patch.object(inventory_ledger, "decrement_available", outage), mock.patch.object(
            unit_of_work, "STORE_RETRY_BACKOFF_SECONDS", 0
        ):
            with self.assertRaises(TransientStoreError):
                approve_checkout(self.db, gear.GearID, 1)

        self.assertEqual(outage.call_count, unit_of_work.STORE_RETRY_ATTEMPTS + 1)
        stored = self.db.get(Gear, gear.GearID, populate_existing=True)
        self.assertEqual(stored.QuantityAvailable, 3)
        self.assertEqual(stored.Status, "Available")


if __name__ == "__main__":
    unittest.main()
