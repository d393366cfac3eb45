import unittest

import support  # noqa: F401

from services.errors import DataIntegrityError
from services.status_projection import (
    AVAILABLE,
    CHECKED_OUT,
    PARTIALLY_AVAILABLE,
    PENDING_CHECKIN,
    RETIRED,
    UNDER_REPAIR,
    normalize_status,
    project_status,
    resolve_status,
)


class ProjectStatusTests(unittest.TestCase):
    def test_counters_map_to_status(self):
        self.assertEqual(project_status(5, 5), AVAILABLE)
        self.assertEqual(project_status(2, 5), PARTIALLY_AVAILABLE)
        self.assertEqual(project_status(0, 5), CHECKED_OUT)

    def test_pending_checkin_only_applies_when_fully_available(self):
        self.assertEqual(project_status(5, 5, True), PENDING_CHECKIN)
        self.assertEqual(project_status(2, 5, True), PARTIALLY_AVAILABLE)
        self.assertEqual(project_status(0, 5, True), CHECKED_OUT)

    def test_empty_pool_is_available(self):
        self.assertEqual(project_status(0, 0), AVAILABLE)

    def test_out_of_bounds_counters_raise(self):
        for available, total in [(6, 5), (-1, 5), (0, -1)]:
            with self.assertRaises(DataIntegrityError):
                project_status(available, total)

    def test_never_produces_administrative_status(self):
        produced = {project_status(a, 4, pending) for a in range(5) for pending in (False, True)}
        self.assertNotIn(UNDER_REPAIR, produced)
        self.assertNotIn(RETIRED, produced)


class NormalizeAndResolveTests(unittest.TestCase):
    def test_legacy_spellings(self):
        self.assertEqual(normalize_status("checked_out"), CHECKED_OUT)
        self.assertEqual(normalize_status("Pending Checkin"), PENDING_CHECKIN)
        self.assertEqual(normalize_status("partially-available"), PARTIALLY_AVAILABLE)
        self.assertEqual(normalize_status("needs repair"), UNDER_REPAIR)
        self.assertEqual(normalize_status(None), AVAILABLE)
        self.assertEqual(normalize_status("  Lost "), "Lost")

    def test_administrative_status_sticks(self):
        self.assertEqual(resolve_status("Retired", 5, 5), RETIRED)
        self.assertEqual(resolve_status("under_repair", 0, 5), UNDER_REPAIR)

    def test_other_statuses_are_projected(self):
        self.assertEqual(resolve_status("Checked Out", 5, 5), AVAILABLE)
        self.assertEqual(resolve_status(None, 3, 5), PARTIALLY_AVAILABLE)


if __name__ == "__main__":
    unittest.main()
