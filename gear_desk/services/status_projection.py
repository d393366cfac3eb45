from __future__ import annotations

from services.errors import DataIntegrityError


AVAILABLE = "Available"
PARTIALLY_AVAILABLE = "Partially Available"
CHECKED_OUT = "Checked Out"
PENDING_CHECKIN = "Pending Check-in"
UNDER_REPAIR = "Under Repair"
RETIRED = "Retired"

GEAR_STATUSES = (AVAILABLE, PARTIALLY_AVAILABLE, CHECKED_OUT, PENDING_CHECKIN, UNDER_REPAIR, RETIRED)
# Set by an administrator only. The projection never produces these and nothing overrides them.
ADMIN_STATUSES = frozenset({UNDER_REPAIR, RETIRED})

_STATUS_VARIANTS = {
    "available": AVAILABLE,
    "partiallyavailable": PARTIALLY_AVAILABLE,
    "partiallycheckedout": PARTIALLY_AVAILABLE,
    "checkedout": CHECKED_OUT,
    "pendingcheckin": PENDING_CHECKIN,
    "underrepair": UNDER_REPAIR,
    "needsrepair": UNDER_REPAIR,
    "maintenance": UNDER_REPAIR,
    "retired": RETIRED,
}
# Lower-case, punctuation-free spellings that mean an administrative status.
ADMIN_STATUS_KEYS = frozenset(key for key, label in _STATUS_VARIANTS.items() if label in ADMIN_STATUSES)


def normalize_status(raw: str | None) -> str:
    """Map legacy spellings ("checked_out", "Pending Checkin", ...) to the canonical label.

    Unknown values are returned trimmed so callers can still report them.
    """
    value = (raw or "").strip()
    if not value:
        return AVAILABLE
    key = "".join(ch for ch in value.lower() if ch.isalnum())
    return _STATUS_VARIANTS.get(key, value)


def check_counters(available: int, total: int) -> None:
    if total < 0 or available < 0 or available > total:
        raise DataIntegrityError(
            f"Counters out of bounds: available={available} total={total}",
            quantityAvailable=available,
            quantityTotal=total,
        )


def project_status(available: int, total: int, has_pending_checkin: bool = False) -> str:
    """Status label derived from the counters.

    Pending Check-in is only reported once every unit is back on the shelf. While units
    are still out the counters win (Checked Out / Partially Available) even if a
    check-in is waiting for approval, so that label stays rare in practice.
    """
    check_counters(available, total)
    if available == total:
        return PENDING_CHECKIN if has_pending_checkin else AVAILABLE
    if available == 0:
        return CHECKED_OUT
    return PARTIALLY_AVAILABLE


def resolve_status(stored: str | None, available: int, total: int, has_pending_checkin: bool = False) -> str:
    """Status a gear row should carry: administrative statuses stick, everything else is projected."""
    current = normalize_status(stored)
    if current in ADMIN_STATUSES:
        return current
    return project_status(available, total, has_pending_checkin)
