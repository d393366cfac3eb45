from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from services.errors import TransientStoreError


STORE_RETRY_ATTEMPTS = int(os.environ.get("STORE_RETRY_ATTEMPTS") or "1")
STORE_RETRY_BACKOFF_SECONDS = float(os.environ.get("STORE_RETRY_BACKOFF_SECONDS") or "0.2")
STORE_LOGGER = logging.getLogger("gear_desk.store")

T = TypeVar("T")


def run_in_transaction(
    db: Session,
    work: Callable[[], T],
    *,
    operation: str,
    retries: int | None = None,
    backoff_seconds: float | None = None,
) -> T:
    """Run ``work`` and commit, rolling back on any failure.

    Transient store failures (lost connection, lock timeouts) are retried with a
    linear backoff before surfacing as :class:`TransientStoreError`. Every other
    exception is propagated unchanged after the rollback.
    """
    max_retries = STORE_RETRY_ATTEMPTS if retries is None else max(retries, 0)
    backoff = STORE_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
    attempt = 0
    while True:
        try:
            result = work()
            db.commit()
            return result
        except OperationalError as exc:
            db.rollback()
            if attempt >= max_retries:
                STORE_LOGGER.error("Store failure op=%s attempts=%s error=%s", operation, attempt + 1, exc)
                raise TransientStoreError(
                    f"Data store unavailable during {operation}.",
                    operation=operation,
                    attempts=attempt + 1,
                ) from exc
            attempt += 1
            STORE_LOGGER.warning("Transient store error op=%s attempt=%s retrying error=%s", operation, attempt, exc)
            time.sleep(backoff * attempt)
        except Exception:
            db.rollback()
            raise
