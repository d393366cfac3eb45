from collections.abc import Generator

from .session import SessionLocalGear


def get_gear_db() -> Generator:
    db = SessionLocalGear()
    try:
        yield db
    finally:
        db.close()
