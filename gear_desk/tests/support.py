import os
import sys
from pathlib import Path


os.environ.setdefault("GEAR_DESK_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from datetime import date, datetime

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from db.base import Base
from db.session import build_engine, build_sessionmaker
from models.reservation_models import CarBooking, Gear, Vehicle


def memory_sessionmaker():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    return engine, build_sessionmaker(engine)


def file_sessionmaker(path: str):
    engine = build_engine(f"sqlite+pysqlite:///{path}")
    Base.metadata.create_all(bind=engine)
    return engine, build_sessionmaker(engine)


def add_gear(db, name="Camera", total=5, available=None, status="Available") -> Gear:
    """Insert a gear row as-is, bypassing the ledger (used to simulate drift)."""
    gear = Gear(
        Name=name,
        QuantityTotal=total,
        QuantityAvailable=total if available is None else available,
        Status=status,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(gear)
    db.commit()
    return gear


def add_vehicle(db, label="Van 1", status="Active") -> Vehicle:
    vehicle = Vehicle(Label=label, Status=status, CreatedDate=datetime.now(), UpdatedDate=datetime.now())
    db.add(vehicle)
    db.commit()
    return vehicle


def add_booking(db, day=date(2024, 6, 1), slot="09:00-12:00", status="Pending", requester_id=5) -> CarBooking:
    booking = CarBooking(
        RequesterID=requester_id,
        DateOfUse=day,
        TimeSlot=slot,
        Status=status,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(booking)
    db.commit()
    return booking
