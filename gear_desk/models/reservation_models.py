from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func, text

from db.base import Base


class Gear(Base):
    __tablename__ = "Gears"
    __table_args__ = (
        CheckConstraint("QuantityTotal >= 0", name="ck_gears_quantity_total_non_negative"),
    )

    GearID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    Category = Column(String(100))
    SerialNumber = Column(String(255))
    Description = Column(String(1000))
    QuantityTotal = Column(Integer, nullable=False, default=1)
    QuantityAvailable = Column(Integer, nullable=False, default=1)
    Status = Column(String(50), nullable=False, default="Available")
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    RequestLines = relationship("GearRequestLine", back_populates="Gear")
    Checkins = relationship("Checkin", back_populates="Gear")


class GearRequest(Base):
    __tablename__ = "GearRequests"

    RequestID = Column(Integer, primary_key=True)
    RequesterID = Column(Integer, nullable=False)
    Reason = Column(String(1000))
    Destination = Column(String(255))
    ExpectedDuration = Column(String(50))
    Status = Column(String(20), nullable=False, default="Pending")
    DueDate = Column(DateTime)
    ApprovedBy = Column(Integer)
    ApprovedAt = Column(DateTime)
    RejectedBy = Column(Integer)
    RejectionReason = Column(String(500))
    CheckedOutAt = Column(DateTime)
    ReturnedAt = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Lines = relationship("GearRequestLine", back_populates="Request", cascade="all, delete-orphan")
    Checkins = relationship("Checkin", back_populates="Request")


class GearRequestLine(Base):
    __tablename__ = "GearRequestLines"
    __table_args__ = (
        UniqueConstraint("RequestID", "GearID", name="uq_request_lines_request_gear"),
        CheckConstraint("Quantity > 0", name="ck_request_lines_quantity_positive"),
        CheckConstraint("ReturnedQuantity >= 0", name="ck_request_lines_returned_non_negative"),
    )

    LineID = Column(Integer, primary_key=True)
    RequestID = Column(Integer, ForeignKey("GearRequests.RequestID"), nullable=False)
    GearID = Column(Integer, ForeignKey("Gears.GearID"), nullable=False)
    Quantity = Column(Integer, nullable=False, default=1)
    ReturnedQuantity = Column(Integer, nullable=False, default=0)

    Request = relationship("GearRequest", back_populates="Lines")
    Gear = relationship("Gear", back_populates="RequestLines")


class Checkin(Base):
    __tablename__ = "Checkins"
    __table_args__ = (
        CheckConstraint("Quantity > 0", name="ck_checkins_quantity_positive"),
        Index(
            "uq_checkins_pending_request_gear_user",
            "RequestID",
            "GearID",
            "UserID",
            unique=True,
            sqlite_where=text("Status = 'Pending Admin Approval'"),
            postgresql_where=text("\"Status\" = 'Pending Admin Approval'"),
        ),
    )

    CheckinID = Column(Integer, primary_key=True)
    RequestID = Column(Integer, ForeignKey("GearRequests.RequestID"))
    GearID = Column(Integer, ForeignKey("Gears.GearID"), nullable=False)
    UserID = Column(Integer, nullable=False)
    Quantity = Column(Integer, nullable=False, default=1)
    Condition = Column(String(100))
    Notes = Column(String(1000))
    Status = Column(String(40), nullable=False, default="Pending Admin Approval")
    ReviewedBy = Column(Integer)
    ReviewedAt = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())

    Request = relationship("GearRequest", back_populates="Checkins")
    Gear = relationship("Gear", back_populates="Checkins")


class Vehicle(Base):
    __tablename__ = "Vehicles"

    VehicleID = Column(Integer, primary_key=True)
    Label = Column(String(255), nullable=False)
    Plate = Column(String(50))
    Status = Column(String(20), nullable=False, default="Active")
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Assignments = relationship("CarAssignment", back_populates="Vehicle", foreign_keys="CarAssignment.VehicleID")


class CarBooking(Base):
    __tablename__ = "CarBookings"

    BookingID = Column(Integer, primary_key=True)
    RequesterID = Column(Integer, nullable=False)
    EmployeeName = Column(String(255))
    DateOfUse = Column(Date, nullable=False)
    TimeSlot = Column(String(50))
    StartTime = Column(Time)
    EndTime = Column(Time)
    Destination = Column(String(255))
    Purpose = Column(String(1000))
    Status = Column(String(20), nullable=False, default="Pending")
    ApprovedBy = Column(Integer)
    ApprovedAt = Column(DateTime)
    RejectedBy = Column(Integer)
    RejectionReason = Column(String(500))
    CancelledBy = Column(Integer)
    CancelledAt = Column(DateTime)
    CancelledReason = Column(String(500))
    CompletedAt = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())


class CarAssignment(Base):
    __tablename__ = "CarAssignments"
    __table_args__ = (
        UniqueConstraint("BookingID", name="uq_car_assignments_booking"),
        # Populated only while the booking is Approved: one custodian per vehicle.
        UniqueConstraint("LockVehicleID", name="uq_car_assignments_active_vehicle"),
    )

    AssignmentID = Column(Integer, primary_key=True)
    BookingID = Column(Integer, ForeignKey("CarBookings.BookingID"), nullable=False)
    VehicleID = Column(Integer, ForeignKey("Vehicles.VehicleID"), nullable=False)
    LockVehicleID = Column(Integer, ForeignKey("Vehicles.VehicleID"))
    AssignedBy = Column(Integer)
    AssignedDate = Column(DateTime, server_default=func.now())

    Vehicle = relationship("Vehicle", back_populates="Assignments", foreign_keys=[VehicleID])


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    UserID = Column(Integer)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Payload = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
