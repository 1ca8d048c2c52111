from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship

from .database import Base


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class BedStatus(str, PyEnum):
    """
    Cached occupancy flag of a bed.

    Values
    ------
    available
        No pending or active booking references the bed.
    occupied
        At least one pending or active booking references the bed.
    """
    AVAILABLE = "available"
    OCCUPIED = "occupied"


class BookingStatus(str, PyEnum):
    """
    Enumeration of possible booking statuses.

    Values
    ------
    pending
        Bed is held for the student; payment has not been confirmed.
    active
        Payment confirmed; the student holds the bed.
    completed
        The stay is over. Terminal.
    cancelled
        The booking was withdrawn and no longer holds the bed. Terminal.
    """
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses that hold a bed for their date range.
HOLDING_STATUSES = (BookingStatus.PENDING, BookingStatus.ACTIVE)


class PaymentStatus(str, PyEnum):
    SUCCESS = "success"
    FAILED = "failed"


class Hostel(Base):
    """
    SQLAlchemy model representing a hostel building.

    Attributes
    ----------
    id : int
        Primary key.
    name : str
        Display name of the hostel.
    type : str
        Hostel category (e.g. 'Boys', 'Girls', 'PG').
    gender_allowed : str
        Gender admitted to the hostel ('Male', 'Female').
    allowed_year : int, optional
        Academic year the hostel is reserved for; None means any year.
    """
    __tablename__ = "hostels"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    type = Column(String(50), nullable=False)
    gender_allowed = Column(String(20), nullable=False)
    allowed_year = Column(Integer, nullable=True)

    rooms = relationship("Room", back_populates="hostel", cascade="all, delete-orphan")


class Room(Base):
    """
    SQLAlchemy model representing a room inside a hostel.

    ``capacity`` is maintained by administrators and is expected to match
    the number of beds created under the room; it is not enforced here.
    """
    __tablename__ = "rooms"
    __table_args__ = (UniqueConstraint("hostel_id", "room_number"),)

    id = Column(Integer, primary_key=True, index=True)
    hostel_id = Column(Integer, ForeignKey("hostels.id", ondelete="CASCADE"), nullable=False, index=True)
    room_number = Column(String(20), nullable=False)
    room_type = Column(String(50), nullable=False)
    capacity = Column(Integer, nullable=False)
    price_per_month = Column(Numeric(10, 2), nullable=False)
    has_ac = Column(Boolean, default=False, nullable=False)
    has_attached_washroom = Column(Boolean, default=False, nullable=False)

    hostel = relationship("Hostel", back_populates="rooms")
    beds = relationship("Bed", back_populates="room", cascade="all, delete-orphan")


class Bed(Base):
    """
    SQLAlchemy model representing one physical bed.

    ``status`` caches whether a pending or active booking references the
    bed. It is written only by ``state_machine.reconcile_bed_status``.
    """
    __tablename__ = "beds"
    __table_args__ = (UniqueConstraint("room_id", "bed_number"),)

    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(Integer, ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False, index=True)
    bed_number = Column(String(20), nullable=False)
    status = Column(
        Enum(BedStatus, name="bed_status", values_callable=_enum_values),
        nullable=False,
        default=BedStatus.AVAILABLE,
    )

    room = relationship("Room", back_populates="beds")


class Student(Base):
    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    department = Column(String(100), nullable=True)
    year = Column(Integer, nullable=True)
    gender = Column(String(20), nullable=True)
    password_hash = Column(String(255), nullable=True)


class Booking(Base):
    """
    SQLAlchemy model representing a bed booking.

    Attributes
    ----------
    id : int
        Primary key.
    student_id : int
        Student holding the booking.
    bed_id : int
        Booked bed.
    start_date : date
        First night of the stay (inclusive).
    end_date : date
        Last night of the stay (inclusive).
    status : BookingStatus
        Lifecycle status (pending/active/completed/cancelled).
    created_at : datetime
        Creation timestamp, used for ordering.
    """
    __tablename__ = "bookings"
    __table_args__ = (
        # One pending/active booking per student, enforced by the store as well.
        Index(
            "uq_bookings_student_holding",
            "student_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'active')"),
            sqlite_where=text("status IN ('pending', 'active')"),
        ),
        Index("ix_bookings_bed_status", "bed_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, ForeignKey("students.id"), nullable=False, index=True)
    bed_id = Column(Integer, ForeignKey("beds.id"), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(
        Enum(BookingStatus, name="booking_status", values_callable=_enum_values),
        nullable=False,
        default=BookingStatus.PENDING,
    )
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    student = relationship("Student")
    bed = relationship("Bed")
    payments = relationship("Payment", back_populates="booking")


class Payment(Base):
    """
    SQLAlchemy model representing a payment against a booking.

    A successful payment is immutable. ``transaction_id`` is unique and
    identifies the payment to external systems.
    """
    __tablename__ = "payments"
    __table_args__ = (
        Index(
            "uq_payments_booking_success",
            "booking_id",
            unique=True,
            postgresql_where=text("status = 'success'"),
            sqlite_where=text("status = 'success'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    mode = Column(String(50), nullable=False, default="Online")
    status = Column(
        Enum(PaymentStatus, name="payment_status", values_callable=_enum_values),
        nullable=False,
        default=PaymentStatus.SUCCESS,
    )
    transaction_id = Column(String(64), unique=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    booking = relationship("Booking", back_populates="payments")
