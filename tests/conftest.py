import os
import sqlite3
import sys
import tempfile
from decimal import Decimal

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ.setdefault(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.gettempdir(), "hostel_allocation_test.db"),
)
os.environ.setdefault("TESTING", "1")
os.environ.pop("REDIS_URL", None)

import pytest
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker

from allocation_service import models
from allocation_service.database import DATABASE_URL, Base, SessionLocal, build_engine, engine
from allocation_service.models import BedStatus, BookingStatus, PaymentStatus


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store():
    return SessionLocal


@pytest.fixture
def make_hostel(store):
    """
    Create a hostel with rooms and beds; return their IDs.
    """

    def _make(
        name="North Hall",
        rooms=1,
        beds_per_room=2,
        price_per_month=Decimal("2000.00"),
        room_type="Double",
        gender_allowed="Male",
        allowed_year=None,
        has_ac=False,
        has_attached_washroom=False,
    ):
        db = store()
        try:
            hostel = models.Hostel(
                name=name,
                type="Boys" if gender_allowed == "Male" else "Girls",
                gender_allowed=gender_allowed,
                allowed_year=allowed_year,
            )
            db.add(hostel)
            db.flush()
            bed_ids = []
            room_ids = []
            for r in range(rooms):
                room = models.Room(
                    hostel_id=hostel.id,
                    room_number=f"{r + 101}",
                    room_type=room_type,
                    capacity=beds_per_room,
                    price_per_month=price_per_month,
                    has_ac=has_ac,
                    has_attached_washroom=has_attached_washroom,
                )
                db.add(room)
                db.flush()
                room_ids.append(room.id)
                for b in range(beds_per_room):
                    bed = models.Bed(room_id=room.id, bed_number=chr(ord("A") + b))
                    db.add(bed)
                    db.flush()
                    bed_ids.append(bed.id)
            db.commit()
            return {"hostel_id": hostel.id, "room_ids": room_ids, "bed_ids": bed_ids}
        finally:
            db.close()

    return _make


@pytest.fixture
def make_students(store):
    def _make(count=1, prefix="student", year=2, gender="Male"):
        db = store()
        try:
            students = []
            for _ in range(count):
                n = db.query(models.Student).count() + 1
                student = models.Student(
                    name=f"{prefix.title()} {n}",
                    email=f"{prefix}{n}@campus.edu",
                    department="Computer Science",
                    year=year,
                    gender=gender,
                )
                db.add(student)
                db.flush()
                students.append(student.id)
            db.commit()
            return students
        finally:
            db.close()

    return _make


@pytest.fixture
def bed_status(store):
    def _status(bed_id):
        db = store()
        try:
            return db.get(models.Bed, bed_id).status
        finally:
            db.close()

    return _status


@pytest.fixture
def check_invariants(store):
    """
    Assert the allocation invariants against the committed state.
    """

    def _check():
        db = store()
        try:
            holding = (
                db.query(models.Booking)
                .filter(models.Booking.status.in_(models.HOLDING_STATUSES))
                .all()
            )

            by_bed = {}
            for booking in holding:
                by_bed.setdefault(booking.bed_id, []).append(booking)
            for bookings in by_bed.values():
                bookings.sort(key=lambda b: b.start_date)
                for earlier, later in zip(bookings, bookings[1:]):
                    assert earlier.end_date < later.start_date, (
                        f"bookings {earlier.id} and {later.id} overlap on bed {earlier.bed_id}"
                    )

            students = [b.student_id for b in holding]
            assert len(students) == len(set(students)), "student holds two bookings"

            for bed in db.query(models.Bed).all():
                expected = BedStatus.OCCUPIED if bed.id in by_bed else BedStatus.AVAILABLE
                assert bed.status == expected, f"bed {bed.id} is {bed.status}, expected {expected}"

            success = [
                p.booking_id
                for p in db.query(models.Payment)
                .filter(models.Payment.status == PaymentStatus.SUCCESS)
                .all()
            ]
            assert len(success) == len(set(success)), "booking has two successful payments"

            for booking in db.query(models.Booking).filter(models.Booking.status == BookingStatus.ACTIVE):
                assert booking.id in success, f"active booking {booking.id} has no payment"
        finally:
            db.close()

    return _check


@pytest.fixture
def impatient_store():
    """
    Session factory whose SQLite connections give up on a busy database
    after 100ms.
    """
    if not DATABASE_URL.startswith("sqlite"):
        pytest.skip("write-lock tests drive SQLite's database lock")
    impatient_engine = build_engine(DATABASE_URL, lock_timeout_ms=100)
    yield sessionmaker(autocommit=False, autoflush=False, bind=impatient_engine)
    impatient_engine.dispose()


@pytest.fixture
def foreign_writer():
    """
    Hold the SQLite write lock from an outside connection until released.
    """
    if not DATABASE_URL.startswith("sqlite"):
        pytest.skip("write-lock tests drive SQLite's database lock")
    conn = sqlite3.connect(make_url(DATABASE_URL).database, isolation_level=None)

    class Writer:
        def lock(self):
            conn.execute("BEGIN IMMEDIATE")

        def release(self):
            if conn.in_transaction:
                conn.execute("ROLLBACK")

    writer = Writer()
    yield writer
    writer.release()
    conn.close()
