from decimal import Decimal
from typing import List, Optional

from sqlalchemy import case, distinct, func
from sqlalchemy.orm import Session, sessionmaker

from . import models
from .models import BedStatus, BookingStatus, PaymentStatus


def occupancy_rate(occupied_beds: int, total_beds: int) -> float:
    """
    Percentage of occupied beds, rounded to 2 decimal places; 0 with no beds.
    """
    if not total_beds:
        return 0.0
    return round(occupied_beds / total_beds * 100, 2)


def _money(value) -> Decimal:
    return Decimal(value or 0).quantize(Decimal("0.01"))


class OccupancyAggregator:
    """
    Read-side reports over beds, bookings and payments.

    Figures are computed from the current ``Bed.status`` values and the
    successful payments; nothing here writes to the store.

    Parameters
    ----------
    store : sessionmaker
        Session factory for the allocation store.
    """

    def __init__(self, store: sessionmaker):
        self.store = store

    def occupancy(self, hostel_id: Optional[int] = None) -> dict:
        """
        Bed occupancy for one hostel, or for all hostels when hostel_id is None.

        Returns
        -------
        dict
            ``total_beds``, ``occupied_beds``, ``available_beds`` and
            ``occupancy_rate`` (percent, 2 decimal places).
        """
        db = self.store()
        try:
            q = db.query(
                func.count(models.Bed.id),
                func.coalesce(func.sum(case((models.Bed.status == BedStatus.OCCUPIED, 1), else_=0)), 0),
            ).select_from(models.Bed).join(models.Room, models.Bed.room_id == models.Room.id)
            if hostel_id is not None:
                q = q.filter(models.Room.hostel_id == hostel_id)
            total_beds, occupied_beds = q.one()
        finally:
            db.close()

        total_beds = int(total_beds or 0)
        occupied_beds = int(occupied_beds or 0)
        return {
            "hostel_id": hostel_id,
            "total_beds": total_beds,
            "occupied_beds": occupied_beds,
            "available_beds": total_beds - occupied_beds,
            "occupancy_rate": occupancy_rate(occupied_beds, total_beds),
        }

    def revenue(self, hostel_id: Optional[int] = None) -> dict:
        """
        Revenue from successful payments.

        Returns
        -------
        dict
            ``total_bookings`` (distinct bookings with a successful payment)
            and ``total_revenue``.
        """
        db = self.store()
        try:
            q = self._paid_bookings(
                db,
                func.count(distinct(models.Booking.id)),
                func.coalesce(func.sum(models.Payment.amount), 0),
            )
            if hostel_id is not None:
                q = q.filter(models.Room.hostel_id == hostel_id)
            total_bookings, total_revenue = q.one()
        finally:
            db.close()

        return {
            "hostel_id": hostel_id,
            "total_bookings": int(total_bookings or 0),
            "total_revenue": _money(total_revenue),
        }

    def occupancy_by_hostel(self) -> List[dict]:
        db = self.store()
        try:
            rows = (
                db.query(
                    models.Hostel.id,
                    models.Hostel.name,
                    models.Hostel.type,
                    func.count(distinct(models.Room.id)),
                    func.count(models.Bed.id),
                    func.coalesce(
                        func.sum(case((models.Bed.status == BedStatus.OCCUPIED, 1), else_=0)), 0
                    ),
                )
                .select_from(models.Hostel)
                .outerjoin(models.Room, models.Room.hostel_id == models.Hostel.id)
                .outerjoin(models.Bed, models.Bed.room_id == models.Room.id)
                .group_by(models.Hostel.id, models.Hostel.name, models.Hostel.type)
                .order_by(models.Hostel.name)
                .all()
            )
        finally:
            db.close()

        report = []
        for hostel_id, name, hostel_type, total_rooms, total_beds, occupied_beds in rows:
            occupied_beds = int(occupied_beds or 0)
            report.append({
                "hostel_id": hostel_id,
                "hostel_name": name,
                "hostel_type": hostel_type,
                "total_rooms": int(total_rooms),
                "total_beds": int(total_beds),
                "occupied_beds": occupied_beds,
                "available_beds": int(total_beds) - occupied_beds,
                "occupancy_rate": occupancy_rate(occupied_beds, int(total_beds)),
            })
        return report

    def revenue_by_hostel(self) -> List[dict]:
        db = self.store()
        try:
            rows = (
                self._paid_bookings(
                    db,
                    models.Hostel.id,
                    models.Hostel.name,
                    func.count(distinct(models.Booking.id)),
                    func.coalesce(func.sum(models.Payment.amount), 0),
                    func.count(distinct(models.Payment.id)),
                )
                .join(models.Hostel, models.Room.hostel_id == models.Hostel.id)
                .group_by(models.Hostel.id, models.Hostel.name)
                .order_by(models.Hostel.name)
                .all()
            )
        finally:
            db.close()

        report = []
        for hostel_id, name, total_bookings, total_revenue, payments in rows:
            total_revenue = _money(total_revenue)
            report.append({
                "hostel_id": hostel_id,
                "hostel_name": name,
                "total_bookings": int(total_bookings),
                "total_revenue": total_revenue,
                "avg_payment": _money(total_revenue / payments) if payments else _money(0),
                "successful_payments": int(payments),
            })
        return report

    def summary(self) -> dict:
        """
        Portal-wide counters for the admin dashboard.
        """
        db = self.store()
        try:
            booking_counts = dict(
                db.query(models.Booking.status, func.count(models.Booking.id))
                .group_by(models.Booking.status)
                .all()
            )
            total_revenue = (
                db.query(func.coalesce(func.sum(models.Payment.amount), 0))
                .filter(models.Payment.status == PaymentStatus.SUCCESS)
                .scalar()
            )
            total_students = db.query(func.count(models.Student.id)).scalar()
            total_hostels = db.query(func.count(models.Hostel.id)).scalar()
            total_rooms = db.query(func.count(models.Room.id)).scalar()
        finally:
            db.close()

        occupancy = self.occupancy()
        return {
            "total_students": int(total_students or 0),
            "total_bookings": sum(booking_counts.values()),
            "pending_bookings": booking_counts.get(BookingStatus.PENDING, 0),
            "active_bookings": booking_counts.get(BookingStatus.ACTIVE, 0),
            "completed_bookings": booking_counts.get(BookingStatus.COMPLETED, 0),
            "cancelled_bookings": booking_counts.get(BookingStatus.CANCELLED, 0),
            "total_revenue": _money(total_revenue),
            "total_hostels": int(total_hostels or 0),
            "total_rooms": int(total_rooms or 0),
            "total_beds": occupancy["total_beds"],
            "occupied_beds": occupancy["occupied_beds"],
            "available_beds": occupancy["available_beds"],
        }

    def recent_bookings(self, limit: int = 10) -> List[dict]:
        return self.list_bookings(limit=limit)

    def list_bookings(self, booking_id: Optional[int] = None, limit: Optional[int] = None) -> List[dict]:
        """
        Bookings with student, bed, room and hostel details, newest first.
        """
        db = self.store()
        try:
            q = self._booking_details(db)
            if booking_id is not None:
                q = q.filter(models.Booking.id == booking_id)
            q = q.order_by(models.Booking.created_at.desc(), models.Booking.id.desc())
            if limit is not None:
                q = q.limit(limit)
            return [_booking_row(*row) for row in q.all()]
        finally:
            db.close()

    def current_booking(self, student_id: int) -> Optional[dict]:
        """
        The student's pending or active booking, or None.
        """
        db = self.store()
        try:
            row = (
                self._booking_details(db)
                .filter(models.Booking.student_id == student_id)
                .filter(models.Booking.status.in_(models.HOLDING_STATUSES))
                .order_by(models.Booking.created_at.desc(), models.Booking.id.desc())
                .first()
            )
            return _booking_row(*row) if row else None
        finally:
            db.close()

    def payment_history(self, student_id: int) -> List[dict]:
        db = self.store()
        try:
            rows = (
                db.query(models.Payment, models.Hostel.name)
                .join(models.Booking, models.Payment.booking_id == models.Booking.id)
                .join(models.Bed, models.Booking.bed_id == models.Bed.id)
                .join(models.Room, models.Bed.room_id == models.Room.id)
                .join(models.Hostel, models.Room.hostel_id == models.Hostel.id)
                .filter(models.Booking.student_id == student_id)
                .order_by(models.Payment.created_at.desc(), models.Payment.id.desc())
                .all()
            )
            return [
                {
                    "payment_id": payment.id,
                    "booking_id": payment.booking_id,
                    "amount": payment.amount,
                    "mode": payment.mode,
                    "status": payment.status,
                    "transaction_id": payment.transaction_id,
                    "created_at": payment.created_at,
                    "hostel_name": hostel_name,
                }
                for payment, hostel_name in rows
            ]
        finally:
            db.close()

    @staticmethod
    def _paid_bookings(db: Session, *entities):
        return (
            db.query(*entities)
            .select_from(models.Booking)
            .join(models.Payment, models.Payment.booking_id == models.Booking.id)
            .join(models.Bed, models.Booking.bed_id == models.Bed.id)
            .join(models.Room, models.Bed.room_id == models.Room.id)
            .filter(models.Payment.status == PaymentStatus.SUCCESS)
        )

    @staticmethod
    def _booking_details(db: Session):
        return (
            db.query(models.Booking, models.Student, models.Bed, models.Room, models.Hostel)
            .join(models.Student, models.Booking.student_id == models.Student.id)
            .join(models.Bed, models.Booking.bed_id == models.Bed.id)
            .join(models.Room, models.Bed.room_id == models.Room.id)
            .join(models.Hostel, models.Room.hostel_id == models.Hostel.id)
        )


def _booking_row(booking, student, bed, room, hostel) -> dict:
    return {
        "booking_id": booking.id,
        "start_date": booking.start_date,
        "end_date": booking.end_date,
        "status": booking.status,
        "created_at": booking.created_at,
        "student_id": student.id,
        "student_name": student.name,
        "student_email": student.email,
        "hostel_id": hostel.id,
        "hostel_name": hostel.name,
        "hostel_type": hostel.type,
        "room_id": room.id,
        "room_number": room.room_number,
        "room_type": room.room_type,
        "price_per_month": room.price_per_month,
        "bed_id": bed.id,
        "bed_number": bed.bed_number,
        "bed_status": bed.status,
    }
