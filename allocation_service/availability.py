from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import and_, exists, or_
from sqlalchemy.orm import Query, Session, sessionmaker

from . import models
from .errors import InvalidDateRange
from .models import BedStatus


def ensure_date_range(start_date: date, end_date: date) -> None:
    """
    Validate that a booking date range is well-formed.

    Parameters
    ----------
    start_date : date
        First day of the requested stay.
    end_date : date
        Last day of the requested stay.

    Raises
    ------
    InvalidDateRange
        If end_date is not strictly after start_date.
    """
    if start_date is None or end_date is None:
        raise InvalidDateRange("start_date and end_date are required")
    if end_date <= start_date:
        raise InvalidDateRange("end_date must be after start_date")


def overlap_clause(start_date: date, end_date: date):
    """
    Closed-interval overlap with a pending/active booking.

    Two stays overlap when they share at least one calendar day, so a
    booking ending on the day another starts still conflicts.
    """
    return and_(
        models.Booking.status.in_(models.HOLDING_STATUSES),
        models.Booking.start_date <= end_date,
        models.Booking.end_date >= start_date,
    )


def overlapping_bookings(db: Session, bed_id: int, start_date: date, end_date: date) -> Query:
    return (
        db.query(models.Booking)
        .filter(models.Booking.bed_id == bed_id)
        .filter(overlap_clause(start_date, end_date))
    )


@dataclass
class BedFilters:
    """
    Search criteria for available beds.

    Every field is optional; ``start_date`` and ``end_date`` must be given
    together.
    """
    hostel_id: Optional[int] = None
    room_type: Optional[str] = None
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None
    gender: Optional[str] = None
    year: Optional[int] = None
    has_ac: Optional[bool] = None
    has_attached_washroom: Optional[bool] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    def is_empty(self) -> bool:
        return all(value is None for value in vars(self).values())


class AvailabilityQuery:
    """
    Read-only answers to "is this bed free" and "which beds are free".

    Parameters
    ----------
    store : sessionmaker
        Session factory for the allocation store.
    """

    def __init__(self, store: sessionmaker):
        self.store = store

    def is_available(self, bed_id: int, start_date: date, end_date: date) -> bool:
        """
        Check whether a bed has no pending/active booking overlapping a range.

        A bed that does not exist is reported as not available.

        Raises
        ------
        InvalidDateRange
            If end_date is not strictly after start_date.
        """
        ensure_date_range(start_date, end_date)
        db = self.store()
        try:
            if db.get(models.Bed, bed_id) is None:
                return False
            busy = overlapping_bookings(db, bed_id, start_date, end_date)
            return not db.query(busy.exists()).scalar()
        finally:
            db.close()

    def list_available_beds(self, filters: Optional[BedFilters] = None) -> List[dict]:
        """
        List beds that can be booked, with their room and hostel details.

        With a date range in ``filters`` a bed qualifies when no pending or
        active booking overlaps the range. Without one, the bed's cached
        status must be ``available``.

        Returns
        -------
        List[dict]
            One entry per bed, ordered by hostel name, room number and
            bed number.
        """
        filters = filters or BedFilters()
        has_range = filters.start_date is not None or filters.end_date is not None
        if has_range:
            ensure_date_range(filters.start_date, filters.end_date)

        db = self.store()
        try:
            q = (
                db.query(models.Bed, models.Room, models.Hostel)
                .join(models.Room, models.Bed.room_id == models.Room.id)
                .join(models.Hostel, models.Room.hostel_id == models.Hostel.id)
            )

            if has_range:
                q = q.filter(
                    ~exists().where(
                        models.Booking.bed_id == models.Bed.id,
                        overlap_clause(filters.start_date, filters.end_date),
                    )
                )
            else:
                q = q.filter(models.Bed.status == BedStatus.AVAILABLE)

            if filters.hostel_id is not None:
                q = q.filter(models.Hostel.id == filters.hostel_id)
            if filters.room_type:
                q = q.filter(models.Room.room_type == filters.room_type)
            if filters.min_price is not None:
                q = q.filter(models.Room.price_per_month >= filters.min_price)
            if filters.max_price is not None:
                q = q.filter(models.Room.price_per_month <= filters.max_price)
            if filters.gender:
                q = q.filter(models.Hostel.gender_allowed == filters.gender)
            if filters.year is not None:
                q = q.filter(
                    or_(
                        models.Hostel.allowed_year.is_(None),
                        models.Hostel.allowed_year == filters.year,
                    )
                )
            if filters.has_ac is not None:
                q = q.filter(models.Room.has_ac.is_(filters.has_ac))
            if filters.has_attached_washroom is not None:
                q = q.filter(models.Room.has_attached_washroom.is_(filters.has_attached_washroom))

            rows = q.order_by(
                models.Hostel.name, models.Room.room_number, models.Bed.bed_number
            ).all()
            return [_bed_row(bed, room, hostel) for bed, room, hostel in rows]
        finally:
            db.close()


def _bed_row(bed: models.Bed, room: models.Room, hostel: models.Hostel) -> dict:
    return {
        "bed_id": bed.id,
        "bed_number": bed.bed_number,
        "status": bed.status,
        "room_id": room.id,
        "room_number": room.room_number,
        "room_type": room.room_type,
        "price_per_month": room.price_per_month,
        "has_ac": room.has_ac,
        "has_attached_washroom": room.has_attached_washroom,
        "hostel_id": hostel.id,
        "hostel_name": hostel.name,
        "hostel_type": hostel.type,
    }
