import logging
from datetime import date

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from . import models
from .availability import ensure_date_range, overlapping_bookings
from .database import unit_of_work
from .errors import BedNotFound, BedUnavailable, DuplicateActiveBooking, StudentNotFound
from .models import BookingStatus
from .state_machine import BookingStateMachine, reconcile_bed_status

logger = logging.getLogger(__name__)


class AllocationTransaction:
    """
    Claims and releases beds.

    Every operation runs as a single unit of work against the store. Row
    locks are taken in a fixed order (bed, then student) before any
    invariant is evaluated, so concurrent requests for the same bed or the
    same student are serialized by the store.

    Parameters
    ----------
    store : sessionmaker
        Session factory for the allocation store.
    """

    def __init__(self, store: sessionmaker):
        self.store = store

    def allocate(
        self,
        student_id: int,
        bed_id: int,
        start_date: date,
        end_date: date,
    ) -> models.Booking:
        """
        Create a pending booking for a student on a bed.

        Parameters
        ----------
        student_id : int
            Student requesting the bed.
        bed_id : int
            Bed to claim.
        start_date : date
            First day of the stay (inclusive).
        end_date : date
            Last day of the stay (inclusive).

        Returns
        -------
        Booking
            The committed booking, status ``pending``.

        Raises
        ------
        InvalidDateRange
            If end_date is not after start_date.
        BedNotFound, StudentNotFound
            If the bed or the student does not exist.
        DuplicateActiveBooking
            If the student already holds a pending or active booking.
        BedUnavailable
            If a pending or active booking on the bed overlaps the range.
        TransactionConflict
            If the store aborted the unit of work.
        """
        ensure_date_range(start_date, end_date)

        try:
            with unit_of_work(self.store) as db:
                bed = (
                    db.query(models.Bed)
                    .filter(models.Bed.id == bed_id)
                    .with_for_update()
                    .first()
                )
                if bed is None:
                    raise BedNotFound()

                student = (
                    db.query(models.Student)
                    .filter(models.Student.id == student_id)
                    .with_for_update()
                    .first()
                )
                if student is None:
                    raise StudentNotFound()

                holding = (
                    db.query(models.Booking.id)
                    .filter(models.Booking.student_id == student_id)
                    .filter(models.Booking.status.in_(models.HOLDING_STATUSES))
                    .first()
                )
                if holding is not None:
                    raise DuplicateActiveBooking()

                overlap = overlapping_bookings(db, bed_id, start_date, end_date)
                if db.query(overlap.exists()).scalar():
                    raise BedUnavailable()

                booking = models.Booking(
                    student_id=student_id,
                    bed_id=bed_id,
                    start_date=start_date,
                    end_date=end_date,
                    status=BookingStatus.PENDING,
                )
                db.add(booking)
                db.flush()
                reconcile_bed_status(db, bed_id)
                db.expunge(booking)
        except IntegrityError as exc:
            # The partial unique index caught a concurrent holder for this student.
            logger.warning("Allocation for student %s rejected by the store: %s", student_id, exc.orig)
            raise DuplicateActiveBooking() from exc
        except (BedUnavailable, DuplicateActiveBooking) as exc:
            logger.warning(
                "Allocation of bed %s to student %s rejected: %s", bed_id, student_id, exc.kind
            )
            raise

        logger.info(
            "Booking %s created: student %s, bed %s, %s to %s",
            booking.id, student_id, bed_id, start_date, end_date,
        )
        return booking

    def cancel(self, booking_id: int) -> models.Booking:
        """
        Cancel a pending booking and release its bed.
        """
        return self.transition(booking_id, BookingStatus.CANCELLED)

    def complete(self, booking_id: int) -> models.Booking:
        """
        Mark an active booking as completed and release its bed.
        """
        return self.transition(booking_id, BookingStatus.COMPLETED)

    def transition(self, booking_id: int, target_status: BookingStatus) -> models.Booking:
        """
        Apply a status change in its own unit of work.

        Activation still requires a successful payment; staff activation
        goes through ``PaymentReconciler.activate_without_payment``.
        """
        with unit_of_work(self.store) as db:
            booking = BookingStateMachine(db).apply(booking_id, target_status)
            db.expunge(booking)
        return booking
