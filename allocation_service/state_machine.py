import logging
from typing import Dict, FrozenSet

from sqlalchemy import exists
from sqlalchemy.orm import Session

from . import models
from .errors import BedNotFound, BookingNotFound, InvalidTransition
from .models import BedStatus, BookingStatus, PaymentStatus

logger = logging.getLogger(__name__)


def reconcile_bed_status(db: Session, bed_id: int) -> models.Bed:
    """
    Recompute a bed's cached status from the bookings that reference it.

    The bed is ``occupied`` while at least one pending or active booking
    references it and ``available`` otherwise. Every operation that
    changes a booking's status calls this inside the same unit of work;
    nothing else writes ``Bed.status``.

    Parameters
    ----------
    db : Session
        Session of the caller's unit of work.
    bed_id : int
        Bed to reconcile.

    Returns
    -------
    Bed
        The reconciled bed.
    """
    db.flush()
    # Lock the bed before counting so a concurrent allocation on it is seen.
    bed = (
        db.query(models.Bed)
        .filter(models.Bed.id == bed_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if bed is None:
        raise BedNotFound()

    holding = db.query(
        exists().where(
            models.Booking.bed_id == bed_id,
            models.Booking.status.in_(models.HOLDING_STATUSES),
        )
    ).scalar()

    new_status = BedStatus.OCCUPIED if holding else BedStatus.AVAILABLE
    if bed.status != new_status:
        logger.info("Bed %s status %s -> %s", bed_id, bed.status, new_status.value)
    bed.status = new_status
    db.flush()
    return bed


class BookingStateMachine:
    """
    Lifecycle controller for bookings.

    Holds the table of legal transitions and applies a transition together
    with its side effects inside the caller's unit of work. It is driven by
    ``AllocationTransaction`` and ``PaymentReconciler`` only, so that a
    status change is never separated from the bed reconciliation it needs.
    """

    _ALLOWED_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
        BookingStatus.PENDING: frozenset({BookingStatus.ACTIVE, BookingStatus.CANCELLED}),
        BookingStatus.ACTIVE: frozenset({BookingStatus.COMPLETED}),
        BookingStatus.COMPLETED: frozenset(),
        BookingStatus.CANCELLED: frozenset(),
    }

    def __init__(self, db: Session):
        self.db = db

    @classmethod
    def can_transition(cls, from_status: BookingStatus, to_status: BookingStatus) -> bool:
        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, frozenset())

    @classmethod
    def allowed_transitions(cls, status: BookingStatus) -> FrozenSet[BookingStatus]:
        return cls._ALLOWED_TRANSITIONS.get(status, frozenset())

    @classmethod
    def is_terminal(cls, status: BookingStatus) -> bool:
        return not cls._ALLOWED_TRANSITIONS.get(status)

    @classmethod
    def validate_transition(cls, from_status: BookingStatus, to_status: BookingStatus) -> None:
        """
        Raise ``InvalidTransition`` if ``from_status -> to_status`` is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransition(from_status.value, to_status.value)

    def lock_booking(self, booking_id: int) -> models.Booking:
        """
        Load a booking with a row lock held until the unit of work ends.

        Raises
        ------
        BookingNotFound
            If no booking has this ID.
        """
        booking = (
            self.db.query(models.Booking)
            .filter(models.Booking.id == booking_id)
            .with_for_update()
            .first()
        )
        if booking is None:
            raise BookingNotFound()
        return booking

    def has_successful_payment(self, booking_id: int) -> bool:
        self.db.flush()
        return self.db.query(
            exists().where(
                models.Payment.booking_id == booking_id,
                models.Payment.status == PaymentStatus.SUCCESS,
            )
        ).scalar()

    def apply(self, booking_id: int, target_status: BookingStatus) -> models.Booking:
        """
        Move a booking to ``target_status`` and reconcile its bed.

        Parameters
        ----------
        booking_id : int
            Booking to transition.
        target_status : BookingStatus
            Requested status.

        Returns
        -------
        Booking
            The updated booking (flushed, not committed).

        Raises
        ------
        BookingNotFound
            If the booking does not exist.
        InvalidTransition
            If the edge is not legal, or if activation is requested
            without a successful payment in this unit of work.
        """
        target_status = BookingStatus(target_status)
        booking = self.lock_booking(booking_id)
        current = booking.status

        self.validate_transition(current, target_status)

        if target_status == BookingStatus.ACTIVE and not self.has_successful_payment(booking.id):
            raise InvalidTransition(
                current.value,
                target_status.value,
                "Booking cannot be activated without a successful payment",
            )

        booking.status = target_status
        self.db.flush()
        reconcile_bed_status(self.db, booking.bed_id)

        logger.info("Booking %s %s -> %s", booking.id, current.value, target_status.value)
        return booking
