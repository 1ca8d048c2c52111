import logging
import uuid
from datetime import date
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from . import models
from .database import unit_of_work
from .errors import PaymentAlreadyRecorded
from .models import BookingStatus, PaymentStatus
from .state_machine import BookingStateMachine

logger = logging.getLogger(__name__)

DEFAULT_PAYMENT_MODE = "Online"
ADMIN_PAYMENT_MODE = "Admin Manual"


def months_touched(start_date: date, end_date: date) -> int:
    """
    Number of calendar months a stay touches, counting partial months.

    >>> months_touched(date(2025, 1, 10), date(2025, 6, 30))
    6
    """
    return (end_date.year - start_date.year) * 12 + end_date.month - start_date.month + 1


def booking_price(db: Session, booking: models.Booking) -> Decimal:
    """
    Price of a booking: the room's monthly price times the months it touches.
    """
    room = (
        db.query(models.Room)
        .join(models.Bed, models.Bed.room_id == models.Room.id)
        .filter(models.Bed.id == booking.bed_id)
        .one()
    )
    months = months_touched(booking.start_date, booking.end_date)
    return (Decimal(room.price_per_month) * months).quantize(Decimal("0.01"))


class PaymentReconciler:
    """
    Links payments to bookings and drives activation.

    A booking has at most one successful payment. Recording it and moving
    the booking from pending to active happen in the same unit of work,
    with the booking row locked first, so two payments racing on one
    booking cannot both succeed.

    Parameters
    ----------
    store : sessionmaker
        Session factory for the allocation store.
    """

    def __init__(self, store: sessionmaker):
        self.store = store

    def record_payment(
        self,
        booking_id: int,
        amount: Decimal,
        mode: str = DEFAULT_PAYMENT_MODE,
    ) -> models.Payment:
        """
        Record a successful payment and activate the booking.

        Parameters
        ----------
        booking_id : int
            Booking being paid for.
        amount : Decimal
            Amount received.
        mode : str
            Payment channel (e.g. 'Online', 'Cash').

        Returns
        -------
        Payment
            The committed payment, with a fresh ``transaction_id``.

        Raises
        ------
        BookingNotFound
            If the booking does not exist.
        PaymentAlreadyRecorded
            If the booking already has a successful payment.
        InvalidTransition
            If the booking is not pending (nothing is recorded).
        TransactionConflict
            If the store aborted the unit of work.
        """
        try:
            with unit_of_work(self.store) as db:
                machine = BookingStateMachine(db)
                machine.lock_booking(booking_id)
                if machine.has_successful_payment(booking_id):
                    logger.warning("Duplicate payment rejected for booking %s", booking_id)
                    raise PaymentAlreadyRecorded()

                payment = self._insert_success_payment(
                    db, booking_id, Decimal(amount), mode or DEFAULT_PAYMENT_MODE, str(uuid.uuid4())
                )
                machine.apply(booking_id, BookingStatus.ACTIVE)
                db.expunge(payment)
        except IntegrityError as exc:
            logger.warning("Payment for booking %s rejected by the store: %s", booking_id, exc.orig)
            raise PaymentAlreadyRecorded() from exc

        logger.info(
            "Payment %s recorded for booking %s: %s via %s",
            payment.transaction_id, booking_id, payment.amount, payment.mode,
        )
        return payment

    def activate_without_payment(self, booking_id: int) -> models.Booking:
        """
        Activate a booking on staff authority.

        If the booking has no successful payment yet, one is synthesized
        from the room's price so that every active booking is backed by
        exactly one successful payment.

        Raises
        ------
        BookingNotFound
            If the booking does not exist.
        InvalidTransition
            If the booking is not pending.
        TransactionConflict
            If the store aborted the unit of work.
        """
        try:
            with unit_of_work(self.store) as db:
                machine = BookingStateMachine(db)
                booking = machine.lock_booking(booking_id)
                machine.validate_transition(booking.status, BookingStatus.ACTIVE)

                if not machine.has_successful_payment(booking_id):
                    amount = booking_price(db, booking)
                    self._insert_success_payment(
                        db, booking_id, amount, ADMIN_PAYMENT_MODE, f"ADMIN-{uuid.uuid4()}"
                    )
                    logger.info("Synthesized payment of %s for booking %s", amount, booking_id)

                booking = machine.apply(booking_id, BookingStatus.ACTIVE)
                db.expunge(booking)
        except IntegrityError as exc:
            raise PaymentAlreadyRecorded() from exc

        return booking

    @staticmethod
    def _insert_success_payment(
        db: Session,
        booking_id: int,
        amount: Decimal,
        mode: str,
        transaction_id: str,
    ) -> models.Payment:
        payment = models.Payment(
            booking_id=booking_id,
            amount=amount,
            mode=mode,
            status=PaymentStatus.SUCCESS,
            transaction_id=transaction_id,
        )
        db.add(payment)
        db.flush()
        return payment
