from datetime import date

import pytest

from allocation_service import models
from allocation_service.allocation import AllocationTransaction
from allocation_service.errors import (
    BedNotFound,
    BedUnavailable,
    BookingNotFound,
    DuplicateActiveBooking,
    InvalidDateRange,
    InvalidTransition,
    StudentNotFound,
)
from allocation_service.models import BedStatus, BookingStatus
from allocation_service.payments import PaymentReconciler


def count_bookings(store):
    db = store()
    try:
        return db.query(models.Booking).count()
    finally:
        db.close()


def test_allocate_creates_pending_booking_and_occupies_bed(
    store, make_hostel, make_students, bed_status, check_invariants
):
    bed_id = make_hostel(beds_per_room=1)["bed_ids"][0]
    (student,) = make_students(1)

    booking = AllocationTransaction(store).allocate(student, bed_id, date(2025, 1, 10), date(2025, 6, 30))

    assert booking.id is not None
    assert booking.status == BookingStatus.PENDING
    assert booking.student_id == student
    assert booking.bed_id == bed_id
    assert booking.created_at is not None
    assert bed_status(bed_id) == BedStatus.OCCUPIED
    check_invariants()


def test_scenario_a_overlapping_request_is_rejected(
    store, make_hostel, make_students, bed_status, check_invariants
):
    bed_id = make_hostel(beds_per_room=1)["bed_ids"][0]
    s1, s2 = make_students(2)
    allocation = AllocationTransaction(store)

    first = allocation.allocate(s1, bed_id, date(2025, 1, 10), date(2025, 6, 30))
    assert first.status == BookingStatus.PENDING
    assert bed_status(bed_id) == BedStatus.OCCUPIED

    with pytest.raises(BedUnavailable):
        allocation.allocate(s2, bed_id, date(2025, 2, 1), date(2025, 3, 1))

    assert count_bookings(store) == 1
    check_invariants()


def test_boundary_day_counts_as_overlap(store, make_hostel, make_students):
    bed_id = make_hostel(beds_per_room=1)["bed_ids"][0]
    s1, s2 = make_students(2)
    allocation = AllocationTransaction(store)
    allocation.allocate(s1, bed_id, date(2025, 1, 10), date(2025, 6, 30))

    with pytest.raises(BedUnavailable):
        allocation.allocate(s2, bed_id, date(2025, 6, 30), date(2025, 12, 20))


def test_non_overlapping_ranges_share_a_bed(store, make_hostel, make_students, check_invariants):
    bed_id = make_hostel(beds_per_room=1)["bed_ids"][0]
    s1, s2 = make_students(2)
    allocation = AllocationTransaction(store)

    allocation.allocate(s1, bed_id, date(2025, 1, 10), date(2025, 6, 30))
    second = allocation.allocate(s2, bed_id, date(2025, 7, 1), date(2025, 12, 20))

    assert second.status == BookingStatus.PENDING
    check_invariants()


def test_student_cannot_hold_two_bookings(store, make_hostel, make_students, bed_status, check_invariants):
    beds = make_hostel(beds_per_room=2)["bed_ids"]
    (student,) = make_students(1)
    allocation = AllocationTransaction(store)
    allocation.allocate(student, beds[0], date(2025, 1, 10), date(2025, 6, 30))

    with pytest.raises(DuplicateActiveBooking):
        allocation.allocate(student, beds[1], date(2025, 7, 1), date(2025, 12, 20))

    assert bed_status(beds[1]) == BedStatus.AVAILABLE
    assert count_bookings(store) == 1
    check_invariants()


def test_active_booking_also_blocks_second_booking(store, make_hostel, make_students):
    beds = make_hostel(beds_per_room=2)["bed_ids"]
    (student,) = make_students(1)
    allocation = AllocationTransaction(store)
    booking = allocation.allocate(student, beds[0], date(2025, 1, 10), date(2025, 6, 30))
    PaymentReconciler(store).record_payment(booking.id, 12000)

    with pytest.raises(DuplicateActiveBooking):
        allocation.allocate(student, beds[1], date(2025, 7, 1), date(2025, 12, 20))


def test_student_can_book_again_after_cancellation(store, make_hostel, make_students, check_invariants):
    beds = make_hostel(beds_per_room=2)["bed_ids"]
    (student,) = make_students(1)
    allocation = AllocationTransaction(store)
    booking = allocation.allocate(student, beds[0], date(2025, 1, 10), date(2025, 6, 30))
    allocation.cancel(booking.id)

    again = allocation.allocate(student, beds[1], date(2025, 1, 10), date(2025, 6, 30))
    assert again.status == BookingStatus.PENDING
    check_invariants()


def test_student_can_book_again_after_completion(store, make_hostel, make_students, check_invariants):
    bed_id = make_hostel(beds_per_room=1)["bed_ids"][0]
    (student,) = make_students(1)
    allocation = AllocationTransaction(store)
    booking = allocation.allocate(student, bed_id, date(2025, 1, 10), date(2025, 6, 30))
    PaymentReconciler(store).record_payment(booking.id, 12000)
    allocation.complete(booking.id)

    again = allocation.allocate(student, bed_id, date(2025, 7, 1), date(2025, 12, 20))
    assert again.status == BookingStatus.PENDING
    check_invariants()


def test_missing_bed(store, make_students):
    (student,) = make_students(1)
    with pytest.raises(BedNotFound):
        AllocationTransaction(store).allocate(student, 404, date(2025, 1, 10), date(2025, 6, 30))
    assert count_bookings(store) == 0


def test_missing_student(store, make_hostel, bed_status):
    bed_id = make_hostel(beds_per_room=1)["bed_ids"][0]
    with pytest.raises(StudentNotFound):
        AllocationTransaction(store).allocate(404, bed_id, date(2025, 1, 10), date(2025, 6, 30))
    assert bed_status(bed_id) == BedStatus.AVAILABLE


@pytest.mark.parametrize(
    "start, end",
    [
        (date(2025, 6, 30), date(2025, 1, 10)),
        (date(2025, 1, 10), date(2025, 1, 10)),
    ],
)
def test_invalid_date_range(store, make_hostel, make_students, start, end):
    bed_id = make_hostel(beds_per_room=1)["bed_ids"][0]
    (student,) = make_students(1)
    with pytest.raises(InvalidDateRange):
        AllocationTransaction(store).allocate(student, bed_id, start, end)
    assert count_bookings(store) == 0


def test_scenario_d_cancel_releases_bed(store, make_hostel, make_students, bed_status, check_invariants):
    bed_id = make_hostel(beds_per_room=1)["bed_ids"][0]
    s1, s2 = make_students(2)
    allocation = AllocationTransaction(store)

    booking = allocation.allocate(s1, bed_id, date(2025, 1, 1), date(2025, 5, 1))
    cancelled = allocation.cancel(booking.id)
    assert cancelled.status == BookingStatus.CANCELLED
    assert bed_status(bed_id) == BedStatus.AVAILABLE
    check_invariants()

    replacement = allocation.allocate(s2, bed_id, date(2025, 2, 1), date(2025, 4, 1))
    assert replacement.status == BookingStatus.PENDING
    assert bed_status(bed_id) == BedStatus.OCCUPIED
    check_invariants()


def test_cancel_keeps_bed_occupied_while_another_booking_holds_it(
    store, make_hostel, make_students, bed_status, check_invariants
):
    bed_id = make_hostel(beds_per_room=1)["bed_ids"][0]
    s1, s2 = make_students(2)
    allocation = AllocationTransaction(store)
    spring = allocation.allocate(s1, bed_id, date(2025, 1, 10), date(2025, 6, 30))
    allocation.allocate(s2, bed_id, date(2025, 7, 1), date(2025, 12, 20))

    allocation.cancel(spring.id)

    assert bed_status(bed_id) == BedStatus.OCCUPIED
    check_invariants()


def test_cancel_active_booking_is_rejected(store, make_hostel, make_students, bed_status, check_invariants):
    bed_id = make_hostel(beds_per_room=1)["bed_ids"][0]
    (student,) = make_students(1)
    allocation = AllocationTransaction(store)
    booking = allocation.allocate(student, bed_id, date(2025, 1, 10), date(2025, 6, 30))
    PaymentReconciler(store).record_payment(booking.id, 12000)

    with pytest.raises(InvalidTransition):
        allocation.cancel(booking.id)

    assert bed_status(bed_id) == BedStatus.OCCUPIED
    check_invariants()


def test_complete_pending_booking_is_rejected(store, make_hostel, make_students):
    bed_id = make_hostel(beds_per_room=1)["bed_ids"][0]
    (student,) = make_students(1)
    allocation = AllocationTransaction(store)
    booking = allocation.allocate(student, bed_id, date(2025, 1, 10), date(2025, 6, 30))

    with pytest.raises(InvalidTransition):
        allocation.complete(booking.id)


def test_transition_to_active_without_payment_is_rejected(store, make_hostel, make_students, check_invariants):
    bed_id = make_hostel(beds_per_room=1)["bed_ids"][0]
    (student,) = make_students(1)
    allocation = AllocationTransaction(store)
    booking = allocation.allocate(student, bed_id, date(2025, 1, 10), date(2025, 6, 30))

    with pytest.raises(InvalidTransition):
        allocation.transition(booking.id, BookingStatus.ACTIVE)
    check_invariants()


def test_cancel_missing_booking(store):
    with pytest.raises(BookingNotFound):
        AllocationTransaction(store).cancel(12345)


def test_failed_allocation_leaves_no_partial_state(
    store, make_hostel, make_students, bed_status, check_invariants
):
    beds = make_hostel(beds_per_room=2)["bed_ids"]
    s1, s2 = make_students(2)
    allocation = AllocationTransaction(store)
    allocation.allocate(s1, beds[0], date(2025, 1, 10), date(2025, 6, 30))

    for attempt in (
        lambda: allocation.allocate(s2, beds[0], date(2025, 3, 1), date(2025, 3, 2)),
        lambda: allocation.allocate(s1, beds[1], date(2025, 7, 1), date(2025, 7, 2)),
        lambda: allocation.allocate(s2, 999, date(2025, 7, 1), date(2025, 7, 2)),
    ):
        with pytest.raises((BedUnavailable, DuplicateActiveBooking, BedNotFound)):
            attempt()
        check_invariants()

    assert count_bookings(store) == 1
    assert bed_status(beds[1]) == BedStatus.AVAILABLE
