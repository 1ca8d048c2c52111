import logging
import os
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from common.cache import (
    AVAILABLE_BEDS_PREFIX,
    REPORTS_PREFIX,
    get_cached_json,
    invalidate_allocation_views,
    set_cached_json,
    view_key,
)

from . import schemas
from .allocation import AllocationTransaction
from .auth import STAFF_ROLES, ensure_self_or_staff, get_current_user_claims, require_roles
from .availability import AvailabilityQuery, BedFilters
from .database import Base, engine, get_store
from .errors import AllocationError, BookingNotFound
from .models import BookingStatus
from .payments import PaymentReconciler
from .rate_limiter import allocation_rate_limiter
from .reports import OccupancyAggregator
from .semester import semester_dates, upcoming_semesters

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create tables
Base.metadata.create_all(bind=engine)

app = FastAPI(title="Hostel Allocation Service", version="1.0.0")
router_v1 = APIRouter(prefix="/api/v1")

SERVICE_NAME = "allocation"


def _error_body(
    request: Request,
    status_code: int,
    detail,
    error: Optional[str] = None,
    retryable: Optional[bool] = None,
) -> dict:
    body = {
        "service": SERVICE_NAME,
        "path": request.url.path,
        "method": request.method,
        "status_code": status_code,
        "detail": detail,
    }
    if error is not None:
        body["error"] = error
    if retryable is not None:
        body["retryable"] = retryable
    return body


@app.exception_handler(AllocationError)
async def allocation_exception_handler(request: Request, exc: AllocationError):
    logger.warning("%s %s rejected: %s (%s)", request.method, request.url.path, exc.kind, exc.message)
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.status_code, exc.message, exc.kind, exc.retryable),
        headers=headers,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.status_code, exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=_error_body(request, 500, "Internal server error"),
    )


@app.get("/")
def root():
    """
    Health-check endpoint for the Allocation service.

    Returns
    -------
    dict
        A small JSON payload indicating that the service is running.
    """
    return {"service": SERVICE_NAME, "status": "running"}


any_role = require_roles("admin", "staff", "student", "auditor")
staff_only = require_roles(*STAFF_ROLES)
reporting_roles = require_roles("admin", "staff", "auditor")
booking_roles = require_roles("admin", "staff", "student")


# ---------- Availability ----------


@router_v1.get("/beds/available", response_model=List[schemas.AvailableBed])
def list_available_beds(
    hostel_id: Optional[int] = Query(default=None, ge=1),
    room_type: Optional[str] = None,
    min_price: Optional[Decimal] = Query(default=None, ge=0),
    max_price: Optional[Decimal] = Query(default=None, ge=0),
    gender: Optional[str] = None,
    year: Optional[int] = Query(default=None, ge=1),
    has_ac: Optional[bool] = None,
    has_attached_washroom: Optional[bool] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    store: sessionmaker = Depends(get_store),
    _: Dict = Depends(any_role),
):
    """
    List bookable beds with optional filters.

    Behavior
    --------
    - With ``start_date`` and ``end_date``, returns beds with no pending or
      active booking overlapping that range.
    - Without dates, returns beds whose status is currently ``available``.
    - The unfiltered listing is cached when Redis is configured.

    Returns
    -------
    List[AvailableBed]
        Beds ordered by hostel name, room number and bed number.

    Raises
    ------
    InvalidDateRange
        If only one date is given or end_date is not after start_date.
    """
    filters = BedFilters(
        hostel_id=hostel_id,
        room_type=room_type,
        min_price=min_price,
        max_price=max_price,
        gender=gender,
        year=year,
        has_ac=has_ac,
        has_attached_washroom=has_attached_washroom,
        start_date=start_date,
        end_date=end_date,
    )

    cache_key = view_key(AVAILABLE_BEDS_PREFIX, "all")
    if filters.is_empty():
        cached = get_cached_json(cache_key)
        if cached is not None:
            return cached

    beds = AvailabilityQuery(store).list_available_beds(filters)

    if filters.is_empty():
        data = [schemas.AvailableBed.model_validate(b).model_dump(mode="json") for b in beds]
        set_cached_json(cache_key, data, ttl_seconds=60)
        return data

    return beds


@router_v1.get("/beds/{bed_id}/availability", response_model=schemas.BedAvailability)
def check_bed_availability(
    bed_id: int,
    start_date: date,
    end_date: date,
    store: sessionmaker = Depends(get_store),
    _: Dict = Depends(any_role),
):
    """
    Check whether a bed is free for a date range (inclusive on both ends).

    Raises
    ------
    InvalidDateRange
        If end_date is not after start_date.
    """
    available = AvailabilityQuery(store).is_available(bed_id, start_date, end_date)
    return {
        "bed_id": bed_id,
        "start_date": start_date,
        "end_date": end_date,
        "available": available,
    }


# ---------- Bookings ----------


@router_v1.post(
    "/bookings",
    response_model=schemas.BookingCreated,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(allocation_rate_limiter)],
)
def create_booking(
    booking_in: schemas.BookingCreate,
    store: sessionmaker = Depends(get_store),
    claims: Dict = Depends(booking_roles),
):
    """
    Allocate a bed to a student.

    Access
    ------
    - Students book for themselves (``student_id`` may be omitted).
    - Admin and staff may book for any student and must name one.

    Behavior
    --------
    - A ``semester`` label replaces explicit dates.
    - Creates the booking as ``pending`` and marks the bed occupied, in one
      unit of work.

    Raises
    ------
    InvalidDateRange, BedNotFound, StudentNotFound, DuplicateActiveBooking,
    BedUnavailable, TransactionConflict
    """
    student_id = booking_in.student_id
    if student_id is None:
        if claims["role"] != "student":
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="student_id is required",
            )
        student_id = claims["user_id"]
    ensure_self_or_staff(claims, student_id)

    if booking_in.semester is not None:
        start_date, end_date = semester_dates(booking_in.semester)
    else:
        start_date, end_date = booking_in.start_date, booking_in.end_date

    booking = AllocationTransaction(store).allocate(student_id, booking_in.bed_id, start_date, end_date)
    invalidate_allocation_views()
    return {
        "booking_id": booking.id,
        "status": booking.status,
        "start_date": booking.start_date,
        "end_date": booking.end_date,
    }


@router_v1.get("/bookings", response_model=List[schemas.BookingDetail])
def list_bookings(
    booking_id: Optional[int] = Query(default=None, ge=1),
    store: sessionmaker = Depends(get_store),
    _: Dict = Depends(reporting_roles),
):
    """
    Admin/Staff/Auditor: list bookings with student, bed, room and hostel
    details, newest first.
    """
    return OccupancyAggregator(store).list_bookings(booking_id=booking_id)


@router_v1.patch(
    "/bookings/{booking_id}",
    response_model=schemas.BookingStatusRead,
    dependencies=[Depends(allocation_rate_limiter)],
)
def set_booking_status(
    booking_id: int,
    update: schemas.BookingStatusUpdate,
    store: sessionmaker = Depends(get_store),
    _: Dict = Depends(staff_only),
):
    """
    Administrative status change.

    Behavior
    --------
    - ``active``: activates the booking, synthesizing a payment from the
      room price if none was recorded.
    - ``cancelled``: cancels a pending booking and releases the bed.
    - ``completed``: completes an active booking and releases the bed.
    - anything else fails with ``InvalidTransition``.
    """
    if update.status == BookingStatus.ACTIVE:
        booking = PaymentReconciler(store).activate_without_payment(booking_id)
    else:
        booking = AllocationTransaction(store).transition(booking_id, update.status)
    invalidate_allocation_views()
    return {"booking_id": booking.id, "status": booking.status}


# ---------- Payments ----------


@router_v1.post(
    "/payments",
    response_model=schemas.PaymentRecorded,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(allocation_rate_limiter)],
)
def record_payment(
    payment_in: schemas.PaymentCreate,
    store: sessionmaker = Depends(get_store),
    claims: Dict = Depends(booking_roles),
):
    """
    Record a successful payment and activate the booking.

    Access
    ------
    - Students may only pay for their own bookings.

    Raises
    ------
    BookingNotFound, PaymentAlreadyRecorded, InvalidTransition,
    TransactionConflict
    """
    if claims["role"] not in STAFF_ROLES:
        found = OccupancyAggregator(store).list_bookings(booking_id=payment_in.booking_id)
        if not found:
            raise BookingNotFound()
        ensure_self_or_staff(claims, found[0]["student_id"])

    payment = PaymentReconciler(store).record_payment(
        payment_in.booking_id, payment_in.amount, payment_in.mode
    )
    invalidate_allocation_views()
    return {
        "payment_id": payment.id,
        "booking_id": payment.booking_id,
        "transaction_id": payment.transaction_id,
        "status": payment.status,
        "amount": payment.amount,
    }


# ---------- Students ----------


@router_v1.get("/students/{student_id}/booking", response_model=Optional[schemas.BookingDetail])
def get_student_booking(
    student_id: int,
    store: sessionmaker = Depends(get_store),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    The student's current pending or active booking, or null.
    """
    ensure_self_or_staff(claims, student_id)
    return OccupancyAggregator(store).current_booking(student_id)


@router_v1.get("/students/{student_id}/payments", response_model=List[schemas.PaymentHistoryItem])
def get_student_payments(
    student_id: int,
    store: sessionmaker = Depends(get_store),
    claims: Dict = Depends(get_current_user_claims),
):
    ensure_self_or_staff(claims, student_id)
    return OccupancyAggregator(store).payment_history(student_id)


# ---------- Reports ----------


def _cached_report(key: str, build):
    cache_key = view_key(REPORTS_PREFIX, key)
    cached = get_cached_json(cache_key)
    if cached is not None:
        return cached
    data = build()
    set_cached_json(cache_key, data, ttl_seconds=30)
    return data


@router_v1.get("/reports/occupancy", response_model=schemas.OccupancyReport)
def occupancy_report(
    hostel_id: Optional[int] = Query(default=None, ge=1),
    store: sessionmaker = Depends(get_store),
    _: Dict = Depends(reporting_roles),
):
    """
    Bed occupancy for one hostel or the whole portal.
    """
    return _cached_report(
        f"occupancy:{hostel_id or 'all'}",
        lambda: OccupancyAggregator(store).occupancy(hostel_id),
    )


@router_v1.get("/reports/revenue", response_model=schemas.RevenueReport)
def revenue_report(
    hostel_id: Optional[int] = Query(default=None, ge=1),
    store: sessionmaker = Depends(get_store),
    _: Dict = Depends(reporting_roles),
):
    """
    Revenue from successful payments for one hostel or the whole portal.
    """
    return _cached_report(
        f"revenue:{hostel_id or 'all'}",
        lambda: OccupancyAggregator(store).revenue(hostel_id),
    )


@router_v1.get("/reports/summary", response_model=schemas.SummaryReport)
def summary_report(
    store: sessionmaker = Depends(get_store),
    _: Dict = Depends(reporting_roles),
):
    """
    Dashboard payload: counters, per-hostel occupancy and revenue, and the
    ten most recent bookings.
    """
    aggregator = OccupancyAggregator(store)
    return _cached_report(
        "summary",
        lambda: {
            "summary": aggregator.summary(),
            "occupancy": aggregator.occupancy_by_hostel(),
            "revenue": aggregator.revenue_by_hostel(),
            "recent_bookings": aggregator.recent_bookings(limit=10),
        },
    )


# ---------- Semesters ----------


@router_v1.get("/semesters", response_model=List[str])
def list_semesters(
    count: int = Query(default=6, ge=1, le=20),
    _: Dict = Depends(any_role),
):
    return upcoming_semesters(count)


app.include_router(router_v1)
