from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .models import BedStatus, BookingStatus, PaymentStatus


class BookingCreate(BaseModel):
    """
    Schema for requesting a bed.

    Either an explicit ``start_date``/``end_date`` pair or a ``semester``
    label (e.g. 'Spring 2025') must be supplied. ``student_id`` defaults to
    the authenticated student.
    """
    student_id: Optional[int] = Field(default=None, ge=1)
    bed_id: int = Field(..., ge=1)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    semester: Optional[str] = None

    @model_validator(mode="after")
    def dates_or_semester(self):
        if self.semester is None and (self.start_date is None or self.end_date is None):
            raise ValueError("Provide start_date and end_date, or a semester")
        return self


class BookingCreated(BaseModel):
    booking_id: int
    status: BookingStatus
    start_date: date
    end_date: date


class BookingStatusUpdate(BaseModel):
    """
    Schema for the administrative status change of a booking.
    """
    status: BookingStatus


class BookingStatusRead(BaseModel):
    booking_id: int
    status: BookingStatus


class BookingDetail(BaseModel):
    """
    Booking joined with its student, bed, room and hostel.
    """
    booking_id: int
    start_date: date
    end_date: date
    status: BookingStatus
    created_at: datetime
    student_id: int
    student_name: str
    student_email: str
    hostel_id: int
    hostel_name: str
    hostel_type: str
    room_id: int
    room_number: str
    room_type: str
    price_per_month: Decimal
    bed_id: int
    bed_number: str
    bed_status: BedStatus


class PaymentCreate(BaseModel):
    """
    Schema for recording a payment against a booking.
    """
    booking_id: int = Field(..., ge=1)
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    mode: str = Field(default="Online", min_length=1, max_length=50)


class PaymentRecorded(BaseModel):
    payment_id: int
    booking_id: int
    transaction_id: str
    status: PaymentStatus
    amount: Decimal


class PaymentHistoryItem(BaseModel):
    payment_id: int
    booking_id: int
    amount: Decimal
    mode: str
    status: PaymentStatus
    transaction_id: str
    created_at: datetime
    hostel_name: str


class BedAvailability(BaseModel):
    bed_id: int
    start_date: date
    end_date: date
    available: bool


class AvailableBed(BaseModel):
    """
    A bookable bed with its room and hostel details.
    """
    bed_id: int
    bed_number: str
    status: BedStatus
    room_id: int
    room_number: str
    room_type: str
    price_per_month: Decimal
    has_ac: bool
    has_attached_washroom: bool
    hostel_id: int
    hostel_name: str
    hostel_type: str

    model_config = ConfigDict(from_attributes=True)


class OccupancyReport(BaseModel):
    hostel_id: Optional[int] = None
    total_beds: int
    occupied_beds: int
    available_beds: int
    occupancy_rate: float


class RevenueReport(BaseModel):
    hostel_id: Optional[int] = None
    total_bookings: int
    total_revenue: Decimal


class HostelOccupancy(BaseModel):
    hostel_id: int
    hostel_name: str
    hostel_type: str
    total_rooms: int
    total_beds: int
    occupied_beds: int
    available_beds: int
    occupancy_rate: float


class HostelRevenue(BaseModel):
    hostel_id: int
    hostel_name: str
    total_bookings: int
    total_revenue: Decimal
    avg_payment: Decimal
    successful_payments: int


class Summary(BaseModel):
    total_students: int
    total_bookings: int
    pending_bookings: int
    active_bookings: int
    completed_bookings: int
    cancelled_bookings: int
    total_revenue: Decimal
    total_hostels: int
    total_rooms: int
    total_beds: int
    occupied_beds: int
    available_beds: int


class SummaryReport(BaseModel):
    """
    Admin dashboard payload: portal counters, per-hostel breakdowns and
    the latest bookings.
    """
    summary: Summary
    occupancy: List[HostelOccupancy]
    revenue: List[HostelRevenue]
    recent_bookings: List[BookingDetail]
