import logging
from dataclasses import dataclass
from datetime import date

from flask import current_app
from sqlalchemy.exc import IntegrityError

from models import db
from models.booking import (
    Booking,
    BookingStatus,
    DELETABLE_STATUSES,
    can_transition,
)
from services.availability import is_slot_free, time_slots
from services.errors import (
    CorrelationAlreadyAssigned,
    InvalidInput,
    InvalidTransition,
    SlotConflict,
)
from services.mpesa import MpesaClient

logger = logging.getLogger(__name__)

SLOT_TAKEN_REASON = "Slot was booked by another customer before payment started"
ADMIN_FAIL_REASON = "Marked as failed by administrator"


@dataclass(frozen=True)
class BookingInput:
    booking_date: date
    time_slot: str
    location: str
    litres: int


@dataclass(frozen=True)
class PaymentInitiation:
    booking: Booking
    checkout_request_id: str
    customer_message: str


def _parse_litres(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def validate_booking_input(data: dict) -> BookingInput:
    errors = {}

    location = data.get("location")
    location = location.strip() if isinstance(location, str) else ""
    if not location:
        errors["location"] = "Delivery location is required"
    elif len(location) > 255:
        errors["location"] = "Delivery location is too long"

    min_litres = current_app.config.get("MIN_LITRES", 100)
    max_litres = current_app.config.get("MAX_LITRES", 50000)
    litres = _parse_litres(data.get("litres"))
    if litres is None or not (min_litres <= litres <= max_litres):
        errors["litres"] = f"Please enter a valid number of litres ({min_litres}-{max_litres})"

    time_slot = data.get("time_slot")
    if time_slot not in time_slots():
        errors["time_slot"] = "Unknown time slot"

    booking_date = None
    raw_date = data.get("booking_date")
    try:
        booking_date = date.fromisoformat(raw_date)
    except (TypeError, ValueError):
        errors["booking_date"] = "Invalid date. Use YYYY-MM-DD"
    else:
        if booking_date < date.today():
            errors["booking_date"] = "Cannot book a date in the past"

    if errors:
        raise InvalidInput(errors)
    return BookingInput(booking_date=booking_date, time_slot=time_slot, location=location, litres=litres)


def reserve(customer_id: int, booking_date: date, time_slot: str, location: str, litres: int) -> Booking:
    # Fast rejection only; PENDING does not hold the slot yet
    if not is_slot_free(booking_date, time_slot):
        raise SlotConflict(booking_date, time_slot)

    booking = Booking(
        user_id=customer_id,
        booking_date=booking_date,
        time_slot=time_slot,
        location=location,
        litres=litres,
        status=BookingStatus.PENDING,
    )
    db.session.add(booking)
    db.session.commit()
    logger.info("Booking %s reserved %s %s for user %s", booking.id, booking_date, time_slot, customer_id)
    return booking


def initiate_payment(booking: Booking, customer_phone: str, client: MpesaClient = None) -> PaymentInitiation:
    """
    Send the STK push for a PENDING booking and claim its slot.

    Gateway failures leave the booking PENDING with no correlation id so the
    customer can retry on the same record.
    """
    if booking.checkout_request_id:
        raise CorrelationAlreadyAssigned(booking.id, booking.checkout_request_id)
    if booking.status != BookingStatus.PENDING:
        raise InvalidTransition(booking.status, BookingStatus.PAYMENT_INITIATED)
    if isinstance(customer_phone, int) and not isinstance(customer_phone, bool):
        customer_phone = str(customer_phone)
    if not isinstance(customer_phone, str) or not customer_phone.strip():
        raise InvalidInput({"phone_number": "Phone number not found. Please update your profile."})
    if not is_slot_free(booking.booking_date, booking.time_slot, exclude_booking_id=booking.id):
        raise SlotConflict(booking.booking_date, booking.time_slot)

    client = client or MpesaClient.from_config(current_app.config)
    token = client.authenticate()
    ack = client.push_payment_request(token, customer_phone, booking.amount, booking.id)

    booking_id = booking.id
    try:
        claimed = Booking.compare_and_set(
            booking_id,
            BookingStatus.PENDING,
            status=BookingStatus.PAYMENT_INITIATED,
            checkout_request_id=ack.checkout_request_id,
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        # Lost the slot between the availability read and the claim. Keep the
        # correlation id so a late success callback is flagged for refund.
        logger.warning(
            "Slot %s %s taken while booking %s was pushed (CheckoutRequestID=%s)",
            booking.booking_date, booking.time_slot, booking_id, ack.checkout_request_id,
        )
        Booking.compare_and_set(
            booking_id,
            BookingStatus.PENDING,
            status=BookingStatus.PAYMENT_FAILED,
            checkout_request_id=ack.checkout_request_id,
            payment_error=SLOT_TAKEN_REASON,
        )
        db.session.commit()
        raise SlotConflict(booking.booking_date, booking.time_slot)

    db.session.refresh(booking)
    if not claimed:
        logger.warning(
            "Booking %s changed during payment push; orphaned CheckoutRequestID=%s",
            booking_id, ack.checkout_request_id,
        )
        raise CorrelationAlreadyAssigned(booking_id, booking.checkout_request_id)

    logger.info("Booking %s payment initiated (CheckoutRequestID=%s)", booking_id, ack.checkout_request_id)
    return PaymentInitiation(
        booking=booking,
        checkout_request_id=ack.checkout_request_id,
        customer_message=ack.customer_message,
    )


# ---------- admin transitions ----------

def _admin_transition(booking: Booking, target: BookingStatus, **values) -> Booking:
    if not can_transition(booking.status, target):
        raise InvalidTransition(booking.status, target)

    if not Booking.compare_and_set(booking.id, booking.status, status=target, **values):
        db.session.rollback()
        db.session.refresh(booking)
        raise InvalidTransition(booking.status, target)

    db.session.commit()
    db.session.refresh(booking)
    return booking


def mark_delivered(booking: Booking) -> Booking:
    return _admin_transition(booking, BookingStatus.DELIVERED)


def override_failed(booking: Booking, reason: str = None) -> Booking:
    return _admin_transition(
        booking,
        BookingStatus.PAYMENT_FAILED,
        payment_error=(reason or ADMIN_FAIL_REASON)[:255],
    )


def delete_booking(booking: Booking) -> None:
    if booking.status not in DELETABLE_STATUSES:
        raise InvalidTransition(booking.status, "DELETED")

    deleted = (
        Booking.query
        .filter(Booking.id == booking.id, Booking.status.in_(list(DELETABLE_STATUSES)))
        .delete(synchronize_session=False)
    )
    if not deleted:
        db.session.rollback()
        db.session.refresh(booking)
        raise InvalidTransition(booking.status, "DELETED")
    db.session.commit()
