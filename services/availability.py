from datetime import date

from flask import current_app

from models.booking import Booking, BLOCKING_STATUSES


def time_slots():
    return list(current_app.config["TIME_SLOTS"])


def booked_slots(day: date) -> set:
    rows = (
        Booking.query
        .with_entities(Booking.time_slot)
        .filter(Booking.booking_date == day, Booking.status.in_(list(BLOCKING_STATUSES)))
        .all()
    )
    return {r.time_slot for r in rows}


def available_slots(day: date) -> list:
    # Advisory read; the partial unique index on bookings is what actually prevents double booking
    taken = booked_slots(day)
    return [s for s in time_slots() if s not in taken]


def is_slot_free(day: date, slot: str, exclude_booking_id=None) -> bool:
    q = Booking.query.filter(
        Booking.booking_date == day,
        Booking.time_slot == slot,
        Booking.status.in_(list(BLOCKING_STATUSES)),
    )
    if exclude_booking_id is not None:
        q = q.filter(Booking.id != exclude_booking_id)
    return q.first() is None
