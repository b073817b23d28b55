import logging
from datetime import date

from flask import Blueprint, request, jsonify, g

from models import db
from models.booking import Booking, BookingStatus
from services.availability import available_slots, time_slots
from services.booking import validate_booking_input, reserve, initiate_payment
from services.rating import validate_rating_input, rate_booking, list_reviews
from services.errors import BookingError, PaymentGatewayError, SlotConflict
from utils.auth_context import login_required
from utils.audit import log_event
from utils.errors import booking_error_response

logger = logging.getLogger(__name__)

booking_bp = Blueprint("booking", __name__)


def _own_booking(booking_id: int):
    booking = db.session.get(Booking, booking_id)
    if not booking or booking.user_id != g.user.id:
        return None
    return booking


# ---------- CUSTOMERS: slot availability ----------
@booking_bp.get("/slots")
@login_required
def list_slots():
    date_str = request.args.get("date")
    try:
        day = date.fromisoformat(date_str) if date_str else date.today()
    except ValueError:
        return jsonify(error="Invalid date. Use YYYY-MM-DD"), 400

    free = available_slots(day)
    return jsonify(
        date=day.isoformat(),
        slots=[{"time_slot": s, "available": s in free} for s in time_slots()],
        full=not free,
    ), 200


# ---------- CUSTOMERS: reserve a slot ----------
@booking_bp.post("/bookings")
@login_required
def create_booking():
    data = request.get_json(silent=True) or {}
    try:
        params = validate_booking_input(data)
        booking = reserve(
            g.user.id,
            params.booking_date,
            params.time_slot,
            params.location,
            params.litres,
        )
    except SlotConflict as exc:
        log_event("BOOKING_FAIL_SLOT_TAKEN", user_id=g.user.id, entity="slot",
                  entity_id=f"{exc.booking_date.isoformat()} {exc.time_slot}")
        return booking_error_response(exc)
    except BookingError as exc:
        return booking_error_response(exc)

    log_event("BOOKING_CREATE", user_id=g.user.id, entity="booking", entity_id=booking.id,
              metadata={"booking_date": booking.booking_date.isoformat(), "time_slot": booking.time_slot,
                        "litres": booking.litres, "amount": booking.amount})
    return jsonify(booking.to_dict()), 201


# ---------- CUSTOMERS: start M-Pesa STK push ----------
@booking_bp.post("/bookings/<int:booking_id>/pay")
@login_required
def pay_booking(booking_id: int):
    data = request.get_json(silent=True) or {}
    booking = _own_booking(booking_id)
    if not booking:
        return jsonify(error="Booking not found"), 404

    phone = data.get("phone_number") or g.user.phone_number or ""
    try:
        result = initiate_payment(booking, phone)
    except PaymentGatewayError as exc:
        logger.error("Payment initiation failed for booking %s: %s", booking_id, exc)
        log_event("PAYMENT_INIT_FAIL", user_id=g.user.id, entity="booking", entity_id=booking_id,
                  metadata={"error": type(exc).__name__, "message": exc.message})
        return booking_error_response(exc)
    except SlotConflict as exc:
        log_event("BOOKING_FAIL_SLOT_TAKEN", user_id=g.user.id, entity="booking", entity_id=booking_id)
        return booking_error_response(exc)
    except BookingError as exc:
        return booking_error_response(exc)

    log_event("PAYMENT_INITIATED", user_id=g.user.id, entity="booking", entity_id=booking_id,
              metadata={"checkout_request_id": result.checkout_request_id, "amount": result.booking.amount})
    return jsonify(
        success=True,
        message=f"Payment request sent. Please check your phone and enter your M-Pesa PIN "
                f"to pay KES {result.booking.amount:,}",
        checkout_request_id=result.checkout_request_id,
        booking=result.booking.to_dict(),
    ), 200


# ---------- CUSTOMERS: track bookings ----------
@booking_bp.get("/bookings/me")
@login_required
def my_bookings():
    q = Booking.query.filter_by(user_id=g.user.id)

    status = request.args.get("status")
    if status:
        try:
            q = q.filter(Booking.status == BookingStatus(status.upper()))
        except ValueError:
            return jsonify(error="Unknown status"), 400

    rows = q.order_by(Booking.created_at.desc()).all()
    return jsonify([b.to_dict() for b in rows]), 200


@booking_bp.get("/bookings/<int:booking_id>")
@login_required
def get_booking(booking_id: int):
    booking = _own_booking(booking_id)
    if not booking:
        return jsonify(error="Booking not found"), 404
    return jsonify(booking.to_dict()), 200


# ---------- CUSTOMERS: rate a delivery ----------
@booking_bp.post("/bookings/<int:booking_id>/rating")
@login_required
def rate_delivery(booking_id: int):
    data = request.get_json(silent=True) or {}
    booking = _own_booking(booking_id)
    if not booking:
        return jsonify(error="Booking not found"), 404

    try:
        score, comment = validate_rating_input(data)
        rating = rate_booking(booking, score, comment)
    except BookingError as exc:
        return booking_error_response(exc)

    log_event("BOOKING_RATED", user_id=g.user.id, entity="booking", entity_id=booking_id,
              metadata={"score": rating.score})
    return jsonify(rating.to_dict()), 201


@booking_bp.get("/reviews")
@login_required
def reviews():
    limit = max(1, min(request.args.get("limit", type=int) or 100, 500))
    summary = list_reviews(limit)
    return jsonify(
        average=summary.average,
        count=summary.count,
        reviews=[r.to_dict() for r in summary.reviews],
    ), 200
