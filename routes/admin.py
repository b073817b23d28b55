import csv
import io
from datetime import date

from flask import Blueprint, Response, jsonify, g, request

from models import db
from models.booking import Booking, BookingStatus
from models.user import User
from security.rbac import require_roles
from services.booking import mark_delivered, override_failed, delete_booking
from services.errors import BookingError
from utils.audit import log_event
from utils.errors import booking_error_response

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")

EXPORT_COLUMNS = [
    "id", "booking_date", "time_slot", "status", "litres", "amount", "location",
    "customer_name", "customer_email", "customer_phone",
    "checkout_request_id", "mpesa_receipt_number", "payment_phone", "payment_date",
    "payment_error", "created_at",
]


def _booking_row(b: Booking, user: User) -> dict:
    row = b.to_dict()
    row["customer_name"] = user.full_name if user else None
    row["customer_email"] = user.email if user else None
    row["customer_phone"] = user.phone_number if user else None
    return row


def _month_range(year: int, month: int = None):
    if month is None:
        return date(year, 1, 1), date(year + 1, 1, 1)
    if month == 12:
        return date(year, 12, 1), date(year + 1, 1, 1)
    return date(year, month, 1), date(year, month + 1, 1)


# ---------- ADMIN: review bookings ----------
@admin_bp.get("/bookings")
@require_roles("ADMIN")
def list_bookings():
    q = db.session.query(Booking, User).outerjoin(User, Booking.user_id == User.id)

    status = request.args.get("status")
    if status:
        try:
            q = q.filter(Booking.status == BookingStatus(status.upper()))
        except ValueError:
            return jsonify(error="Unknown status"), 400

    date_str = request.args.get("date")  # YYYY-MM-DD
    if date_str:
        try:
            q = q.filter(Booking.booking_date == date.fromisoformat(date_str))
        except ValueError:
            return jsonify(error="Invalid date. Use YYYY-MM-DD"), 400

    limit = max(1, min(request.args.get("limit", type=int) or 200, 500))
    rows = q.order_by(Booking.booking_date.desc(), Booking.time_slot.asc()).limit(limit).all()
    return jsonify([_booking_row(b, u) for b, u in rows]), 200


def _get_booking(booking_id: int):
    return db.session.get(Booking, booking_id)


@admin_bp.post("/bookings/<int:booking_id>/deliver")
@require_roles("ADMIN")
def deliver_booking(booking_id: int):
    booking = _get_booking(booking_id)
    if not booking:
        return jsonify(error="Booking not found"), 404

    try:
        mark_delivered(booking)
    except BookingError as exc:
        return booking_error_response(exc)

    log_event("ADMIN_BOOKING_DELIVER", user_id=g.user.id, entity="booking", entity_id=booking_id)
    return jsonify(booking.to_dict()), 200


@admin_bp.post("/bookings/<int:booking_id>/fail")
@require_roles("ADMIN")
def fail_booking(booking_id: int):
    data = request.get_json(silent=True) or {}
    reason = (data.get("reason") or "").strip() or None

    booking = _get_booking(booking_id)
    if not booking:
        return jsonify(error="Booking not found"), 404

    previous = booking.status
    try:
        override_failed(booking, reason)
    except BookingError as exc:
        return booking_error_response(exc)

    log_event("ADMIN_BOOKING_FAIL", user_id=g.user.id, entity="booking", entity_id=booking_id,
              metadata={"reason": booking.payment_error, "previous_status": previous.value})
    return jsonify(booking.to_dict()), 200


@admin_bp.delete("/bookings/<int:booking_id>")
@require_roles("ADMIN")
def remove_booking(booking_id: int):
    booking = _get_booking(booking_id)
    if not booking:
        return jsonify(error="Booking not found"), 404

    status = booking.status
    try:
        delete_booking(booking)
    except BookingError as exc:
        return booking_error_response(exc)

    log_event("ADMIN_BOOKING_DELETE", user_id=g.user.id, entity="booking", entity_id=booking_id,
              metadata={"status": status.value})
    return jsonify(message="Booking deleted"), 200


# ---------- ADMIN: CSV audit export ----------
@admin_bp.get("/bookings/export")
@require_roles("ADMIN")
def export_bookings():
    year = request.args.get("year", type=int)
    month = request.args.get("month", type=int)
    if not year or year < 2000 or year > 9999:
        return jsonify(error="year is required (e.g. 2026)"), 400
    if month is not None and not 1 <= month <= 12:
        return jsonify(error="month must be 1-12"), 400

    start, end = _month_range(year, month)
    rows = (
        db.session.query(Booking, User)
        .outerjoin(User, Booking.user_id == User.id)
        .filter(Booking.booking_date >= start, Booking.booking_date < end)
        .order_by(Booking.booking_date.asc(), Booking.time_slot.asc())
        .all()
    )

    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=EXPORT_COLUMNS, extrasaction="ignore")
    writer.writeheader()
    for b, u in rows:
        writer.writerow(_booking_row(b, u))

    log_event("BOOKINGS_EXPORT", user_id=g.user.id,
              metadata={"year": year, "month": month, "rows": len(rows)})

    suffix = f"{year}-{month:02d}" if month else str(year)
    return Response(
        buf.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename=bookings-{suffix}.csv"},
    )
