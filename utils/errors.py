from flask import jsonify

from services.errors import (
    AlreadyRated,
    BookingError,
    CorrelationAlreadyAssigned,
    InvalidInput,
    InvalidTransition,
    PaymentGatewayError,
    RatingNotAllowed,
    SlotConflict,
)


def booking_error_response(exc: BookingError):
    if isinstance(exc, InvalidInput):
        return jsonify(error="Invalid booking details", details=exc.errors), 400
    if isinstance(exc, SlotConflict):
        return jsonify(
            error=exc.message,
            booking_date=exc.booking_date.isoformat(),
            time_slot=exc.time_slot,
        ), 409
    if isinstance(exc, (CorrelationAlreadyAssigned, InvalidTransition, RatingNotAllowed, AlreadyRated)):
        return jsonify(error=exc.message), 409
    if isinstance(exc, PaymentGatewayError):
        # message is either our own text or the gateway's ResponseDescription
        return jsonify(error=exc.message), 502
    return jsonify(error=exc.message), 400
