class BookingError(Exception):
    """Base class for booking/payment failures surfaced to the caller."""

    message = "Booking request failed"

    def __init__(self, message=None):
        super().__init__(message or self.message)
        self.message = message or self.message


class InvalidInput(BookingError):
    message = "Invalid booking details"

    def __init__(self, errors: dict):
        super().__init__("; ".join(f"{k}: {v}" for k, v in errors.items()))
        self.errors = errors


class SlotConflict(BookingError):
    message = "This time slot has just been booked. Please select another slot."

    def __init__(self, booking_date, time_slot):
        super().__init__()
        self.booking_date = booking_date
        self.time_slot = time_slot


class CorrelationAlreadyAssigned(BookingError):
    message = "A payment request is already in progress for this booking"

    def __init__(self, booking_id, checkout_request_id):
        super().__init__()
        self.booking_id = booking_id
        self.checkout_request_id = checkout_request_id


class InvalidTransition(BookingError):
    def __init__(self, current, target):
        super().__init__(f"Cannot move booking from {current.value} to {getattr(target, 'value', target)}")
        self.current = current
        self.target = target


class RatingNotAllowed(BookingError):
    message = "Only delivered bookings can be rated"


class AlreadyRated(BookingError):
    message = "You have already rated this delivery"

    def __init__(self, booking_id):
        super().__init__()
        self.booking_id = booking_id


class PaymentGatewayError(BookingError):
    message = "Payment initiation failed"


class AuthFailed(PaymentGatewayError):
    message = "Could not authenticate with the payment gateway"


class GatewayRejected(PaymentGatewayError):
    def __init__(self, description=None, response_code=None):
        super().__init__(description or "Payment request was rejected")
        self.description = description
        self.response_code = response_code


class TransportError(PaymentGatewayError):
    message = "Payment gateway is unreachable. Please try again."


class MalformedCallback(Exception):
    pass
