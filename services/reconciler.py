"""
M-Pesa STK callback reconciliation.

Daraja posts the outcome of an STK push to our callback URL at least once,
possibly late and possibly before the initiating request has committed the
CheckoutRequestID. Handling must be idempotent: the callback is looked up by
CheckoutRequestID and applied with a conditional update from
PAYMENT_INITIATED only. A callback that contradicts an already finalized
booking is reported as a conflict and never overwrites it.
"""
import enum
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from flask import current_app

from models import db
from models.booking import Booking, BookingStatus
from services.errors import MalformedCallback

logger = logging.getLogger(__name__)

MAX_APPLY_ATTEMPTS = 3


class CallbackResult(str, enum.Enum):
    APPLIED = "APPLIED"
    DUPLICATE = "DUPLICATE"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"


@dataclass(frozen=True)
class CallbackData:
    result_code: int
    result_desc: str
    checkout_request_id: str
    merchant_request_id: Optional[str] = None
    receipt_number: Optional[str] = None
    transaction_date: Optional[datetime] = None
    phone_number: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0


@dataclass(frozen=True)
class ReconcileOutcome:
    result: CallbackResult
    callback: CallbackData
    booking_id: Optional[int] = None
    status: Optional[BookingStatus] = None
    detail: str = ""


def parse_transaction_date(value, utc_offset_hours: int = 3) -> Optional[datetime]:
    """YYYYMMDDHHmmss in gateway local time -> naive UTC datetime."""
    if value in (None, ""):
        return None
    try:
        local = datetime.strptime(str(value), "%Y%m%d%H%M%S")
    except ValueError:
        logger.warning("Unparseable M-Pesa TransactionDate: %r", value)
        return None
    local = local.replace(tzinfo=timezone(timedelta(hours=utc_offset_hours)))
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def _result_code(value) -> int:
    # bool is an int subclass; floats would truncate 0.5 to a success code
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise MalformedCallback("Missing or non-integer ResultCode")


def parse_callback(payload, utc_offset_hours: int = 3) -> CallbackData:
    if not isinstance(payload, dict):
        raise MalformedCallback("Callback body must be a JSON object")

    body = payload.get("Body")
    stk = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(stk, dict):
        raise MalformedCallback("Missing Body.stkCallback")

    checkout_id = stk.get("CheckoutRequestID")
    if not checkout_id:
        raise MalformedCallback("Missing CheckoutRequestID")
    result_code = _result_code(stk.get("ResultCode"))

    # Items arrive as [{"Name": ..., "Value": ...}]; order is not guaranteed
    items = {}
    metadata = stk.get("CallbackMetadata") or {}
    if not isinstance(metadata, dict):
        raise MalformedCallback("CallbackMetadata must be an object")
    metadata_items = metadata.get("Item") or []
    if not isinstance(metadata_items, list):
        raise MalformedCallback("CallbackMetadata.Item must be a list")
    for item in metadata_items:
        if isinstance(item, dict) and item.get("Name"):
            items[item["Name"]] = item.get("Value")

    receipt = items.get("MpesaReceiptNumber")
    phone = items.get("PhoneNumber")
    return CallbackData(
        result_code=result_code,
        result_desc=str(stk.get("ResultDesc") or ""),
        checkout_request_id=str(checkout_id),
        merchant_request_id=stk.get("MerchantRequestID"),
        receipt_number=str(receipt) if receipt is not None else None,
        transaction_date=parse_transaction_date(items.get("TransactionDate"), utc_offset_hours),
        phone_number=str(phone) if phone is not None else None,
    )


def _find_booking(checkout_request_id: str, attempts: int, delay: float) -> Optional[Booking]:
    # The callback can beat the initiating request's commit; re-read a few times
    for attempt in range(attempts):
        booking = Booking.query.filter_by(checkout_request_id=checkout_request_id).first()
        if booking is not None or attempt == attempts - 1:
            return booking
        db.session.rollback()
        time.sleep(delay)
    return None


def _existing_outcome(booking: Booking, cb: CallbackData) -> Optional[ReconcileOutcome]:
    """Outcome for a booking the callback can no longer move, or None if it is still awaiting one."""
    status = booking.status

    if status == BookingStatus.PAYMENT_INITIATED:
        return None

    if status in (BookingStatus.CONFIRMED, BookingStatus.DELIVERED):
        if cb.succeeded and (cb.receipt_number is None or cb.receipt_number == booking.mpesa_receipt_number):
            return ReconcileOutcome(CallbackResult.DUPLICATE, cb, booking.id, status, "Payment already confirmed")
        detail = "Callback contradicts a confirmed payment"
    elif status == BookingStatus.PAYMENT_FAILED:
        if not cb.succeeded:
            return ReconcileOutcome(CallbackResult.DUPLICATE, cb, booking.id, status, "Payment already marked failed")
        detail = "Successful payment reported for a failed booking"
    elif status == BookingStatus.PENDING:
        detail = "Callback received for a booking that never started payment"
    else:
        raise ValueError(f"Unhandled booking status {status!r}")

    logger.warning(
        "M-Pesa callback conflict: booking=%s status=%s CheckoutRequestID=%s result=%s receipt=%s (%s)",
        booking.id, status.value, cb.checkout_request_id, cb.result_code, cb.receipt_number, detail,
    )
    return ReconcileOutcome(CallbackResult.CONFLICT, cb, booking.id, status, detail)


def _apply(booking: Booking, cb: CallbackData) -> ReconcileOutcome:
    if cb.succeeded:
        target = BookingStatus.CONFIRMED
        values = {
            "mpesa_receipt_number": cb.receipt_number,
            "payment_phone": cb.phone_number,
            "payment_date": cb.transaction_date,
            "payment_error": None,
        }
    else:
        target = BookingStatus.PAYMENT_FAILED
        values = {"payment_error": cb.result_desc[:255] or "Payment failed"}

    for _ in range(MAX_APPLY_ATTEMPTS):
        existing = _existing_outcome(booking, cb)
        if existing is not None:
            return existing

        if Booking.compare_and_set(booking.id, BookingStatus.PAYMENT_INITIATED, status=target, **values):
            db.session.commit()
            logger.info(
                "Booking %s -> %s (CheckoutRequestID=%s, receipt=%s, desc=%s)",
                booking.id, target.value, cb.checkout_request_id, cb.receipt_number, cb.result_desc,
            )
            return ReconcileOutcome(CallbackResult.APPLIED, cb, booking.id, target)

        # Another delivery of this callback (or an admin) got there first
        db.session.rollback()
        db.session.refresh(booking)

    raise RuntimeError(f"Could not reconcile booking {booking.id} after {MAX_APPLY_ATTEMPTS} attempts")


def reconcile(payload, attempts: int = None, delay: float = None) -> ReconcileOutcome:
    config = current_app.config
    attempts = attempts if attempts is not None else config.get("CALLBACK_LOOKUP_ATTEMPTS", 3)
    delay = delay if delay is not None else config.get("CALLBACK_LOOKUP_DELAY_SECONDS", 0.5)

    cb = parse_callback(payload, config.get("GATEWAY_UTC_OFFSET_HOURS", 3))
    logger.info(
        "M-Pesa callback: CheckoutRequestID=%s ResultCode=%s ResultDesc=%s",
        cb.checkout_request_id, cb.result_code, cb.result_desc,
    )

    booking = _find_booking(cb.checkout_request_id, max(1, int(attempts)), delay)
    if booking is None:
        logger.warning("M-Pesa callback for unknown CheckoutRequestID %s: %s", cb.checkout_request_id, payload)
        return ReconcileOutcome(CallbackResult.NOT_FOUND, cb)

    return _apply(booking, cb)
