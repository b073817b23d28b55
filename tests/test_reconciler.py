from datetime import datetime

import pytest

from conftest import stk_callback
from models import db
from models.booking import Booking, BookingStatus
from services import reconciler
from services.booking import initiate_payment, override_failed, reserve
from services.errors import MalformedCallback
from services.reconciler import (
    CallbackResult,
    parse_callback,
    parse_transaction_date,
    reconcile,
)


def _reload(booking_id):
    db.session.expire_all()
    return db.session.get(Booking, booking_id)


@pytest.fixture
def initiated(app, customer, delivery_day, gateway):
    booking = reserve(customer.id, delivery_day, "10:00", "Plot 12", 1000)
    initiate_payment(booking, "0712345678")
    return booking


class TestParsing:
    def test_transaction_date_is_converted_from_eat_to_utc(self):
        assert parse_transaction_date(20260601101530) == datetime(2026, 6, 1, 7, 15, 30)
        assert parse_transaction_date("20260601011530") == datetime(2026, 5, 31, 22, 15, 30)

    @pytest.mark.parametrize("value", [None, "", "2026-06-01", "not-a-date"])
    def test_bad_transaction_dates(self, value):
        assert parse_transaction_date(value) is None

    def test_metadata_items_are_scanned_by_name(self):
        payload = stk_callback("ws_001")
        items = payload["Body"]["stkCallback"]["CallbackMetadata"]["Item"]
        items.reverse()

        cb = parse_callback(payload)

        assert cb.succeeded
        assert cb.receipt_number == "QAZ123"
        assert cb.phone_number == "254712345678"
        assert cb.transaction_date == datetime(2026, 6, 1, 7, 15, 30)

    def test_failure_callback_has_no_metadata(self):
        cb = parse_callback(stk_callback("ws_001", result_code=1032))
        assert not cb.succeeded
        assert cb.result_desc == "Request cancelled by user"
        assert cb.receipt_number is None

    @pytest.mark.parametrize("payload", [
        None,
        [],
        {"Body": {}},
        {"Body": {"stkCallback": {"ResultCode": 0}}},
        {"Body": {"stkCallback": {"CheckoutRequestID": "ws_001", "ResultCode": "zero"}}},
        {"Body": {"stkCallback": {"CheckoutRequestID": "ws_001", "ResultCode": 0.5}}},
        {"Body": {"stkCallback": {"CheckoutRequestID": "ws_001", "ResultCode": True}}},
        {"Body": {"stkCallback": {"CheckoutRequestID": "ws_001", "ResultCode": 0, "CallbackMetadata": ["x"]}}},
        {"Body": {"stkCallback": {"CheckoutRequestID": "ws_001", "ResultCode": 0,
                                  "CallbackMetadata": {"Item": "MpesaReceiptNumber"}}}},
    ])
    def test_malformed_payloads(self, payload):
        with pytest.raises(MalformedCallback):
            parse_callback(payload)

    def test_result_code_may_arrive_as_digit_string(self):
        payload = stk_callback("ws_001", result_code=1032)
        payload["Body"]["stkCallback"]["ResultCode"] = "1032"
        cb = parse_callback(payload)
        assert cb.result_code == 1032
        assert not cb.succeeded


class TestReconcile:
    def test_success_confirms_booking(self, initiated):
        outcome = reconcile(stk_callback("ws_001"))

        assert outcome.result == CallbackResult.APPLIED
        stored = _reload(initiated.id)
        assert stored.status == BookingStatus.CONFIRMED
        assert stored.mpesa_receipt_number == "QAZ123"
        assert stored.payment_phone == "254712345678"
        assert stored.payment_date == datetime(2026, 6, 1, 7, 15, 30)

    def test_failure_records_reason(self, initiated):
        outcome = reconcile(stk_callback("ws_001", result_code=1032))

        assert outcome.result == CallbackResult.APPLIED
        stored = _reload(initiated.id)
        assert stored.status == BookingStatus.PAYMENT_FAILED
        assert stored.payment_error == "Request cancelled by user"
        assert stored.mpesa_receipt_number is None

    def test_duplicate_success_is_a_no_op(self, initiated):
        reconcile(stk_callback("ws_001"))
        first = _reload(initiated.id).to_dict()

        outcome = reconcile(stk_callback("ws_001"))

        assert outcome.result == CallbackResult.DUPLICATE
        assert _reload(initiated.id).to_dict() == first

    def test_duplicate_failure_is_a_no_op(self, initiated):
        reconcile(stk_callback("ws_001", result_code=1))
        assert reconcile(stk_callback("ws_001", result_code=1)).result == CallbackResult.DUPLICATE

    def test_failure_after_confirmation_is_flagged_not_applied(self, initiated):
        reconcile(stk_callback("ws_001"))

        outcome = reconcile(stk_callback("ws_001", result_code=1037, result_desc="DS timeout"))

        assert outcome.result == CallbackResult.CONFLICT
        stored = _reload(initiated.id)
        assert stored.status == BookingStatus.CONFIRMED
        assert stored.payment_error is None

    def test_different_receipt_is_flagged(self, initiated):
        reconcile(stk_callback("ws_001", receipt="QAZ123"))

        outcome = reconcile(stk_callback("ws_001", receipt="ZZZ999"))

        assert outcome.result == CallbackResult.CONFLICT
        assert _reload(initiated.id).mpesa_receipt_number == "QAZ123"

    def test_success_after_admin_failure_is_flagged(self, initiated):
        override_failed(initiated, "Customer called to cancel")

        outcome = reconcile(stk_callback("ws_001"))

        assert outcome.result == CallbackResult.CONFLICT
        assert outcome.status == BookingStatus.PAYMENT_FAILED
        stored = _reload(initiated.id)
        assert stored.status == BookingStatus.PAYMENT_FAILED
        assert stored.mpesa_receipt_number is None

    def test_delivered_booking_treats_repeat_success_as_duplicate(self, initiated):
        reconcile(stk_callback("ws_001"))
        Booking.compare_and_set(initiated.id, BookingStatus.CONFIRMED, status=BookingStatus.DELIVERED)
        db.session.commit()

        assert reconcile(stk_callback("ws_001")).result == CallbackResult.DUPLICATE

    def test_unknown_correlation_changes_nothing(self, initiated):
        before = _reload(initiated.id).to_dict()

        outcome = reconcile(stk_callback("ws_999"))

        assert outcome.result == CallbackResult.NOT_FOUND
        assert outcome.booking_id is None
        assert Booking.query.count() == 1
        assert _reload(initiated.id).to_dict() == before

    def test_lookup_waits_for_late_commit(self, app, customer, delivery_day, monkeypatch):
        booking = reserve(customer.id, delivery_day, "10:00", "Plot 12", 1000)
        booking_id = booking.id
        sleeps = []

        def initiating_request_commits(seconds):
            sleeps.append(seconds)
            Booking.compare_and_set(booking_id, BookingStatus.PENDING,
                                    status=BookingStatus.PAYMENT_INITIATED, checkout_request_id="ws_late")
            db.session.commit()

        monkeypatch.setattr(reconciler.time, "sleep", initiating_request_commits)

        outcome = reconcile(stk_callback("ws_late"), attempts=3, delay=0.25)

        assert outcome.result == CallbackResult.APPLIED
        assert sleeps == [0.25]
        assert _reload(booking_id).status == BookingStatus.CONFIRMED

    def test_lost_conditional_update_rechecks_state(self, initiated, monkeypatch):
        real_cas = Booking.compare_and_set
        calls = []

        def racing_cas(booking_id, expected, **values):
            if not calls:
                # a concurrent delivery of the same callback wins first
                calls.append("raced")
                real_cas(booking_id, expected, status=BookingStatus.CONFIRMED,
                         mpesa_receipt_number="QAZ123")
                db.session.commit()
                return False
            return real_cas(booking_id, expected, **values)

        monkeypatch.setattr(Booking, "compare_and_set", staticmethod(racing_cas))

        outcome = reconcile(stk_callback("ws_001"))

        assert outcome.result == CallbackResult.DUPLICATE
        assert _reload(initiated.id).status == BookingStatus.CONFIRMED
