import base64
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from services.errors import AuthFailed, GatewayRejected, TransportError
from services.mpesa import (
    MpesaClient,
    build_password,
    gateway_timestamp,
    normalize_phone,
)


def _client(**overrides):
    settings = dict(
        consumer_key="key",
        consumer_secret="secret",
        shortcode="174379",
        passkey="passkey",
        callback_url="https://api.example.test/webhooks/mpesa",
        base_url="https://sandbox.example.test/",
        timeout=5,
    )
    settings.update(overrides)
    return MpesaClient(**settings)


def _response(status=200, body=None, text=""):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.text = text
    if body is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = body
    return resp


class TestNormalizePhone:
    @pytest.mark.parametrize("raw,expected", [
        ("0712345678", "254712345678"),
        ("0712 345 678", "254712345678"),
        ("+254712345678", "254712345678"),
        ("254712345678", "254712345678"),
        ("712345678", "254712345678"),
        ("+0712345678", "254712345678"),
        ("+712345678", "254712345678"),
    ])
    def test_formats(self, raw, expected):
        assert normalize_phone(raw) == expected


class TestRequestSigning:
    def test_password_is_base64_of_shortcode_passkey_timestamp(self):
        password = build_password("174379", "passkey", "20260601101530")
        assert base64.b64decode(password).decode() == "174379passkey20260601101530"

    def test_timestamp_is_east_africa_time(self):
        now = datetime(2026, 6, 1, 22, 15, 30, tzinfo=timezone.utc)
        assert gateway_timestamp(now) == "20260602011530"


class TestAuthenticate:
    def test_returns_access_token(self):
        with patch("services.mpesa.requests.get", return_value=_response(body={"access_token": "abc"})) as get:
            assert _client().authenticate() == "abc"

        args, kwargs = get.call_args
        assert args[0] == "https://sandbox.example.test/oauth/v1/generate?grant_type=client_credentials"
        assert kwargs["auth"] == ("key", "secret")

    def test_rejected_credentials(self):
        with patch("services.mpesa.requests.get", return_value=_response(status=400, text="Bad Request")):
            with pytest.raises(AuthFailed):
                _client().authenticate()

    def test_missing_token_field(self):
        with patch("services.mpesa.requests.get", return_value=_response(body={"expires_in": "3599"})):
            with pytest.raises(AuthFailed):
                _client().authenticate()

    def test_unconfigured_credentials_never_call_gateway(self):
        with patch("services.mpesa.requests.get") as get:
            with pytest.raises(AuthFailed):
                _client(consumer_key=None).authenticate()
        get.assert_not_called()

    def test_network_error_is_transport_error(self):
        with patch("services.mpesa.requests.get", side_effect=requests.ConnectionError("down")):
            with pytest.raises(TransportError):
                _client().authenticate()


class TestPushPaymentRequest:
    ACCEPTED = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": "ws_CO_191220191020363925",
        "ResponseCode": "0",
        "ResponseDescription": "Success. Request accepted for processing",
        "CustomerMessage": "Success. Request accepted for processing",
    }

    def test_builds_stk_payload(self):
        with patch("services.mpesa.requests.post", return_value=_response(body=self.ACCEPTED)) as post:
            ack = _client().push_payment_request("tok", "0712345678", 2000, 42)

        assert ack.checkout_request_id == "ws_CO_191220191020363925"
        assert ack.response_code == "0"

        args, kwargs = post.call_args
        assert args[0] == "https://sandbox.example.test/mpesa/stkpush/v1/processrequest"
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        payload = kwargs["json"]
        assert payload["BusinessShortCode"] == "174379"
        assert payload["PartyB"] == "174379"
        assert payload["TransactionType"] == "CustomerPayBillOnline"
        assert payload["Amount"] == 2000
        assert payload["PartyA"] == payload["PhoneNumber"] == "254712345678"
        assert payload["AccountReference"] == "42"
        assert payload["CallBackURL"] == "https://api.example.test/webhooks/mpesa"
        assert len(payload["Timestamp"]) == 14
        decoded = base64.b64decode(payload["Password"]).decode()
        assert decoded == "174379passkey" + payload["Timestamp"]

    def test_account_reference_is_truncated(self):
        with patch("services.mpesa.requests.post", return_value=_response(body=self.ACCEPTED)) as post:
            _client().push_payment_request("tok", "0712345678", 200, "booking-0123456789")
        assert post.call_args.kwargs["json"]["AccountReference"] == "booking-0123"

    def test_non_zero_response_code_is_rejection(self):
        body = dict(self.ACCEPTED, ResponseCode="1", ResponseDescription="Invalid PhoneNumber")
        with patch("services.mpesa.requests.post", return_value=_response(body=body)):
            with pytest.raises(GatewayRejected) as exc_info:
                _client().push_payment_request("tok", "0712345678", 200, 1)
        assert exc_info.value.description == "Invalid PhoneNumber"

    def test_http_error_carries_gateway_message(self):
        body = {"requestId": "x", "errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"}
        with patch("services.mpesa.requests.post", return_value=_response(status=400, body=body)):
            with pytest.raises(GatewayRejected) as exc_info:
                _client().push_payment_request("tok", "0712345678", 0, 1)
        assert exc_info.value.message == "Bad Request - Invalid Amount"
        assert exc_info.value.response_code == "400.002.02"

    def test_timeout_is_transport_error(self):
        with patch("services.mpesa.requests.post", side_effect=requests.Timeout()):
            with pytest.raises(TransportError):
                _client().push_payment_request("tok", "0712345678", 200, 1)


def test_from_config_reads_app_settings(app):
    client = MpesaClient.from_config(app.config)
    assert client.shortcode == "174379"
    assert client.base_url == "https://sandbox.example.test"
    assert client.callback_url == "https://api.example.test/webhooks/mpesa"
