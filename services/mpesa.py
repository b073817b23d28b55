"""
M-Pesa Daraja STK push client.

Two calls per payment attempt: an OAuth client-credentials exchange for a
short-lived bearer token, then the STK push request itself. Tokens are not
cached; every attempt re-authenticates.
"""
import base64
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import requests

from services.errors import AuthFailed, GatewayRejected, TransportError

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
OAUTH_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"

TRANSACTION_TYPE = "CustomerPayBillOnline"
COUNTRY_PREFIX = "254"
ACCOUNT_REFERENCE_MAX_LEN = 12

_WHITESPACE = re.compile(r"\s+")


def normalize_phone(raw: str) -> str:
    """Return the number in 2547XXXXXXXX form expected by Daraja."""
    phone = _WHITESPACE.sub("", raw or "").lstrip("+")
    if phone.startswith("0"):
        return COUNTRY_PREFIX + phone[1:]
    if not phone.startswith(COUNTRY_PREFIX):
        return COUNTRY_PREFIX + phone
    return phone


def gateway_timestamp(now=None, utc_offset_hours: int = 3) -> str:
    now = now or datetime.now(timezone.utc)
    local = now.astimezone(timezone(timedelta(hours=utc_offset_hours)))
    return local.strftime("%Y%m%d%H%M%S")


def build_password(shortcode: str, passkey: str, timestamp: str) -> str:
    raw = f"{shortcode}{passkey}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


@dataclass(frozen=True)
class GatewayAck:
    checkout_request_id: str
    merchant_request_id: str
    response_code: str
    response_description: str
    customer_message: str = ""


class MpesaClient:
    def __init__(self, consumer_key, consumer_secret, shortcode, passkey,
                 callback_url, base_url=SANDBOX_BASE_URL, timeout=30, utc_offset_hours=3):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.callback_url = callback_url
        self.base_url = (base_url or SANDBOX_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.utc_offset_hours = utc_offset_hours

    @classmethod
    def from_config(cls, config):
        return cls(
            consumer_key=config.get("MPESA_CONSUMER_KEY"),
            consumer_secret=config.get("MPESA_CONSUMER_SECRET"),
            shortcode=config.get("MPESA_SHORTCODE"),
            passkey=config.get("MPESA_PASSKEY"),
            callback_url=config.get("MPESA_CALLBACK_URL"),
            base_url=config.get("MPESA_BASE_URL", SANDBOX_BASE_URL),
            timeout=config.get("MPESA_TIMEOUT_SECONDS", 30),
            utc_offset_hours=config.get("GATEWAY_UTC_OFFSET_HOURS", 3),
        )

    def authenticate(self) -> str:
        if not self.consumer_key or not self.consumer_secret:
            raise AuthFailed("M-Pesa consumer key/secret not configured")

        try:
            resp = requests.get(
                self.base_url + OAUTH_PATH,
                auth=(self.consumer_key, self.consumer_secret),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("M-Pesa OAuth request failed: %s", exc)
            raise TransportError() from exc

        if not resp.ok:
            logger.error("M-Pesa OAuth rejected: status=%s body=%s", resp.status_code, resp.text)
            raise AuthFailed()

        try:
            token = resp.json().get("access_token")
        except ValueError:
            token = None
        if not token:
            logger.error("M-Pesa OAuth response missing access_token: %s", resp.text)
            raise AuthFailed()
        return token

    def push_payment_request(self, token: str, phone: str, amount: int, booking_id) -> GatewayAck:
        timestamp = gateway_timestamp(utc_offset_hours=self.utc_offset_hours)
        msisdn = normalize_phone(phone)
        reference = str(booking_id)[:ACCOUNT_REFERENCE_MAX_LEN]

        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": build_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": TRANSACTION_TYPE,
            "Amount": int(amount),
            "PartyA": msisdn,
            "PartyB": self.shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": self.callback_url,
            "AccountReference": reference,
            "TransactionDesc": f"Water Tanker Booking {reference}",
        }
        logger.info("STK push for booking %s amount=%s phone=%s", booking_id, amount, msisdn)

        try:
            resp = requests.post(
                self.base_url + STK_PUSH_PATH,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("STK push transport failure for booking %s: %s", booking_id, exc)
            raise TransportError() from exc

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if not resp.ok:
            description = body.get("errorMessage") or body.get("ResponseDescription")
            logger.error("STK push rejected for booking %s: status=%s body=%s",
                         booking_id, resp.status_code, resp.text)
            raise GatewayRejected(description, response_code=body.get("errorCode"))

        code = str(body.get("ResponseCode", ""))
        checkout_id = body.get("CheckoutRequestID")
        if code != "0" or not checkout_id:
            logger.error("STK push not accepted for booking %s: %s", booking_id, body)
            raise GatewayRejected(body.get("ResponseDescription"), response_code=code)

        return GatewayAck(
            checkout_request_id=checkout_id,
            merchant_request_id=body.get("MerchantRequestID", ""),
            response_code=code,
            response_description=body.get("ResponseDescription", ""),
            customer_message=body.get("CustomerMessage", ""),
        )
