from datetime import date, timedelta

import pytest

from app import create_app
from config import Config
from models import db
from models.user import User, Role
from security.password import hash_password
from services.mpesa import GatewayAck
from utils.seed import seed_roles

PASSWORD = "tanker-pass-2026"


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SEED_ROLES_ON_STARTUP = False
    CSRF_ENABLED = False

    MPESA_CONSUMER_KEY = "consumer-key"
    MPESA_CONSUMER_SECRET = "consumer-secret"
    MPESA_SHORTCODE = "174379"
    MPESA_PASSKEY = "passkey"
    MPESA_BASE_URL = "https://sandbox.example.test"
    MPESA_CALLBACK_URL = "https://api.example.test/webhooks/mpesa"
    MPESA_CALLBACK_TOKEN = None

    CALLBACK_LOOKUP_ATTEMPTS = 1
    CALLBACK_LOOKUP_DELAY_SECONDS = 0


class FakeGateway:
    """Stands in for MpesaClient; hands out ws_001, ws_002, ... as CheckoutRequestIDs."""

    def __init__(self):
        self.pushes = []
        self.auth_error = None
        self.push_error = None
        self.next_checkout_id = None

    def authenticate(self):
        if self.auth_error:
            raise self.auth_error
        return "access-token"

    def push_payment_request(self, token, phone, amount, booking_id):
        if self.push_error:
            raise self.push_error
        self.pushes.append({"token": token, "phone": phone, "amount": amount, "booking_id": booking_id})
        checkout_id = self.next_checkout_id or f"ws_{len(self.pushes):03d}"
        self.next_checkout_id = None
        return GatewayAck(
            checkout_request_id=checkout_id,
            merchant_request_id=f"mr_{len(self.pushes):03d}",
            response_code="0",
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
        )


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
        seed_roles()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def gateway(monkeypatch):
    fake = FakeGateway()
    monkeypatch.setattr("services.booking.MpesaClient.from_config", lambda config: fake)
    return fake


@pytest.fixture
def delivery_day():
    return date.today() + timedelta(days=30)


@pytest.fixture
def make_user(app):
    def _make(email, roles=("CUSTOMER",), phone_number="0712345678", full_name="Test Customer"):
        user = User(
            email=email,
            password_hash=hash_password(PASSWORD),
            full_name=full_name,
            phone_number=phone_number,
        )
        for name in roles:
            user.roles.append(Role.query.filter_by(name=name).one())
        db.session.add(user)
        db.session.commit()
        return user
    return _make


def _login(app, email):
    client = app.test_client()
    resp = client.post("/auth/login", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 200, resp.get_json()
    return client


@pytest.fixture
def customer(make_user):
    return make_user("amina@example.com")


@pytest.fixture
def other_customer(make_user):
    return make_user("brian@example.com", phone_number="0722000111", full_name="Brian O")


@pytest.fixture
def admin_user(make_user):
    return make_user("ops@example.com", roles=("ADMIN",), phone_number=None, full_name="Ops")


@pytest.fixture
def customer_client(app, customer):
    return _login(app, customer.email)


@pytest.fixture
def other_client(app, other_customer):
    return _login(app, other_customer.email)


@pytest.fixture
def admin_client(app, admin_user):
    return _login(app, admin_user.email)


def stk_callback(checkout_id, result_code=0, result_desc=None, receipt="QAZ123",
                 transaction_date=20260601101530, phone=254712345678, amount=2000):
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc or (
            "The service request is processed successfully." if result_code == 0
            else "Request cancelled by user"
        ),
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "Balance"},
                {"Name": "TransactionDate", "Value": transaction_date},
                {"Name": "PhoneNumber", "Value": phone},
            ]
        }
    return {"Body": {"stkCallback": callback}}
