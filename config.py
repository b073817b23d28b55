import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to app.py as waterslot.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "waterslot.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Session cookie name for our auth token
    AUTH_COOKIE_NAME = "waterslot_session"

    # 8 hours session lifetime
    SESSION_LIFETIME_SECONDS = 8 * 60 * 60

    # Idle timeout: 20 minutes
    IDLE_TIMEOUT_SECONDS = 20 * 60

    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").lower() == "true"

    # Password policy
    PASSWORD_MIN_LEN = int(os.getenv("PASSWORD_MIN_LEN", "8"))
    PASSWORD_MAX_LEN = 128

    # Delivery slots and pricing
    TIME_SLOTS = ["08:00", "10:00", "12:00", "14:00", "16:00", "18:00"]
    MIN_LITRES = 100
    MAX_LITRES = 50000
    PRICE_PER_LITRE = int(os.getenv("PRICE_PER_LITRE", "2"))  # KES

    # M-Pesa Daraja (STK push)
    MPESA_CONSUMER_KEY = os.getenv("MPESA_CONSUMER_KEY")
    MPESA_CONSUMER_SECRET = os.getenv("MPESA_CONSUMER_SECRET")
    MPESA_SHORTCODE = os.getenv("MPESA_SHORTCODE")
    MPESA_PASSKEY = os.getenv("MPESA_PASSKEY")
    MPESA_BASE_URL = os.getenv("MPESA_BASE_URL", "https://sandbox.safaricom.co.ke")
    # Public URL of /webhooks/mpesa, including ?token=... when MPESA_CALLBACK_TOKEN is set
    MPESA_CALLBACK_URL = os.getenv("MPESA_CALLBACK_URL")
    MPESA_CALLBACK_TOKEN = os.getenv("MPESA_CALLBACK_TOKEN")
    MPESA_TIMEOUT_SECONDS = int(os.getenv("MPESA_TIMEOUT_SECONDS", "30"))
    GATEWAY_UTC_OFFSET_HOURS = 3  # Daraja timestamps are East Africa Time

    # Callback may arrive before the initiating request commits
    CALLBACK_LOOKUP_ATTEMPTS = int(os.getenv("CALLBACK_LOOKUP_ATTEMPTS", "3"))
    CALLBACK_LOOKUP_DELAY_SECONDS = float(os.getenv("CALLBACK_LOOKUP_DELAY_SECONDS", "0.5"))

    # Basic app settings
    DEBUG = False
