import os


def _bool_env(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


# ----------------------------
# Storage
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./festgate.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379")
OTP_BACKEND = os.getenv("OTP_BACKEND", "redis").lower()  # 'redis' | 'pg'

# ----------------------------
# Event & pricing
# ----------------------------
EVENT_CODE = os.environ.get("EVENT_CODE", "ACD-2026")
EVENT_NAME = os.environ.get("EVENT_NAME", "ACD 2026")
EVENT_DAYS = int(os.environ.get("EVENT_DAYS", "2"))

TICKET_PREFIX = os.environ.get("TICKET_PREFIX", "ACD2026")
TICKET_SUFFIX_DIGITS = int(os.environ.get("TICKET_SUFFIX_DIGITS", "4"))
TICKET_ALLOCATION_ATTEMPTS = int(
    os.environ.get("TICKET_ALLOCATION_ATTEMPTS", "5")
)

BASE_PRICE = int(os.environ.get("BASE_PRICE", "19900"))  # paise
CURRENCY = os.environ.get("CURRENCY", "INR")
MAX_TICKET_QUANTITY = int(os.environ.get("MAX_TICKET_QUANTITY", "20"))
FREE_SEAT_BLOCK = int(os.environ.get("FREE_SEAT_BLOCK", "4"))

YEARS = (
    "1st Year", "2nd Year", "3rd Year", "4th Year",
    "Graduate", "Post Graduate",
)

# ----------------------------
# Friend referral / OTP
# ----------------------------
FRIEND_DISCOUNT_DEFAULT = int(
    os.environ.get("FRIEND_DISCOUNT_DEFAULT", "10000")
)
OTP_TTL_SECONDS = int(os.environ.get("OTP_TTL_SECONDS", str(10 * 60)))
OTP_MAX_ATTEMPTS = int(os.environ.get("OTP_MAX_ATTEMPTS", "3"))
OTP_MAX_REQUESTS_PER_HOUR = int(
    os.environ.get("OTP_MAX_REQUESTS_PER_HOUR", "3")
)
OTP_VERIFIED_WINDOW_SECONDS = int(
    os.environ.get("OTP_VERIFIED_WINDOW_SECONDS", str(30 * 60))
)

# ----------------------------
# Payment gateway
# ----------------------------
PAYMENT_GATEWAY = os.environ.get("PAYMENT_GATEWAY", "mock").lower()
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/api/payments/webhook"
)
RAZORPAY_KEY_ID = os.environ.get("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET = os.environ.get("RAZORPAY_KEY_SECRET", "")
RAZORPAY_WEBHOOK_SECRET = os.environ.get("RAZORPAY_WEBHOOK_SECRET", "")
RAZORPAY_BASE_URL = os.environ.get(
    "RAZORPAY_BASE_URL", "https://api.razorpay.com/v1"
)

# ----------------------------
# Admin / scanner auth
# ----------------------------
JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(
    os.environ.get("ACCESS_TOKEN_EXPIRE_MINUTES", str(12 * 60))
)
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")
SCANNER_USERNAME = os.environ.get("SCANNER_USERNAME", "scanner")
SCANNER_PASSWORD = os.environ.get("SCANNER_PASSWORD", "gatekeeper")

# ----------------------------
# Notifications
# ----------------------------
NOTIFIER = os.environ.get("NOTIFIER", "smtp").lower()  # 'smtp' | 'outbox'

# ----------------------------
# Logging
# ----------------------------
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.environ.get("LOG_FORMAT", "console").lower()  # or 'json'
APP_TIMEZONE = os.environ.get("APP_TIMEZONE", "Asia/Kolkata")

CORS_ORIGINS = [
    o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",")
    if o.strip()
]
DEBUG = _bool_env("DEBUG")
