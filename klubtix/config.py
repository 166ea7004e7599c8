import os
from decimal import Decimal


# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./klubtix.db")

PAYMENT_GATEWAY = os.getenv("PAYMENT_GATEWAY", "mock").lower()  # mock | stripe
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))

STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
# intent -> client_secret, session -> hosted checkout redirect
STRIPE_CHECKOUT_MODE = os.getenv("STRIPE_CHECKOUT_MODE", "intent").lower()
STRIPE_SUCCESS_URL = os.getenv(
    "STRIPE_SUCCESS_URL",
    "http://localhost:3000/checkout/success?session_id={CHECKOUT_SESSION_ID}"
)
STRIPE_CANCEL_URL = os.getenv(
    "STRIPE_CANCEL_URL", "http://localhost:3000/checkout/cancelled"
)

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)

# buyer-facing fee (5.9% + 30) and the processor's own cut (2.9% + 30)
PLATFORM_FEE_PERCENT = Decimal(os.getenv("PLATFORM_FEE_PERCENT", "0.059"))
PLATFORM_FEE_FIXED_CENTS = int(os.getenv("PLATFORM_FEE_FIXED_CENTS", "30"))
PROCESSOR_FEE_PERCENT = Decimal(os.getenv("PROCESSOR_FEE_PERCENT", "0.029"))
PROCESSOR_FEE_FIXED_CENTS = int(os.getenv("PROCESSOR_FEE_FIXED_CENTS", "30"))

MIN_CHARGE_CENTS = int(os.getenv("MIN_CHARGE_CENTS", "50"))
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "usd").lower()

TICKET_CODE_MAX_ATTEMPTS = max(5, int(os.getenv("TICKET_CODE_MAX_ATTEMPTS", "8")))

EVENTLOG_BACKEND = os.getenv("EVENTLOG_BACKEND", "sql").lower()  # sql | redis
EVENTLOG_TTL_SECONDS = int(os.getenv("EVENTLOG_TTL_SECONDS", str(7 * 24 * 3600)))
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "64"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = os.getenv("LOG_JSON", "1") == "1"
