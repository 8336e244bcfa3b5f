import os

db_url = os.environ.get("DB_URL", "sqlite://:memory:")
notifications_ms_url = os.environ.get("NOTIFICATIONS_MS_URL", "http://localhost:8005")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

ENVIRONMENT = os.environ.get("ENVIRONMENT", "development")

# Payment provider
razorpay_api_url = os.environ.get("RAZORPAY_API_URL", "https://api.razorpay.com/v1")
RAZORPAY_KEY_ID = os.environ.get("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET = os.environ.get("RAZORPAY_KEY_SECRET", "")
DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "INR")

# Flat ₹1 pricing while the storefront is in its testing period
TESTING_MODE = os.environ.get("TESTING_MODE", "false").lower() == "true"

# Direct bookings whose payment id carries this prefix skip signature checks.
# Never honoured when ENVIRONMENT is "production".
TEST_PAYMENT_PREFIX = os.environ.get("TEST_PAYMENT_PREFIX", "test_")
ALLOW_TEST_PAYMENTS = (
    os.environ.get("ALLOW_TEST_PAYMENTS", "false").lower() == "true"
    and ENVIRONMENT != "production"
)

# "order_first": nothing is written until payment is verified.
# "pending_first": a pending booking row holds the slot while the user pays.
ORDER_FLOW = os.environ.get("ORDER_FLOW", "order_first")

PENDING_HOLD_MINUTES = int(os.environ.get("PENDING_HOLD_MINUTES", "15"))
SWEEP_INTERVAL_SECONDS = float(os.environ.get("SWEEP_INTERVAL_SECONDS", "60"))
SLOTS_CACHE_TTL_SECONDS = int(os.environ.get("SLOTS_CACHE_TTL_SECONDS", "60"))
