import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
# 0 = size the gate from the pool
DB_GATE_LIMIT = int(os.getenv("DB_GATE_LIMIT", "0"))

PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "mockpay")
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")
ADMIN_ROLE = os.environ.get("ADMIN_ROLE", "owner")
# empty = platform-wide admin
ADMIN_ORG_ID = os.environ.get("ADMIN_ORG_ID", "") or None

REDIS_URL = os.environ.get("REDIS_URL", "")
REAPER_LEASE_SECONDS = int(os.getenv("REAPER_LEASE_SECONDS", "240"))
STALE_ORDER_MAX_AGE_MINUTES = int(
    os.getenv("STALE_ORDER_MAX_AGE_MINUTES", "60")
)

OUTBOX_BATCH_SIZE = int(os.getenv("OUTBOX_BATCH_SIZE", "100"))
OUTBOX_INITIAL_DELAY_SECONDS = float(
    os.getenv("OUTBOX_INITIAL_DELAY_SECONDS", "60")
)
OUTBOX_BACKOFF_MULTIPLIER = float(os.getenv("OUTBOX_BACKOFF_MULTIPLIER", "2"))
OUTBOX_MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "3"))
NOTIFY_URL = os.environ.get("NOTIFY_URL", "")

DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "eur")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
