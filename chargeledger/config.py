import os

HTTP_HOST = os.getenv("HTTP_HOST", "0.0.0.0")
HTTP_PORT = int(os.getenv("HTTP_PORT", "4000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Session store
STORE_BACKEND = os.getenv("STORE_BACKEND", "sqlite")  # sqlite | memory
DB_PATH = os.getenv("DB_PATH", "chargeledger.db")
STORE_TIMEOUT_SEC = float(os.getenv("STORE_TIMEOUT_SEC", "5"))
CACHE_TTL_SEC = float(os.getenv("CACHE_TTL_SEC", "60"))

# Lifecycle
SESSION_HOURS = float(os.getenv("SESSION_HOURS", "6"))

# Ledger write queue
QUEUE_POLL_SEC = float(os.getenv("QUEUE_POLL_SEC", "2"))
QUEUE_BATCH_SIZE = int(os.getenv("QUEUE_BATCH_SIZE", "10"))
QUEUE_MAX_ATTEMPTS = int(os.getenv("QUEUE_MAX_ATTEMPTS", "5"))
QUEUE_RETRY_DELAY_SEC = float(os.getenv("QUEUE_RETRY_DELAY_SEC", "5"))  # doubled per attempt

# Ledger gateway; empty means the in-process ledger is used
LEDGER_URL = os.getenv("LEDGER_URL", "")
LEDGER_TIMEOUT_SEC = float(os.getenv("LEDGER_TIMEOUT_SEC", "10"))
LEDGER_RECONNECT_SEC = float(os.getenv("LEDGER_RECONNECT_SEC", "5"))
LEDGER_SOURCE = os.getenv("LEDGER_SOURCE", "SECC")

# Subscribers
SSE_KEEPALIVE_SEC = float(os.getenv("SSE_KEEPALIVE_SEC", "15"))
SUBSCRIBER_QUEUE_SIZE = int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "100"))
