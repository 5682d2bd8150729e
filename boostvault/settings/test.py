from .base import *

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

STORAGES = {
    "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
    "staticfiles": {"BACKEND": "django.contrib.staticfiles.storage.StaticFilesStorage"},
}

FERNET_KEY = "YWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWE="
TELEGRAM_BOT_TOKEN = ""
OPERATOR_CHAT_ID = "1000"

# Tasks are published to an in-process broker and never executed by the tests
CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"
CELERY_TASK_ALWAYS_EAGER = False

# Genesis account seed; only ever used against the fake ledger in tests
TREASURY_SEED = "snoPBrXtMeMyMHUVTgbuqAfg1SUTb"

MIN_DEPOSIT_DROPS = 5_000_000
MIN_WITHDRAWAL_DROPS = 100_000
REFERRAL_RATE = Decimal("0.06")
GROWTH_PERIOD_DAYS = 10
SETTLEMENT_GUARD_BACKEND = "database"
SETTLEMENT_LOCK_TIMEOUT = 300
RPC_MAX_ATTEMPTS = 3
RPC_BACKOFF_BASE = 0.0
CONFIRMATION_TIMEOUT = 1
CONFIRMATION_POLL_INTERVAL = 0
DB_COMMIT_ATTEMPTS = 2
PENDING_TRANSFER_EXPIRY = 3600
