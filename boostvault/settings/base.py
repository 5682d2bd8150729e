import os
from decimal import Decimal
from pathlib import Path

from celery.schedules import crontab
from dotenv import load_dotenv

load_dotenv()  # Load .env file if present

BASE_DIR = Path(__file__).resolve().parents[2]
SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-key")
DEBUG = os.getenv("DJANGO_DEBUG", "false").lower() in {"1", "true", "yes"}
raw_hosts = os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1")
ALLOWED_HOSTS = [h.strip() for h in raw_hosts.split(",") if h.strip()]
# Must be a urlsafe base64 32-byte key (Fernet.generate_key()); this default is for dev only
FERNET_KEY = os.getenv("FERNET_KEY", "YWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWE=")

SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")

INSTALLED_APPS = [
    # Django Admin Deps
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    # Our apps
    "boostvault.apps.accounts.apps.AccountsConfig",
    "boostvault.apps.settlement.apps.SettlementConfig",
    "boostvault.apps.telegram_bot.apps.TelegramBotConfig",
    "whitenoise.runserver_nostatic",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "whitenoise.middleware.WhiteNoiseMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "boostvault.urls"
TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [BASE_DIR / "templates"],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ]
        },
    }
]
WSGI_APPLICATION = "boostvault.wsgi.application"

# Postgres by default; override with dev/test settings as needed
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.postgresql",
        "HOST": os.getenv("DB_HOST", "localhost"),
        "PORT": os.getenv("DB_PORT", "5432"),
        "NAME": os.getenv("DB_NAME", "boostvault"),
        "USER": os.getenv("DB_USER", "boostvault"),
        "PASSWORD": os.getenv("DB_PASSWORD", "boostvault"),
    }
}

DATABASE_URL = os.getenv("DATABASE_URL")
if DATABASE_URL:
    from urllib.parse import urlparse

    parsed = urlparse(DATABASE_URL)
    DATABASES["default"].update(
        {
            "NAME": parsed.path.lstrip("/"),
            "USER": parsed.username,
            "PASSWORD": parsed.password,
            "HOST": parsed.hostname,
            "PORT": parsed.port or "5432",
            "OPTIONS": {"sslmode": os.getenv("DB_SSLMODE", "require")},
        }
    )

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"
STORAGES = {
    "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
    "staticfiles": {"BACKEND": "whitenoise.storage.CompressedManifestStaticFilesStorage"},
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "plain"},
    },
    "root": {"handlers": ["console"], "level": os.getenv("LOG_LEVEL", "INFO")},
}

# Telegram (notification sink + operator channel)
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
OPERATOR_CHAT_ID = os.getenv("OPERATOR_CHAT_ID", "")
OPERATOR_AUDIT_WITHDRAWALS = os.getenv("OPERATOR_AUDIT_WITHDRAWALS", "false").lower() in {"1", "true", "yes"}

# Celery configuration
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_DEFAULT_QUEUE = os.getenv("CELERY_TASK_DEFAULT_QUEUE", "settlement")
CELERY_TASK_ACKS_LATE = True
# Must outlive CONFIRMATION_TIMEOUT: a submitted transfer has to reach a terminal state
CELERY_TASK_TIME_LIMIT = int(os.getenv("CELERY_TASK_TIME_LIMIT", "600"))
CELERY_WORKER_CONCURRENCY = int(os.getenv("CELERY_WORKER_CONCURRENCY", "4"))
CELERY_BROKER_CONNECTION_RETRY_ON_STARTUP = True

CELERY_BEAT_SCHEDULE = {
    "refresh-balances": {
        "task": "boostvault.apps.settlement.tasks.refresh_balances_task",
        "schedule": 5 * 60,
    },
    "auto-withdrawals": {
        "task": "boostvault.apps.settlement.tasks.auto_withdrawals_task",
        "schedule": 60 * 60,
    },
    "auto-reinvest": {
        "task": "boostvault.apps.settlement.tasks.auto_reinvest_task",
        "schedule": 60 * 60,
    },
    "reconcile-pending": {
        "task": "boostvault.apps.settlement.tasks.reconcile_pending_task",
        "schedule": 10 * 60,
    },
    "deposit-reminders": {
        "task": "boostvault.apps.settlement.tasks.deposit_reminders_task",
        "schedule": crontab(minute=0, hour="*/6"),
    },
}

# ==============================================================================
# XRPL / Settlement Configuration
# ==============================================================================

# For testnet: https://s.altnet.rippletest.net:51234
XRPL_RPC_URL = os.getenv("XRPL_RPC_URL", "https://s.altnet.rippletest.net:51234")

# Treasury wallet seed (funds withdrawals and referral bonuses, receives sweeps)
TREASURY_SEED = os.getenv("TREASURY_SEED", "")

# All amounts are integer drops (1 XRP = 1_000_000 drops)
MIN_DEPOSIT_DROPS = int(os.getenv("MIN_DEPOSIT_DROPS", "5000000"))
MIN_WITHDRAWAL_DROPS = int(os.getenv("MIN_WITHDRAWAL_DROPS", "1000000"))
REFERRAL_RATE = Decimal(os.getenv("REFERRAL_RATE", "0.06"))
GROWTH_PERIOD_DAYS = int(os.getenv("GROWTH_PERIOD_DAYS", "10"))

SETTLEMENT_GUARD_BACKEND = os.getenv("SETTLEMENT_GUARD_BACKEND", "database")
SETTLEMENT_LOCK_TIMEOUT = int(os.getenv("SETTLEMENT_LOCK_TIMEOUT", str(5 * 60)))
SETTLEMENT_REDIS_URL = os.getenv("SETTLEMENT_REDIS_URL", CELERY_BROKER_URL)

RPC_MAX_ATTEMPTS = int(os.getenv("RPC_MAX_ATTEMPTS", "5"))
RPC_BACKOFF_BASE = float(os.getenv("RPC_BACKOFF_BASE", "1.0"))
CONFIRMATION_TIMEOUT = float(os.getenv("CONFIRMATION_TIMEOUT", "120"))
CONFIRMATION_POLL_INTERVAL = float(os.getenv("CONFIRMATION_POLL_INTERVAL", "4"))
DB_COMMIT_ATTEMPTS = int(os.getenv("DB_COMMIT_ATTEMPTS", "3"))
# Older unseen transfers are past their LastLedgerSequence and can no longer land
PENDING_TRANSFER_EXPIRY = int(os.getenv("PENDING_TRANSFER_EXPIRY", str(60 * 60)))
