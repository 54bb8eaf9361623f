from dotenv import load_dotenv
load_dotenv()

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-change-me")
DEBUG = os.getenv("DJANGO_DEBUG", "false").lower() in ("1", "true", "yes")
ALLOWED_HOSTS = [h.strip() for h in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if h.strip()]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "payments",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "paysync.urls"
WSGI_APPLICATION = "paysync.wsgi.application"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

DATABASES = {
    "default": {
        "ENGINE": os.getenv("DB_ENGINE", "django.db.backends.sqlite3"),
        "NAME": os.getenv("DB_NAME", str(BASE_DIR / "db.sqlite3")),
        "USER": os.getenv("DB_USER", ""),
        "PASSWORD": os.getenv("DB_PASSWORD", ""),
        "HOST": os.getenv("DB_HOST", ""),
        "PORT": os.getenv("DB_PORT", ""),
    }
}

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Sessions and idempotency locks live here; must be shared by every worker.
CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.redis.RedisCache",
        "LOCATION": REDIS_URL,
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True
STATIC_URL = "/static/"

EMAIL_BACKEND = os.getenv("EMAIL_BACKEND", "django.core.mail.backends.smtp.EmailBackend")
EMAIL_HOST = os.getenv("EMAIL_HOST", "localhost")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "25"))
EMAIL_HOST_USER = os.getenv("EMAIL_HOST_USER", "")
EMAIL_HOST_PASSWORD = os.getenv("EMAIL_HOST_PASSWORD", "")
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", EMAIL_HOST_USER or "payments@localhost")
PAYMENTS_ADMIN_EMAILS = os.getenv("PAYMENTS_ADMIN_EMAILS", "")

SSLCOMMERZ = {
    "BASE_URL": os.getenv("SSLCOMMERZ_BASE_URL", "https://sandbox.sslcommerz.com"),
    "STORE_ID": os.getenv("SSLCOMMERZ_STORE_ID", ""),
    "STORE_PASSWORD": os.getenv("SSLCOMMERZ_STORE_PASSWORD", ""),
    # {session_id} is filled in per order at init.
    "SUCCESS_URL": os.getenv("SSLCOMMERZ_SUCCESS_URL", "https://localhost/payment/success/{session_id}"),
    "FAIL_URL": os.getenv("SSLCOMMERZ_FAIL_URL", "https://localhost/payment/fail/{session_id}"),
    "CANCEL_URL": os.getenv("SSLCOMMERZ_CANCEL_URL", "https://localhost/payment/cancel/{session_id}"),
    "IPN_URL": os.getenv("SSLCOMMERZ_IPN_URL", "https://localhost/payment/ipn/{session_id}"),
    "TIMEOUT": float(os.getenv("SSLCOMMERZ_TIMEOUT", "20")),
    "REQUIRE_SIGNATURE": os.getenv("SSLCOMMERZ_REQUIRE_SIGNATURE", "true").lower() in ("1", "true", "yes"),
}

PAYMENTS = {
    "SESSION_TTL": int(os.getenv("PAYMENTS_SESSION_TTL", "900")),
    "LOCK_TTL": int(os.getenv("PAYMENTS_LOCK_TTL", "60")),
    "LOCK_BACKEND": os.getenv("PAYMENTS_LOCK_BACKEND", "redis"),
    "PROVISIONING_URL": os.getenv("PROVISIONING_URL", ""),
    "PROVISIONING_SECRET": os.getenv("PROVISIONING_SECRET", ""),
    "PROVISIONING_TIMEOUT": float(os.getenv("PROVISIONING_TIMEOUT", "15")),
    "SYNC_MAX_ATTEMPTS": int(os.getenv("PAYMENTS_SYNC_MAX_ATTEMPTS", "6")),
    "SYNC_BACKOFF_BASE": int(os.getenv("PAYMENTS_SYNC_BACKOFF_BASE", "60")),
    "SYNC_BACKOFF_MAX": int(os.getenv("PAYMENTS_SYNC_BACKOFF_MAX", "3600")),
    "CAS_RETRIES": int(os.getenv("PAYMENTS_CAS_RETRIES", "3")),
    "STALE_VALIDATED_AFTER": int(os.getenv("PAYMENTS_STALE_VALIDATED_AFTER", "300")),
    "REDIS_URL": REDIS_URL,
    "CHANNEL_PREFIX": os.getenv("PAYMENTS_CHANNEL_PREFIX", "payment:"),
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "verbose"},
    },
    "loggers": {
        "payments": {"handlers": ["console"], "level": os.getenv("PAYMENTS_LOG_LEVEL", "INFO"), "propagate": False},
    },
    "root": {"handlers": ["console"], "level": "WARNING"},
}
