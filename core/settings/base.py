"""
Base Django settings for the marketing delivery backend.

Environment specific modules (local, prod, test) import everything from here
and override databases, caches and secrets.
"""

from pathlib import Path
from decouple import config, Csv

BASE_DIR = Path(__file__).resolve().parent.parent.parent

SECRET_KEY = config("SECRET_KEY", default="dev-only-not-secure")
DEBUG = config("DEBUG", cast=bool, default=False)
ALLOWED_HOSTS = config("DJANGO_ALLOWED_HOSTS", cast=Csv(), default="localhost,127.0.0.1")

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "apps.contacts",
    "apps.segments",
    "apps.suppressions",
    "apps.delivery",
    "apps.campaigns",
    "apps.automations",
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

ROOT_URLCONF = "core.urls"

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

ASGI_APPLICATION = "core.asgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": BASE_DIR / "db.sqlite3",
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-gb"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
}

# Celery
CELERY_BROKER_URL = config("CELERY_BROKER_URL", default="redis://localhost:6379/0")
CELERY_RESULT_BACKEND = config("CELERY_RESULT_BACKEND", default="redis://localhost:6379/1")
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = "UTC"
CELERY_BEAT_SCHEDULE = {}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": "INFO",
        },
        "apps": {
            "handlers": ["console"],
            "level": config("MARKETING_LOG_LEVEL", default="INFO"),
            "propagate": False,
        },
    },
}

# Marketing delivery
PUBLIC_BASE_URL = config("PUBLIC_BASE_URL", default="http://localhost:8000")

MARKETING_WORKER_ENABLED = config("MARKETING_WORKER_ENABLED", cast=bool, default=True)
MARKETING_WORKER_INTERVAL_SECONDS = config("MARKETING_WORKER_INTERVAL_SECONDS", cast=int, default=30)

MARKETING_SEND_RATE_PER_SEC = config("MARKETING_SEND_RATE_PER_SEC", cast=int, default=50)
MARKETING_SEND_BATCH_SIZE = config("MARKETING_SEND_BATCH_SIZE", cast=int, default=50)
MARKETING_DAILY_LIMIT = config("MARKETING_DAILY_LIMIT", cast=int, default=50000)
MARKETING_REQUIRE_VERIFIED_FROM = config("MARKETING_REQUIRE_VERIFIED_FROM", cast=bool, default=True)
MARKETING_CAMPAIGN_LOCK_MINUTES = config("MARKETING_CAMPAIGN_LOCK_MINUTES", cast=int, default=5)
MARKETING_AUTOMATION_LOCK_MINUTES = config("MARKETING_AUTOMATION_LOCK_MINUTES", cast=int, default=5)
MARKETING_SEND_MAX_ATTEMPTS = config("MARKETING_SEND_MAX_ATTEMPTS", cast=int, default=5)
MARKETING_SEND_RETRY_BASE_SECONDS = config("MARKETING_SEND_RETRY_BASE_SECONDS", cast=int, default=30)
MARKETING_SEND_RETRY_MAX_MINUTES = config("MARKETING_SEND_RETRY_MAX_MINUTES", cast=int, default=60)
MARKETING_ESTIMATE_CACHE_SECONDS = config("MARKETING_ESTIMATE_CACHE_SECONDS", cast=int, default=30)

MARKETING_INTELLIGENT_CAP_30D = config("MARKETING_INTELLIGENT_CAP_30D", cast=int, default=3)
MARKETING_SHOW_COOLDOWN_DAYS = config("MARKETING_SHOW_COOLDOWN_DAYS", cast=int, default=30)

MARKETING_WEBHOOK_TOKEN = config("MARKETING_WEBHOOK_TOKEN", default="")
MARKETING_WEBHOOK_MAX_AGE_HOURS = config("MARKETING_WEBHOOK_MAX_AGE_HOURS", cast=int, default=72)
MARKETING_WEBHOOK_ASYNC = config("MARKETING_WEBHOOK_ASYNC", cast=bool, default=False)

MARKETING_UNSUBSCRIBE_SECRET = config("MARKETING_UNSUBSCRIBE_SECRET", default="dev-unsubscribe-secret")
MARKETING_TOKEN_EXP_DAYS = config("MARKETING_TOKEN_EXP_DAYS", cast=int, default=90)

MARKETING_EMAIL_PROVIDER = config(
    "MARKETING_EMAIL_PROVIDER",
    default="apps.delivery.providers.SendGridProvider",
)
SENDGRID_API_KEY = config("SENDGRID_API_KEY", default="")
SENDGRID_TIMEOUT_SECONDS = config("SENDGRID_TIMEOUT_SECONDS", cast=float, default=10.0)

MARKETING_CIRCUIT_FAILURE_THRESHOLD = config("MARKETING_CIRCUIT_FAILURE_THRESHOLD", cast=int, default=5)
MARKETING_CIRCUIT_RECOVERY_SECONDS = config("MARKETING_CIRCUIT_RECOVERY_SECONDS", cast=int, default=60)
