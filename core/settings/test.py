from .base import *  # noqa

SECRET_KEY = "test-secret-key"
DEBUG = False

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
    }
}

CELERY_TASK_ALWAYS_EAGER = True
CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

MARKETING_EMAIL_PROVIDER = "apps.delivery.providers.LocmemProvider"
MARKETING_SEND_RATE_PER_SEC = 0
MARKETING_REQUIRE_VERIFIED_FROM = True
MARKETING_WEBHOOK_TOKEN = ""
MARKETING_UNSUBSCRIBE_SECRET = "test-unsubscribe-secret"
