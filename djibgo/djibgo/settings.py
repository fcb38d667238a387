"""
Django settings for the DjibGo settlement service.

Values come from the environment; every settlement business constant lives
in ``SETTLEMENT`` and is read only through ``settlement.policy.get_policy``.
"""

import os
from pathlib import Path

from celery.schedules import crontab


BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name, default=""):
    v = os.getenv(name, default)
    return v.lower() in ("1", "true", "yes", "on")


def env_int(name, default):
    return int(os.getenv(name, default))


def env_decimal(name, default):
    # Kept as a string; the policy engine converts to Decimal.
    return os.getenv(name, default)


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-only-insecure-key")
DEBUG = env_bool("DEBUG", "1")
ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "*").split(",")


INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "drf_yasg",
    # local apps
    "settlement",
]


MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
]


ROOT_URLCONF = "djibgo.urls"
TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]


WSGI_APPLICATION = "djibgo.wsgi.application"


DB_ENGINE = os.getenv("DB_ENGINE", "sqlite")
if DB_ENGINE == "postgres":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("POSTGRES_DB", "djibgo"),
            "USER": os.getenv("POSTGRES_USER", "djibgo"),
            "PASSWORD": os.getenv("POSTGRES_PASSWORD", "djibgo"),
            "HOST": os.getenv("POSTGRES_HOST", "localhost"),
            "PORT": os.getenv("POSTGRES_PORT", "5432"),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }


AUTH_PASSWORD_VALIDATORS = []


LANGUAGE_CODE = "en-us"
TIME_ZONE = "Africa/Djibouti"
USE_I18N = True
USE_TZ = True


STATIC_URL = "static/"
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"


REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
        "rest_framework.authentication.BasicAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_PAGINATION_CLASS": "rest_framework.pagination.PageNumberPagination",
    "PAGE_SIZE": 20,
    "EXCEPTION_HANDLER": "settlement.views.settlement_exception_handler",
    "COERCE_DECIMAL_TO_STRING": True,
}

SWAGGER_SETTINGS = {
    "USE_SESSION_AUTH": True,
    "SECURITY_DEFINITIONS": {
        "Basic": {"type": "basic"},
    },
}


#######################
# Settlement business constants
SETTLEMENT = {
    "CURRENCY": os.getenv("SETTLEMENT_CURRENCY", "DJF"),
    "DEFAULT_COMMISSION_RATE": env_decimal("DEFAULT_COMMISSION_RATE", "0.10"),
    "FULL_REFUND_HOURS": env_int("FULL_REFUND_HOURS", "24"),
    "PARTIAL_REFUND_HOURS": env_int("PARTIAL_REFUND_HOURS", "12"),
    "PARTIAL_REFUND_RATE": env_decimal("PARTIAL_REFUND_RATE", "0.50"),
    "MINIMUM_WITHDRAWAL": env_decimal("MINIMUM_WITHDRAWAL", "1000"),
    "EARNINGS_RELEASE_DAYS": env_int("EARNINGS_RELEASE_DAYS", "7"),
    "TRANSACTION_PREFIX": os.getenv("TRANSACTION_PREFIX", "DJIBGO"),
    "PROVIDER_TIMEOUT": env_int("PROVIDER_TIMEOUT", "30"),
    "PROVIDER_MAX_RETRIES": env_int("PROVIDER_MAX_RETRIES", "3"),
    "PROVIDER_BACKOFF_FACTOR": float(os.getenv("PROVIDER_BACKOFF_FACTOR", "0.5")),
    "PENDING_PAYMENT_TTL_MINUTES": env_int("PENDING_PAYMENT_TTL_MINUTES", "15"),
}

# Payment rails
WAAFIPAY_API_URL = os.getenv("WAAFIPAY_API_URL", "https://api.waafipay.net")
WAAFIPAY_MERCHANT_ID = os.getenv("WAAFIPAY_MERCHANT_ID", "")
WAAFIPAY_API_USER_ID = os.getenv("WAAFIPAY_API_USER_ID", "")
WAAFIPAY_API_KEY = os.getenv("WAAFIPAY_API_KEY", "")
WAAFIPAY_TEST_MODE = env_bool("WAAFIPAY_TEST_MODE", "1")
WAAFIPAY_TEST_CONFIRM_DELAY = env_int("WAAFIPAY_TEST_CONFIRM_DELAY", "60")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_CONNECT_RETURN_URL = os.getenv("STRIPE_CONNECT_RETURN_URL", "https://djibgo.dj/pro/wallet?stripe=done")
STRIPE_CONNECT_REFRESH_URL = os.getenv("STRIPE_CONNECT_REFRESH_URL", "https://djibgo.dj/pro/wallet?stripe=refresh")

# Empty => notifications are only logged.
NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL", "")
#######################


# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = "UTC"
CELERY_TASK_ACKS_LATE = True
CELERY_TASK_ALWAYS_EAGER = env_bool("CELERY_TASK_ALWAYS_EAGER")
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BEAT_SCHEDULE = {
    "sweep-due-confirmations": {
        "task": "settlement.tasks.sweep_due_confirmations",
        "schedule": 30.0,
    },
    "release-pending-earnings": {
        "task": "settlement.tasks.release_pending_earnings",
        "schedule": crontab(minute=0),
    },
    "reconcile-wallets": {
        "task": "settlement.tasks.reconcile_wallets",
        "schedule": crontab(hour=3, minute=0),
    },
    "deliver-pending-notifications": {
        "task": "settlement.tasks.deliver_pending_notifications",
        "schedule": crontab(minute="*/10"),
    },
}


LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{asctime} {levelname} {name} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": os.getenv("LOG_LEVEL", "WARNING"),
    },
    "loggers": {
        "settlement": {
            "handlers": ["console"],
            "level": os.getenv("SETTLEMENT_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}
