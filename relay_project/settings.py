"""
Django settings for relay_project.

Most values can be overridden through environment variables.
"""

import os
from datetime import timedelta
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "insecure-development-key")
DEBUG = env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",")

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "relay.apps.RelayConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
]

ROOT_URLCONF = "relay_project.urls"

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
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("RELAY_DB_PATH", str(BASE_DIR / "db.sqlite3")),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

USE_TZ = True
TIME_ZONE = "UTC"

STATIC_URL = "static/"

# Credentials for storage connections live outside the database
SECRETS_FILE = Path(os.environ.get("RELAY_SECRETS_FILE", BASE_DIR / ".secrets.json"))

# Google OAuth client
GOOGLE_CLIENT_ID = os.environ.get("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.environ.get("GOOGLE_CLIENT_SECRET", "")
GOOGLE_REDIRECT_URI = os.environ.get(
    "GOOGLE_REDIRECT_URI", "http://localhost:8000/oauth/google/callback/"
)

# Provider backends loaded at process start, in registration order
RELAY_PROVIDER_BACKENDS = [
    ("webdav", "relay.providers.webdav:WebDAVProvider"),
    ("google_drive", "relay.providers.google_drive:GoogleDriveProvider"),
    ("synology", "relay.providers.synology:SynologyProvider"),
]

# Business-level concurrency caps, independent of lane worker counts
RELAY_MAX_CONCURRENT_TRANSFERS = int(os.environ.get("RELAY_MAX_CONCURRENT_TRANSFERS", 5))
RELAY_MAX_CONCURRENT_SYNCS = int(os.environ.get("RELAY_MAX_CONCURRENT_SYNCS", 3))

RELAY_QUEUE_LANES = {
    "transfer": {
        "concurrency": int(os.environ.get("RELAY_TRANSFER_WORKERS", 3)),
        "max_attempts": 3,
        "backoff_seconds": 5,
        "stall_timeout_seconds": 600,
    },
    "sync": {
        "concurrency": int(os.environ.get("RELAY_SYNC_WORKERS", 2)),
        "max_attempts": 3,
        "backoff_seconds": 10,
        "stall_timeout_seconds": 900,
    },
    "cleanup": {
        "concurrency": 1,
        "max_attempts": 2,
        "backoff_seconds": 60,
        "stall_timeout_seconds": 300,
    },
    "notification": {
        "concurrency": 5,
        "max_attempts": 5,
        "backoff_seconds": 2,
        "stall_timeout_seconds": 60,
    },
}

RELAY_QUEUE_RETENTION_HOURS = int(os.environ.get("RELAY_QUEUE_RETENTION_HOURS", 24))
RELAY_LOG_RETENTION_DAYS = int(os.environ.get("RELAY_LOG_RETENTION_DAYS", 30))
RELAY_PROGRESS_INTERVAL_SECONDS = float(os.environ.get("RELAY_PROGRESS_INTERVAL_SECONDS", 2.0))
RELAY_ASYNC_EVENTS = env_bool("RELAY_ASYNC_EVENTS", True)

# Celery
CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", None)
CELERY_TASK_ALWAYS_EAGER = env_bool("CELERY_TASK_ALWAYS_EAGER", False)
CELERY_TASK_ACKS_LATE = True
CELERY_WORKER_PREFETCH_MULTIPLIER = 1
CELERY_TASK_DEFAULT_QUEUE = "default"
CELERY_TIMEZONE = "UTC"
CELERY_BEAT_SCHEDULE = {
    "pump-queues": {
        "task": "relay.tasks.pump_queues",
        "schedule": timedelta(seconds=15),
    },
    "run-due-syncs": {
        "task": "relay.tasks.run_due_syncs",
        "schedule": timedelta(minutes=1),
    },
    "enqueue-cleanup": {
        "task": "relay.tasks.enqueue_cleanup",
        "schedule": timedelta(hours=1),
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
    "loggers": {
        "relay": {
            "handlers": ["console"],
            "level": os.environ.get("RELAY_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}
