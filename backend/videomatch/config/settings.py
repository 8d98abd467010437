# config/settings.py
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent.parent  # backend/
load_dotenv(BASE_DIR / ".env")


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


REDIS_HOST = os.environ.get("REDIS_HOST", "127.0.0.1")
REDIS_PORT = _env_int("REDIS_PORT", 6379)
REDIS_DB = _env_int("REDIS_DB", 0)
REDIS_SOCKET_TIMEOUT = _env_float("REDIS_SOCKET_TIMEOUT", 2.0)


SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "videomatch-insecure-dev-key")
DEBUG = os.environ.get("DJANGO_DEBUG", "0") == "1"
ALLOWED_HOSTS = [
    h.strip()
    for h in os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",")
    if h.strip()
]
CORS_ALLOW_ALL_ORIGINS = True

# all state lives in redis
DATABASES = {}

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    # third party
    "rest_framework",
    "channels",
    "corsheaders",
    # local apps
    "videomatch.matching",
]

CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels_redis.core.RedisChannelLayer",
        "CONFIG": {
            "hosts": [(REDIS_HOST, REDIS_PORT)],
        },
    }
}

REST_FRAMEWORK = {
    # users are anonymous; the username in the body is the identity
    "DEFAULT_AUTHENTICATION_CLASSES": (),
    "DEFAULT_PERMISSION_CLASSES": ("rest_framework.permissions.AllowAny",),
    "UNAUTHENTICATED_USER": None,
    "EXCEPTION_HANDLER": "videomatch.common.exceptions.custom_exception_handler",
}

MIDDLEWARE = [
    "corsheaders.middleware.CorsMiddleware",
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "videomatch.config.urls"

ASGI_APPLICATION = "videomatch.config.asgi.application"  # http + channels worker
APPEND_SLASH = False

# ---- matching ----

MATCHING = {
    "KEY_PREFIX": os.environ.get("MATCHING_KEY_PREFIX", "matching"),
    "TICKET_MAX_AGE_SEC": _env_int("MATCHING_TICKET_MAX_AGE_SEC", 5 * 60),
    "MATCH_MAX_AGE_SEC": _env_int("MATCHING_MATCH_MAX_AGE_SEC", 10 * 60),
    "COOLDOWN_NORMAL_SEC": _env_int("MATCHING_COOLDOWN_NORMAL_SEC", 30),
    "COOLDOWN_SKIP_SEC": _env_int("MATCHING_COOLDOWN_SKIP_SEC", 2 * 60),
    "LOCK_TTL_SEC": _env_int("MATCHING_LOCK_TTL_SEC", 10),
    "STALE_LOCK_AGE_SEC": _env_int("MATCHING_STALE_LOCK_AGE_SEC", 15),
    "LEFT_BEHIND_TTL_SEC": _env_int("MATCHING_LEFT_BEHIND_TTL_SEC", 5 * 60),
    "DISCONNECT_GRACE_SEC": _env_float("MATCHING_DISCONNECT_GRACE_SEC", 3),
    "RECONCILE_DEBOUNCE_SEC": _env_float("MATCHING_RECONCILE_DEBOUNCE_SEC", 3),
    "RECONCILE_INTERVAL_SEC": _env_int("MATCHING_RECONCILE_INTERVAL_SEC", 30),
    "MATCH_SETTLE_SEC": _env_int("MATCHING_MATCH_SETTLE_SEC", 20),
    "MAX_PARTICIPANTS": _env_int("MATCHING_MAX_PARTICIPANTS", 2),
    "ROOM_EMPTY_TIMEOUT_SEC": _env_int("MATCHING_ROOM_EMPTY_TIMEOUT_SEC", 5 * 60),
    "RESCAN_ATTEMPTS": _env_int("MATCHING_RESCAN_ATTEMPTS", 20),
    "RESCAN_BACKOFF_SEC": _env_float("MATCHING_RESCAN_BACKOFF_SEC", 0.005),
    "QUEUE_WARN_SIZE": _env_int("MATCHING_QUEUE_WARN_SIZE", 50),
}

# operator routes are closed while this is empty
MATCHING_OPERATOR_TOKEN = os.environ.get("MATCHING_OPERATOR_TOKEN", "")

LIVEKIT = {
    "HOST": os.environ.get("LIVEKIT_HOST", "ws://127.0.0.1:7880"),
    "API_KEY": os.environ.get("LIVEKIT_API_KEY", ""),
    "API_SECRET": os.environ.get("LIVEKIT_API_SECRET", ""),
}

# public demo server used when a client asks for useDemo
LIVEKIT_DEMO = {
    "HOST": os.environ.get("LIVEKIT_DEMO_HOST", "wss://demo.livekit.cloud"),
    "API_KEY": os.environ.get("LIVEKIT_DEMO_API_KEY", "devkey"),
    "API_SECRET": os.environ.get("LIVEKIT_DEMO_API_SECRET", "secret"),
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {"format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "default"},
    },
    "root": {"handlers": ["console"], "level": "WARNING"},
    "loggers": {
        "videomatch": {
            "handlers": ["console"],
            "level": os.environ.get("MATCHING_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}
