# videomatch/common/redis_client.py
import functools
from contextlib import contextmanager

import redis
from django.conf import settings

from videomatch.common.errors import StoreUnavailable


_redis = None


def get_redis():
    global _redis
    if _redis is None:
        _redis = redis.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            db=settings.REDIS_DB,
            decode_responses=True,  # str instead of bytes
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        )
    return _redis


@contextmanager
def store_errors():
    """Re-raise connectivity failures of the store as StoreUnavailable."""
    try:
        yield
    except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
        raise StoreUnavailable(f"redis unavailable: {e}") from e


def translate_store_errors(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        with store_errors():
            return func(*args, **kwargs)

    return wrapper
