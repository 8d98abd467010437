# videomatch/common/exceptions.py
import logging

import redis
from rest_framework.views import exception_handler
from rest_framework.exceptions import PermissionDenied, ParseError
from rest_framework.response import Response

from videomatch.common.errors import MatchingError, StoreUnavailable

logger = logging.getLogger(__name__)


def _envelope(code: str, message: str):
    return {
        "success": False,
        "data": None,
        "error": {"code": code, "message": message},
    }


def custom_exception_handler(exc, context):
    if isinstance(exc, (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError)):
        exc = StoreUnavailable(f"redis unavailable: {exc}")

    if isinstance(exc, MatchingError):
        if isinstance(exc, StoreUnavailable):
            logger.error("store unavailable during %s: %s", context.get("view"), exc)
        return Response(_envelope(exc.code, exc.message), status=exc.http_status)

    response = exception_handler(exc, context)
    if response is None:
        return response

    if isinstance(exc, PermissionDenied):
        response.data = _envelope("FORBIDDEN", "Permission denied")
    elif isinstance(exc, ParseError):
        response.data = _envelope("VALIDATION_ERROR", "Malformed request body")

    return response
