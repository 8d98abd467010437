# videomatch/common/errors.py


class MatchingError(Exception):
    """Base class for every error raised by the matching backend."""

    code = "MATCHING_ERROR"
    http_status = 500

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details


class ValidationError(MatchingError):
    """A required field is missing or malformed. Never retried."""

    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(MatchingError):
    """The ticket or match was already removed.

    The engine treats this as an already-satisfied request; it only reaches a
    client when a lookup endpoint has nothing to show.
    """

    code = "NOT_FOUND"
    http_status = 404


class StoreUnavailable(MatchingError):
    """The shared store could not be reached. The caller retries with backoff."""

    code = "STORE_UNAVAILABLE"
    http_status = 503


class LockContention(MatchingError):
    """Another instance holds the pair lock. Expected; scanning continues."""

    code = "LOCK_CONTENTION"
    http_status = 409


class DriftAnomaly(MatchingError):
    """Our bookkeeping disagrees with the provider's room occupancy."""

    code = "DRIFT_ANOMALY"

    def __init__(self, room_name: str, message: str, **details):
        super().__init__(message, room_name=room_name, **details)
        self.room_name = room_name

    def __str__(self):
        return f"room {self.room_name}: {self.message}"
