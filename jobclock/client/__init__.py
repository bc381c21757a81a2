from jobclock.client.api import (
    ApiConflictError,
    ApiDraftAlreadyCommittedError,
    ApiError,
    ApiForbiddenError,
    ApiNotFoundError,
    ApiValidationError,
    JobClockClient,
)
from jobclock.client.live import LiveClock

__all__ = [
    "ApiConflictError",
    "ApiDraftAlreadyCommittedError",
    "ApiError",
    "ApiForbiddenError",
    "ApiNotFoundError",
    "ApiValidationError",
    "JobClockClient",
    "LiveClock",
]
