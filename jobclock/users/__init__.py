from jobclock.users.service import AdminRequiredError, UserNotFoundError, UserService
from jobclock.users.types import UserSnapshot

__all__ = ["AdminRequiredError", "UserNotFoundError", "UserService", "UserSnapshot"]
