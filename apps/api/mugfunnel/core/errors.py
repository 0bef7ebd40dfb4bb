from __future__ import annotations

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy.exc import InterfaceError, OperationalError

# Driver errors that mean "the store could not be reached", as opposed to a bug.
STORAGE_OUTAGE_ERRORS: tuple[type[BaseException], ...] = (
    OperationalError,
    InterfaceError,
    RedisConnectionError,
    RedisTimeoutError,
)


class StorageUnavailableError(RuntimeError):
    """Durable counter, record or session storage could not be reached."""

    def __init__(self, component: str, detail: str = "") -> None:
        self.component = component
        self.detail = detail
        message = f"{component} storage unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
