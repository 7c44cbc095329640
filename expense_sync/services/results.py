"""
Request outcomes.

ApiClient.send() returns exactly one of Ok, Queued or Err, so callers can
match on the type instead of probing optional fields:

    match await client.send("GET", "/expenses"):
        case Ok(data=data, is_stale=stale):
            ...
        case Queued(queue_id=queue_id):
            ...
        case Err(kind=ErrorKind.UNAUTHORIZED):
            ...
"""

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from expense_sync.services.errors import ErrorKind, ServiceError

T = TypeVar("T")


@dataclass
class Ok(Generic[T]):
    """Successful response."""

    data: T
    from_cache: str | None = None  # 'memory' | 'stale' | None
    is_stale: bool = False
    status_code: int | None = None


@dataclass
class Queued:
    """A write captured by the offline queue for later replay."""

    queue_id: str
    queued: bool = True


@dataclass
class Err:
    """A failure surfaced to the caller."""

    kind: ErrorKind
    message: str
    status_code: int | None = None
    error: ServiceError | None = None

    @classmethod
    def from_error(cls, error: ServiceError) -> "Err":
        return cls(
            kind=error.kind,
            message=error.message,
            status_code=error.status_code,
            error=error,
        )


RequestResult = Union[Ok[Any], Queued, Err]
