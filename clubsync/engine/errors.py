"""
Exception types raised by the sync engine.
"""
from typing import Any, Optional

from clubsync.schemas.message import ApplyResult


class SyncError(Exception):
    """Base class for engine errors."""


class MutationRejected(SyncError, ValueError):
    """A mutation function refused its input (oversized attachment, empty edit, ...)."""


class OperationRejected(SyncError):
    """A local action was refused at the store boundary."""

    def __init__(self, result: ApplyResult):
        self.result = result
        super().__init__(result.detail or result.status.value)


class RateLimited(SyncError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Rate limit exceeded for {key}")


class NetworkUnavailable(SyncError):
    """The network request never produced a response."""


class ApiError(SyncError):
    """The server answered with a failure (non-2xx or non-JSON body)."""

    def __init__(self, status_code: int, detail: Any = None):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"API request failed with {status_code}: {detail}")


class ConfirmationFailed(SyncError):
    """A confirmable operation was rejected by the server and rolled back locally."""

    def __init__(self, op_id: str, cause: Optional[ApiError] = None):
        self.op_id = op_id
        self.cause = cause
        super().__init__(f"Operation {op_id} was not confirmed: {cause}")
