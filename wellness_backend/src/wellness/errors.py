from __future__ import annotations

from typing import Optional


class WellnessError(Exception):
    """Base class for errors raised by the wellness core and its adapters."""


# PUBLIC_INTERFACE
class StorageError(WellnessError):
    """
    A transaction, commit or query against the storage backend failed.

    Storage errors are always propagated to the caller; the REST layer turns
    them into 5xx responses.
    """

    def __init__(self, action: str, cause: Optional[BaseException] = None) -> None:
        message = f"storage error while {action}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.action = action
        self.cause = cause


# PUBLIC_INTERFACE
class NotificationTransportError(WellnessError):
    """
    A send/delete call to the notifications service failed (transport error
    or non-2xx response). Logged by the core, never propagated upward.
    """

    def __init__(self, operation: str, detail: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"{operation} failed: {detail}")
        self.operation = operation
        self.status_code = status_code


# PUBLIC_INTERFACE
class IdentityError(WellnessError):
    """Loading deleted memberships from the core identity service failed."""


# PUBLIC_INTERFACE
class SchedulingConfigError(WellnessError):
    """The retention scheduler configuration (e.g. its timezone) is unusable."""


# PUBLIC_INTERFACE
class InvalidReferenceError(WellnessError):
    """A request referenced a document (e.g. a todo category) the user does not own."""
