"""Exceptions for the lock manager."""

from typing import Optional


class LockManagerError(Exception):
    """Base class for all lock manager errors."""


class ValidationError(LockManagerError):
    """Raised when a lock or access-code policy input is malformed."""


class NotFoundError(LockManagerError):
    """Raised when an operation references an unknown lock or code."""

    def __init__(self, kind: str, object_id: str):
        super().__init__(f"{kind} not found: {object_id}")
        self.kind = kind
        self.object_id = object_id


class ProviderError(LockManagerError):
    """Raised when an external provider command did not confirm.

    Physical state is unconfirmed; local state has not been changed.
    """

    def __init__(self, lock_id: str, action: str, detail: Optional[str] = None):
        message = f"{action} on lock {lock_id} was not confirmed by the provider"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.lock_id = lock_id
        self.action = action
        self.detail = detail


class ProviderTimeoutError(ProviderError):
    """Raised when the provider did not answer within the command timeout."""


class ProviderRejectedError(ProviderError):
    """Raised when the provider explicitly refused the command."""


class AuditWriteError(LockManagerError):
    """Raised when an audit entry could not be appended."""


class ConsistencyError(LockManagerError):
    """Raised when a state change was rolled back because it could not be audited.

    Distinct from ordinary failures: the caller should verify state before
    retrying rather than retrying blindly.
    """
