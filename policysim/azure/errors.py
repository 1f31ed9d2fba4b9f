"""Exceptions raised by the management API layer."""

from typing import Optional


class ArmError(Exception):
    """Base class for management API failures."""
    pass


class ArmApiError(ArmError):
    """Non-transient error response from the management API."""

    def __init__(self, status_code: int, url: str, code: Optional[str] = None, message: Optional[str] = None):
        self.status_code = status_code
        self.url = url
        self.code = code
        self.message = message
        detail = f"{code}: {message}" if code or message else "no error details"
        super().__init__(f"HTTP {status_code} for {url} ({detail})")


class ArmNotFoundError(ArmApiError):
    """The requested object does not exist or is not visible to the caller."""
    pass


class TransientArmError(ArmError):
    """Throttling, server error or transport failure worth retrying."""

    def __init__(self, message: str, status_code: Optional[int] = None, retry_after: Optional[float] = None):
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message)


class RetryExhaustedError(ArmError):
    """A transient failure persisted through every retry attempt."""

    def __init__(self, description: str, attempts: int, last_error: Optional[Exception]):
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{description} failed after {attempts} attempts: {last_error}")


class HierarchyError(ArmError):
    """The starting management group could not be resolved."""
    pass


class AssignmentResolutionError(ArmError):
    """No hierarchy level yielded an assignment listing."""
    pass


class ArmAuthenticationError(ArmError):
    """No bearer token could be obtained for the management API."""
    pass
