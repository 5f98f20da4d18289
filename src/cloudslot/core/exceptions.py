"""Custom exceptions for cloudslot."""

from typing import Any, Optional


class CloudSlotError(Exception):
    """Base exception for all orchestrator errors."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class ConfigurationError(CloudSlotError):
    """A required precondition is missing (storage account, package source)."""
    pass


class ValidationError(CloudSlotError):
    """Malformed change request."""
    pass


class NotFoundError(CloudSlotError):
    """Remote resource does not exist."""
    pass


class TransientRemoteError(CloudSlotError):
    """Network or server fault that is worth retrying."""

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, code)
        self.status_code = status_code


class RemoteOperationError(CloudSlotError):
    """Terminal remote failure, with whatever diagnostic context is known."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        *,
        service_name: Optional[str] = None,
        slot: Optional[str] = None,
        operation: Optional[str] = None,
        operation_id: Optional[str] = None,
        attempts: Optional[int] = None,
        status_code: Optional[int] = None,
        payload: Any = None,
    ):
        super().__init__(message, code)
        self.message = message
        self.service_name = service_name
        self.slot = slot
        self.operation = operation
        self.operation_id = operation_id
        self.attempts = attempts
        self.status_code = status_code
        self.payload = payload

    def attach_context(self, **context: Any) -> "RemoteOperationError":
        """Fill in context fields that are not already set."""
        for key, value in context.items():
            if value is not None and getattr(self, key, None) is None:
                setattr(self, key, value)
        return self

    def __str__(self) -> str:
        parts = [
            f"{name}={getattr(self, name)}"
            for name in ("service_name", "slot", "operation", "operation_id", "attempts", "status_code")
            if getattr(self, name) is not None
        ]
        if not parts:
            return self.message
        return f"{self.message} ({', '.join(parts)})"


class OperationCancelledError(CloudSlotError):
    """The change request was cancelled before it completed."""
    pass


class CleanupWarning(CloudSlotError):
    """Non-fatal failure of a side step (package delete, certificate upload).

    Recorded on the outcome and logged; the orchestrator never raises it.
    """

    def __init__(self, message: str, code: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message, code)
        self.cause = cause
