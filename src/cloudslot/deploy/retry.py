"""Retry wrapper for remote calls."""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional, TypeVar

import httpx
import structlog
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from cloudslot.core.exceptions import OperationCancelledError, RemoteOperationError, TransientRemoteError


logger = structlog.get_logger()

T = TypeVar("T")

TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}

THROTTLING_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestThrottled",
    "RequestLimitExceeded",
    "SlowDown",
    "TooManyRequestsException",
    "RequestTimeout",
    "RequestTimeoutException",
    "ServiceUnavailable",
    "InternalError",
}


def is_transient(exc: BaseException) -> bool:
    """Classify an exception as worth retrying."""
    if isinstance(exc, TransientRemoteError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status in TRANSIENT_STATUS_CODES or status >= 500
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, (EndpointConnectionError, ConnectionClosedError, ConnectTimeoutError, ReadTimeoutError)):
        return True
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        return error.get("Code") in THROTTLING_ERROR_CODES or status in TRANSIENT_STATUS_CODES or status >= 500
    return False


class RetryingInvoker:
    """Re-issue a remote call on transient failure.

    Each attempt calls ``op`` from scratch. Non-transient failures propagate
    unchanged after the first attempt; exhausting the budget raises
    ``RemoteOperationError`` chained to the last failure.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        max_backoff: float = 30.0,
        *,
        classify: Callable[[BaseException], bool] = is_transient,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.max_backoff = max_backoff
        self._classify = classify
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings) -> "RetryingInvoker":
        return cls(
            max_attempts=settings.retry_max_attempts,
            backoff_base=settings.retry_backoff_base,
            max_backoff=settings.retry_max_backoff,
        )

    def backoff_for(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** (attempt - 1)), self.max_backoff)

    def invoke(
        self,
        op: Callable[[], T],
        *,
        description: str = "remote call",
        cancel_event: Optional[threading.Event] = None,
    ) -> T:
        """Call ``op`` until it succeeds, fails terminally or the budget runs out.

        When ``cancel_event`` is set no further attempt is started and
        ``OperationCancelledError`` is raised instead.
        """
        attempt = 0
        last_error: Optional[BaseException] = None

        while attempt < self.max_attempts:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Remote call cancelled", operation=description, attempts=attempt)
                raise OperationCancelledError(f"{description} cancelled", code="cancelled")
            attempt += 1
            try:
                return op()
            except Exception as e:
                if not self._classify(e):
                    if isinstance(e, RemoteOperationError):
                        e.attach_context(attempts=attempt)
                    raise
                last_error = e
                logger.warning(
                    "Remote call attempt failed",
                    operation=description,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=str(e),
                )
                if attempt >= self.max_attempts:
                    break
                self._sleep(self.backoff_for(attempt))

        raise RemoteOperationError(
            f"{description} failed after {attempt} attempts: {last_error}",
            code="retries_exhausted",
            attempts=attempt,
            status_code=getattr(last_error, "status_code", None),
        ) from last_error
