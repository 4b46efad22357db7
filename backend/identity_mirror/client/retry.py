"""
Client Retry Coordinator.

Classifies failures of outbound calls to the mirror-backed API and decides
whether a retry is worthwhile. Only transient conditions are retried:

- status >= 500: server error, e.g. a provisioning race not yet settled
- status 0: connectivity failure (connection refused, DNS, timeout)

Any 4xx is terminal: a bad credential, an inactive identity or a denied
permission will not change by asking again.
"""

from dataclasses import dataclass
from typing import Any, Optional

import httpx

DEFAULT_MAX_ATTEMPTS = 3

# Status reported for failures that never produced an HTTP response
CONNECTIVITY_FAILURE_STATUS = 0


class ApiError(Exception):
    """Non-2xx response (or no response at all) from the API."""

    def __init__(self, message: str, status: int, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.error_code = error_code

    @property
    def is_transient(self) -> bool:
        return is_transient_status(self.status)


def is_transient_status(status: int) -> bool:
    return status == CONNECTIVITY_FAILURE_STATUS or status >= 500


def error_status(error: Any) -> Optional[int]:
    """
    Extract the HTTP status of a failure.

    Returns:
        The status code, 0 for transport failures, or None when the error
        carries no status (programming errors and the like)
    """
    if isinstance(error, ApiError):
        return error.status
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    if isinstance(error, httpx.TransportError):
        return CONNECTIVITY_FAILURE_STATUS
    status = getattr(error, "status", None)
    return status if isinstance(status, int) else None


def should_retry(
    attempt_count: int,
    error: Any,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> bool:
    """
    Decide whether a failed call should be retried.

    Args:
        attempt_count: Retries already made for this call (0 on the first failure)
        error: The failure
        max_attempts: Retry ceiling

    Returns:
        True only for transient failures while under the ceiling
    """
    if attempt_count >= max_attempts:
        return False
    status = error_status(error)
    if status is None:
        return False
    return is_transient_status(status)


@dataclass(frozen=True)
class RetryConfig:
    """Retry ceiling and exponential backoff parameters."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0

    def delay_for(self, attempt_count: int) -> float:
        delay = self.base_delay_seconds * (2 ** attempt_count)
        return min(delay, self.max_delay_seconds)
