"""Client side of the mirror-backed API: credential context and retry policy."""

from identity_mirror.client.api_client import (
    CredentialContext,
    MirrorApiClient,
    RetriesExhaustedError,
)
from identity_mirror.client.retry import ApiError, RetryConfig, error_status, should_retry

__all__ = [
    "ApiError",
    "CredentialContext",
    "MirrorApiClient",
    "RetriesExhaustedError",
    "RetryConfig",
    "error_status",
    "should_retry",
]
