"""
HTTP client for the mirror-backed API, with the client retry policy applied.

The credential lives in an explicit CredentialContext handed to the client.
There is no module-level token: each client (or test) owns its context, and
CredentialContext.bearer() is the single place a token is refreshed.

Usage:
    credentials = CredentialContext(refresh=lambda: clerk_session.get_token())
    with MirrorApiClient("https://api.example.com", credentials) as client:
        me = client.get_me()
"""

import logging
import time
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

import httpx
import jwt

from identity_mirror.client.retry import (
    ApiError,
    CONNECTIVITY_FAILURE_STATUS,
    RetryConfig,
    error_status,
    should_retry,
)

logger = logging.getLogger(__name__)


class RetriesExhaustedError(Exception):
    """A transient failure persisted past the retry ceiling."""

    def __init__(self, message: str, attempts: int, last_error: Exception):
        super().__init__(message)
        self.message = message
        self.attempts = attempts
        self.last_error = last_error
        self.status = error_status(last_error)
        self.error_code = "retries_exhausted"


def _token_expiry(token: str) -> Optional[float]:
    # Only the exp claim is read; the server verifies the signature
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return None
    exp = claims.get("exp")
    return float(exp) if isinstance(exp, (int, float)) else None


class CredentialContext:
    """
    Holds the caller's bearer token.

    Args:
        token: Initial token, if the caller already has one
        refresh: Callable returning a fresh token from the identity provider
        leeway_seconds: Refresh this long before exp
        clock: Time source, injectable for tests
    """

    def __init__(
        self,
        token: Optional[str] = None,
        refresh: Optional[Callable[[], Optional[str]]] = None,
        leeway_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self._token = token
        self._expires_at = _token_expiry(token) if token else None
        self._refresh = refresh
        self._leeway_seconds = leeway_seconds
        self._clock = clock
        self._lock = Lock()

    def _needs_refresh(self) -> bool:
        if not self._token:
            return True
        if self._expires_at is None:
            return False
        return self._clock() >= self._expires_at - self._leeway_seconds

    def bearer(self) -> Optional[str]:
        """Current token, refreshed first if absent or about to expire."""
        with self._lock:
            if self._refresh is not None and self._needs_refresh():
                self._token = self._refresh()
                self._expires_at = _token_expiry(self._token) if self._token else None
                logger.debug("Refreshed credential", extra={"has_token": bool(self._token)})
            return self._token

    def clear(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = None


class MirrorApiClient:
    """Synchronous httpx client that retries transient failures with backoff."""

    def __init__(
        self,
        base_url: str,
        credentials: CredentialContext,
        retry_config: Optional[RetryConfig] = None,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.credentials = credentials
        self.retry_config = retry_config or RetryConfig()
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "MirrorApiClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _send_once(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        token = self.credentials.bearer()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise ApiError(
                f"{method} {path} failed: {e}",
                status=CONNECTIVITY_FAILURE_STATUS,
                error_code="connectivity",
            ) from e

        if response.is_success:
            return response

        error_code = None
        message = response.reason_phrase
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            error_code = body.get("error_code")
            detail = body.get("detail")
            if isinstance(detail, str):
                message = detail
        raise ApiError(message, status=response.status_code, error_code=error_code)

    def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Send a request, retrying transient failures.

        Raises:
            ApiError: Terminal (4xx) failure, raised on first occurrence
            RetriesExhaustedError: Transient failure persisted past the ceiling
        """
        attempt_count = 0
        while True:
            try:
                return self._send_once(method, path, **dict(kwargs))
            except ApiError as e:
                if not e.is_transient:
                    raise
                if not should_retry(attempt_count, e, self.retry_config.max_attempts):
                    logger.warning(
                        "Retries exhausted",
                        extra={"path": path, "attempts": attempt_count + 1, "status": e.status},
                    )
                    raise RetriesExhaustedError(
                        f"{method} {path} failed after {attempt_count + 1} attempts: {e.message}",
                        attempts=attempt_count + 1,
                        last_error=e,
                    ) from e

                delay = self.retry_config.delay_for(attempt_count)
                logger.info(
                    "Transient API failure, retrying",
                    extra={"path": path, "status": e.status, "attempt": attempt_count + 1, "delay_seconds": delay},
                )
                self._sleep(delay)
                attempt_count += 1

    def get_me(self) -> Dict[str, Any]:
        return self.request("GET", "/api/users/me").json()

    def get_user(self, external_id: str) -> Dict[str, Any]:
        return self.request("GET", f"/api/users/{external_id}").json()

    def list_users(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        return self.request("GET", "/api/users", params={"limit": limit, "offset": offset}).json()
