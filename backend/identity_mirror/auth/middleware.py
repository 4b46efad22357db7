"""
FastAPI authentication middleware: the Request Identity Attacher.

Request Flow:
1. Exempt paths (health, webhooks, docs) pass straight through
2. JWT extracted from the Authorization header or the __session cookie
3. JWT verified against Clerk's JWKS (no database work before this succeeds)
4. Mirror resolved, provisioned on demand if the webhook has not arrived
5. IdentityContext attached to request.state.identity

Failures:
- no credential            -> 401 missing_token
- bad / foreign credential -> 401 invalid_token
- expired credential       -> 401 token_expired
- tombstoned identity      -> 403 identity_inactive
- JWKS or store unreachable -> 503 (transient, the client may retry)

Usage:

    app.add_middleware(ClerkAuthMiddleware)

    @router.get("/protected")
    async def protected_route(identity: IdentityContext = Depends(require_identity)):
        return {"local_id": identity.local_id}
"""

import logging
from typing import Callable, Iterable, Optional

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from identity_mirror.audit.identity_events import IdentityAuditEmitter
from identity_mirror.auth.clerk_verifier import (
    ClerkJWTVerifier,
    ClerkVerificationError,
    get_verifier,
)
from identity_mirror.auth.context_resolver import (
    ANONYMOUS_IDENTITY,
    AuthContextResolver,
    IdentityContext,
    IdentityInactiveError,
)
from identity_mirror.auth.jwt import ExtractedClaims, extract_claims
from identity_mirror.database.session import get_session_factory

logger = logging.getLogger(__name__)

# Paths that don't require authentication
EXEMPT_PATHS = frozenset({
    "/health",
    "/health/ready",
    "/docs",
    "/openapi.json",
    "/redoc",
})

# Path prefixes that don't require authentication
EXEMPT_PREFIXES = (
    "/api/webhooks/",
)


def _matches(path: str, paths: Iterable[str], prefixes: Iterable[str]) -> bool:
    if path in paths:
        return True
    return any(path.startswith(prefix) for prefix in prefixes)


def is_exempt_path(path: str) -> bool:
    """Check if path is exempt from authentication."""
    return _matches(path, EXEMPT_PATHS, EXEMPT_PREFIXES)


def _error_response(status_code: int, message: str, error_code: str) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(
        status_code=status_code,
        content={"detail": message, "error_code": error_code},
        headers=headers,
    )


class ClerkAuthMiddleware(BaseHTTPMiddleware):
    """
    Verifies the request credential and attaches the caller's IdentityContext.

    Optional-auth paths attach the identity when a valid credential is
    present and fall back to anonymous otherwise; they never reject.
    """

    def __init__(
        self,
        app,
        verifier: Optional[ClerkJWTVerifier] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        exempt_paths: Optional[Iterable[str]] = None,
        exempt_prefixes: Optional[Iterable[str]] = None,
        optional_paths: Iterable[str] = (),
        optional_prefixes: Iterable[str] = (),
        cookie_name: str = "__session",
    ):
        """
        Args:
            app: ASGI application
            verifier: ClerkJWTVerifier (process-wide instance if not provided)
            session_factory: Callable returning a new Session (default engine if not provided)
            exempt_paths: Paths that skip authentication entirely
            exempt_prefixes: Path prefixes that skip authentication entirely
            optional_paths: Paths where authentication is attempted but not required
            optional_prefixes: Path prefixes where authentication is optional
            cookie_name: Clerk session cookie name
        """
        super().__init__(app)
        self._verifier = verifier
        self._session_factory = session_factory
        self._exempt_paths = frozenset(exempt_paths) if exempt_paths is not None else EXEMPT_PATHS
        self._exempt_prefixes = tuple(exempt_prefixes) if exempt_prefixes is not None else EXEMPT_PREFIXES
        self._optional_paths = frozenset(optional_paths)
        self._optional_prefixes = tuple(optional_prefixes)
        self._cookie_name = cookie_name

    def _get_verifier(self) -> ClerkJWTVerifier:
        if self._verifier is None:
            self._verifier = get_verifier()
        return self._verifier

    def _new_session(self) -> Session:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory()

    def _extract_token(self, request: Request) -> Optional[str]:
        """
        Bearer token from the Authorization header, else the session cookie.

        Raises:
            ClerkVerificationError: Authorization header with another scheme
        """
        auth_header = request.headers.get("Authorization")
        if auth_header:
            scheme, _, credentials = auth_header.strip().partition(" ")
            if scheme.lower() != "bearer":
                raise ClerkVerificationError(
                    "Unsupported authorization scheme, expected Bearer",
                    error_code="invalid_token",
                )
            return credentials.strip() or None

        return request.cookies.get(self._cookie_name) or None

    def _resolve(self, claims: ExtractedClaims) -> IdentityContext:
        session = self._new_session()
        try:
            return AuthContextResolver(session).resolve(claims)
        finally:
            session.close()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        request.state.identity = ANONYMOUS_IDENTITY

        if request.method == "OPTIONS" or _matches(path, self._exempt_paths, self._exempt_prefixes):
            return await call_next(request)

        optional = _matches(path, self._optional_paths, self._optional_prefixes)
        try:
            token = self._extract_token(request)
        except ClerkVerificationError as e:
            if optional:
                return await call_next(request)
            logger.info(
                f"Rejected credential: {e.message}",
                extra={"path": path, "error_code": e.error_code},
            )
            return _error_response(401, e.message, e.error_code)

        if not token:
            if optional:
                return await call_next(request)
            logger.debug("No auth token", extra={"path": path})
            return _error_response(401, "Authentication required", "missing_token")

        try:
            verifier = self._get_verifier()
            raw_claims = await run_in_threadpool(verifier.verify_token, token)
            claims = extract_claims(raw_claims)
        except ClerkVerificationError as e:
            if e.is_provider_outage:
                logger.error(
                    f"Credential verification unavailable: {e.message}",
                    extra={"path": path, "error_code": e.error_code},
                )
                return _error_response(503, "Authentication temporarily unavailable", e.error_code)
            if optional:
                return await call_next(request)
            logger.info(
                f"Token verification failed: {e.message}",
                extra={"path": path, "error_code": e.error_code},
            )
            return _error_response(401, e.message, e.error_code)
        except ValueError as e:
            if optional:
                return await call_next(request)
            return _error_response(401, str(e), "invalid_token")

        try:
            identity = await run_in_threadpool(self._resolve, claims)
        except IdentityInactiveError as e:
            IdentityAuditEmitter().emit_inactive_access(external_id=e.external_id, path=path)
            return _error_response(403, e.message, e.error_code)
        except Exception:
            logger.error(
                "Error resolving identity context",
                extra={"path": path, "external_id": claims.external_id},
                exc_info=True,
            )
            return _error_response(503, "Identity store unavailable", "identity_unavailable")

        request.state.identity = identity
        logger.debug(
            "Authenticated request",
            extra={"path": path, "external_id": identity.external_id, "local_id": identity.local_id},
        )
        return await call_next(request)


# =============================================================================
# FastAPI Dependencies
# =============================================================================


def get_identity_context(request: Request) -> IdentityContext:
    """IdentityContext set by the middleware, or ANONYMOUS_IDENTITY."""
    return getattr(request.state, "identity", ANONYMOUS_IDENTITY)


def require_identity(
    identity: IdentityContext = Depends(get_identity_context),
) -> IdentityContext:
    """FastAPI dependency that requires an attached identity (401 otherwise)."""
    if not identity.is_authenticated:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity


def require_admin(
    identity: IdentityContext = Depends(require_identity),
) -> IdentityContext:
    """FastAPI dependency that requires an admin identity (403 otherwise)."""
    if not identity.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return identity
