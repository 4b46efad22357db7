"""
Request authentication for Clerk-issued credentials.

Clerk is the only authentication authority; this package verifies its JWTs
and attaches the caller's local identity mirror to each request.
"""

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
from identity_mirror.auth.jwt import ClerkJWTClaims, ExtractedClaims, extract_claims
from identity_mirror.auth.middleware import (
    ClerkAuthMiddleware,
    get_identity_context,
    require_admin,
    require_identity,
)

__all__ = [
    "ANONYMOUS_IDENTITY",
    "AuthContextResolver",
    "ClerkAuthMiddleware",
    "ClerkJWTClaims",
    "ClerkJWTVerifier",
    "ClerkVerificationError",
    "ExtractedClaims",
    "IdentityContext",
    "IdentityInactiveError",
    "extract_claims",
    "get_identity_context",
    "get_verifier",
    "require_admin",
    "require_identity",
]
