"""
Clerk JWT Verifier for request credentials.

This module handles:
- Fetching and caching JWKS from Clerk
- RS256 signature verification
- exp / iat / nbf validation with clock-skew leeway
- Issuer, optional audience and optional authorized-party (azp) checks

SECURITY:
- Verification is purely cryptographic; no database access happens here
- An invalid credential is never retried or refreshed by the server

Documentation: https://clerk.com/docs/backend-requests/handling/manual-jwt
"""

import logging
import time
from threading import Lock
from typing import Any, Dict, Optional, Sequence

import jwt
from jwt import PyJWKClient
from jwt.exceptions import (
    ExpiredSignatureError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidTokenError,
    PyJWKClientConnectionError,
    PyJWKClientError,
)

from identity_mirror.config.settings import MirrorSettings, get_settings

logger = logging.getLogger(__name__)


class ClerkVerificationError(Exception):
    """Exception raised when Clerk JWT verification fails."""

    def __init__(self, message: str, error_code: str = "invalid_token"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code

    @property
    def is_provider_outage(self) -> bool:
        """True when the JWKS endpoint could not be reached (not the caller's fault)."""
        return self.error_code in ("jwks_unavailable", "config_error")


class ClerkJWTVerifier:
    """
    Verifies Clerk-issued JWTs using JWKS.

    Usage:
        verifier = ClerkJWTVerifier(issuer="https://example.clerk.accounts.dev")
        claims = verifier.verify_token(token)
        external_id = claims["sub"]
    """

    JWKS_CACHE_DURATION = 3600

    CLOCK_SKEW_SECONDS = 60

    def __init__(
        self,
        issuer: Optional[str],
        jwks_url: Optional[str] = None,
        audience: Optional[str] = None,
        authorized_parties: Sequence[str] = (),
        jwks_client: Optional[PyJWKClient] = None,
    ):
        """
        Args:
            issuer: Expected iss claim (Clerk frontend API URL)
            jwks_url: JWKS URL, defaults to <issuer>/.well-known/jwks.json
            audience: Expected aud claim (optional)
            authorized_parties: Allowed azp values; empty allows any
            jwks_client: Pre-built JWKS client (tests)
        """
        if not issuer:
            raise ClerkVerificationError(
                "CLERK_ISSUER_URL environment variable is required",
                error_code="config_error",
            )

        self._issuer = issuer
        self._jwks_url = jwks_url or f"{issuer.rstrip('/')}/.well-known/jwks.json"
        self._audience = audience
        self._authorized_parties = frozenset(authorized_parties)

        self._jwks_client = jwks_client
        self._jwks_client_fixed = jwks_client is not None
        self._jwks_client_lock = Lock()
        self._jwks_last_refresh: float = time.time() if jwks_client else 0

        logger.info(
            "Initialized ClerkJWTVerifier",
            extra={"issuer": self._issuer, "jwks_url": self._jwks_url},
        )

    @classmethod
    def from_settings(cls, settings: MirrorSettings) -> "ClerkJWTVerifier":
        return cls(
            issuer=settings.clerk_issuer_url,
            jwks_url=settings.clerk_jwks_url,
            audience=settings.clerk_audience,
            authorized_parties=settings.clerk_authorized_parties,
        )

    def _get_jwks_client(self) -> PyJWKClient:
        with self._jwks_client_lock:
            if self._jwks_client_fixed:
                return self._jwks_client

            now = time.time()
            if (
                self._jwks_client is None
                or now - self._jwks_last_refresh > self.JWKS_CACHE_DURATION
            ):
                self._jwks_client = PyJWKClient(
                    self._jwks_url,
                    cache_keys=True,
                    lifespan=self.JWKS_CACHE_DURATION,
                )
                self._jwks_last_refresh = now
                logger.debug("Refreshed JWKS client", extra={"jwks_url": self._jwks_url})

            return self._jwks_client

    def verify_token(self, token: Optional[str]) -> Dict[str, Any]:
        """
        Verify a Clerk JWT and return its claims.

        Args:
            token: The JWT, with or without a "Bearer " prefix

        Returns:
            Dict containing the verified JWT claims

        Raises:
            ClerkVerificationError: missing_token, token_expired, invalid_token,
                or jwks_unavailable when the key set cannot be fetched
        """
        if not token:
            raise ClerkVerificationError("Token is required", error_code="missing_token")

        if token.startswith("Bearer "):
            token = token[7:]

        try:
            signing_key = self._get_jwks_client().get_signing_key_from_jwt(token)

            claims = jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                issuer=self._issuer,
                audience=self._audience,
                options={
                    "verify_signature": True,
                    "verify_exp": True,
                    "verify_iat": True,
                    "verify_nbf": True,
                    "verify_aud": self._audience is not None,
                    "require": ["sub", "iss", "exp", "iat"],
                },
                leeway=self.CLOCK_SKEW_SECONDS,
            )

        except ExpiredSignatureError:
            logger.info("Token has expired")
            raise ClerkVerificationError("Token has expired", error_code="token_expired")

        except InvalidIssuerError:
            logger.warning("Invalid token issuer")
            raise ClerkVerificationError("Invalid token issuer", error_code="invalid_token")

        except InvalidAudienceError:
            logger.warning("Invalid token audience")
            raise ClerkVerificationError("Invalid token audience", error_code="invalid_token")

        except PyJWKClientConnectionError as e:
            logger.error("JWKS endpoint unreachable", extra={"jwks_url": self._jwks_url})
            raise ClerkVerificationError(
                f"Failed to fetch signing keys: {e}",
                error_code="jwks_unavailable",
            )

        except PyJWKClientError as e:
            logger.warning(f"No matching signing key: {e}")
            raise ClerkVerificationError(f"Invalid token: {e}", error_code="invalid_token")

        except InvalidTokenError as e:
            logger.warning(f"Invalid token: {e}")
            raise ClerkVerificationError(f"Invalid token: {e}", error_code="invalid_token")

        azp = claims.get("azp")
        if self._authorized_parties and azp not in self._authorized_parties:
            logger.warning("Unauthorized party", extra={"azp": azp})
            raise ClerkVerificationError(
                "Token was issued for an unauthorized party",
                error_code="invalid_token",
            )

        logger.debug(
            "Token verified successfully",
            extra={"sub": claims.get("sub"), "sid": claims.get("sid")},
        )
        return claims


_verifier_instance: Optional[ClerkJWTVerifier] = None
_verifier_lock = Lock()


def get_verifier() -> ClerkJWTVerifier:
    """
    Get the process-wide ClerkJWTVerifier, built from the environment.

    Raises:
        ClerkVerificationError: If CLERK_ISSUER_URL is not configured
    """
    global _verifier_instance

    with _verifier_lock:
        if _verifier_instance is None:
            _verifier_instance = ClerkJWTVerifier.from_settings(get_settings())
        return _verifier_instance
