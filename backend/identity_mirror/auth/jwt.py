"""
JWT claims handling for Clerk-issued tokens.

This module does NOT issue tokens; it only normalises claims that
clerk_verifier has already verified.

Claims used:
- sub: external_id of the identity
- sid: session ID
- exp / iat: validity window
- azp: authorized party
- email, first_name, last_name, username, image_url, public_metadata:
  optional profile claims added through a Clerk JWT template; used only to
  seed on-demand mirrors
- is_admin / isAdmin: optional admin flag claim
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

ADMIN_ROLE = "admin"


class ClerkJWTClaims(BaseModel):
    """Pydantic model for the Clerk claims this service reads."""

    sub: str = Field(..., description="Clerk user ID (external_id)")
    iss: str = Field(..., description="Token issuer URL")
    exp: int = Field(..., description="Expiration timestamp (Unix)")
    iat: int = Field(..., description="Issued at timestamp (Unix)")

    nbf: Optional[int] = None
    sid: Optional[str] = None
    azp: Optional[str] = None

    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    image_url: Optional[str] = None
    public_metadata: Optional[Dict[str, Any]] = None

    is_admin: Optional[bool] = None
    isAdmin: Optional[bool] = None

    model_config = ConfigDict(extra="allow")


@dataclass(frozen=True)
class ExtractedClaims:
    """Immutable view of a verified credential."""

    external_id: str
    session_id: Optional[str]
    issued_at: datetime
    expires_at: datetime
    azp: Optional[str] = None
    admin_claim: bool = False
    profile: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) > self.expires_at

    def credential_attributes(self) -> Dict[str, Any]:
        """Attributes an on-demand mirror may be seeded with."""
        return {k: v for k, v in self.profile.items() if v is not None}


def _is_admin_claim(claims: ClerkJWTClaims) -> bool:
    if claims.is_admin or claims.isAdmin:
        return True
    metadata = claims.public_metadata or {}
    return metadata.get("role") == ADMIN_ROLE


def extract_claims(jwt_claims: Dict[str, Any]) -> ExtractedClaims:
    """
    Extract and normalize claims from a verified JWT.

    Raises:
        ValueError: If required claims are missing or malformed
    """
    for required in ("sub", "exp", "iat"):
        if required not in jwt_claims:
            raise ValueError(f"Missing required claim: {required}")

    try:
        claims = ClerkJWTClaims.model_validate(jwt_claims)
    except Exception as e:
        raise ValueError(f"Failed to parse JWT claims: {e}")

    return ExtractedClaims(
        external_id=claims.sub,
        session_id=claims.sid,
        issued_at=datetime.fromtimestamp(claims.iat, tz=timezone.utc),
        expires_at=datetime.fromtimestamp(claims.exp, tz=timezone.utc),
        azp=claims.azp,
        admin_claim=_is_admin_claim(claims),
        profile={
            "email": claims.email,
            "first_name": claims.first_name,
            "last_name": claims.last_name,
            "username": claims.username,
            "avatar_url": claims.image_url,
            "public_metadata": claims.public_metadata,
        },
    )
