"""
User API routes backed by the identity mirror.

Provides endpoints for:
- The caller's own identity (resolved by the auth middleware)
- Looking up a mirrored user by Clerk ID
- Listing mirrored users (admin only)

SECURITY:
- Requires authentication
- Tombstoned users are never returned
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from identity_mirror.auth.context_resolver import IdentityContext
from identity_mirror.auth.middleware import require_admin, require_identity
from identity_mirror.database.session import get_db_session
from identity_mirror.models.identity_mirror import IdentityMirror
from identity_mirror.repositories.identity_mirror_repo import IdentityMirrorRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])


# --- Response Models ---


class UserResponse(BaseModel):
    """Public view of a mirrored user."""
    id: str = Field(..., description="Internal user ID")
    external_id: str = Field(..., description="Clerk user ID")
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    avatar_url: Optional[str] = None
    display_name: str
    is_admin: bool = False
    provisional: bool = Field(
        default=False,
        description="True until the first webhook for this user has been applied",
    )

    @classmethod
    def from_mirror(cls, mirror: IdentityMirror) -> "UserResponse":
        return cls(
            id=mirror.id,
            external_id=mirror.external_id,
            email=mirror.email,
            first_name=mirror.first_name,
            last_name=mirror.last_name,
            username=mirror.username,
            avatar_url=mirror.avatar_url,
            display_name=mirror.display_name,
            is_admin=mirror.is_admin,
            provisional=mirror.is_provisional,
        )


class MeResponse(BaseModel):
    """The identity attached to the current request."""
    local_id: str
    external_id: str
    session_id: Optional[str] = None
    is_admin: bool
    attributes: Dict[str, Any]


# --- Routes ---


@router.get("/me", response_model=MeResponse)
async def get_me(identity: IdentityContext = Depends(require_identity)):
    return MeResponse(
        local_id=identity.local_id,
        external_id=identity.external_id,
        session_id=identity.session_id,
        is_admin=identity.is_admin,
        attributes=dict(identity.local_attributes),
    )


@router.get("", response_model=List[UserResponse])
def list_users(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    identity: IdentityContext = Depends(require_admin),
    db: Session = Depends(get_db_session),
):
    """List active mirrored users (admin only)."""
    mirrors = IdentityMirrorRepository(db).list_mirrors(limit=limit, offset=offset)
    return [UserResponse.from_mirror(m) for m in mirrors]


@router.get("/by-local-id/{local_id}", response_model=UserResponse)
def get_user_by_local_id(
    local_id: str,
    identity: IdentityContext = Depends(require_identity),
    db: Session = Depends(get_db_session),
):
    """Resolve a user referenced by its internal id elsewhere in the app."""
    mirror = IdentityMirrorRepository(db).get_by_local_id(local_id)
    if mirror is None or not mirror.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )
    return UserResponse.from_mirror(mirror)


@router.get("/{external_id}", response_model=UserResponse)
def get_user(
    external_id: str,
    identity: IdentityContext = Depends(require_identity),
    db: Session = Depends(get_db_session),
):
    mirror = IdentityMirrorRepository(db).get(external_id)
    if mirror is None or not mirror.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )
    return UserResponse.from_mirror(mirror)
