"""
Identity context resolver: maps a verified credential to its local mirror.

Data flow:
1. JWT verified by clerk_verifier -> claims extracted
2. context_resolver looks up the mirror by external_id
3. On a miss the On-Demand Provisioner creates a provisional mirror
4. A tombstoned mirror is refused, even though the credential is valid
5. IdentityContext is attached to the request by the middleware

SECURITY:
- external_id comes ONLY from the verified JWT (never from client input)
- A deleted identity with a still-valid credential gets 403, not 401
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from identity_mirror.auth.jwt import ExtractedClaims
from identity_mirror.models.identity_mirror import IdentityMirror
from identity_mirror.repositories.identity_mirror_repo import IdentityMirrorRepository
from identity_mirror.services.mirror_provisioner import MirrorProvisioner

logger = logging.getLogger(__name__)


class IdentityInactiveError(Exception):
    """The credential is valid but its identity has been tombstoned."""

    def __init__(self, external_id: str):
        super().__init__("Identity no longer active")
        self.message = "Identity no longer active"
        self.external_id = external_id
        self.error_code = "identity_inactive"


@dataclass(frozen=True)
class IdentityContext:
    """
    Identity attached to a request.

    Usage in route handlers:
        @router.get("/data")
        async def get_data(identity: IdentityContext = Depends(require_identity)):
            owner_id = identity.local_id
            ...
    """

    external_id: Optional[str]
    local_id: Optional[str]
    local_attributes: Dict[str, Any] = field(default_factory=dict)
    is_admin: bool = False
    session_id: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.external_id is not None and self.local_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "external_id": self.external_id,
            "local_id": self.local_id,
            "attributes": dict(self.local_attributes),
            "is_admin": self.is_admin,
            "session_id": self.session_id,
        }


ANONYMOUS_IDENTITY = IdentityContext(external_id=None, local_id=None)


class AuthContextResolver:
    """Resolves IdentityContext from verified claims within one DB session."""

    def __init__(
        self,
        session: Session,
        provisioner: Optional[MirrorProvisioner] = None,
    ):
        self.session = session
        self.store = IdentityMirrorRepository(session)
        self.provisioner = provisioner or MirrorProvisioner(session, store=self.store)

    def resolve(self, claims: ExtractedClaims) -> IdentityContext:
        """
        Build the IdentityContext for a verified credential.

        Raises:
            IdentityInactiveError: The mirror is tombstoned
        """
        mirror = self.store.get(claims.external_id)

        if mirror is None:
            logger.info(
                "No mirror for authenticated identity, provisioning on demand",
                extra={"external_id": claims.external_id},
            )
            mirror = self.provisioner.ensure_mirror(
                claims.external_id,
                claims.credential_attributes(),
            )

        if not mirror.is_active:
            raise IdentityInactiveError(claims.external_id)

        return self._build_context(mirror, claims)

    def _build_context(self, mirror: IdentityMirror, claims: ExtractedClaims) -> IdentityContext:
        return IdentityContext(
            external_id=mirror.external_id,
            local_id=mirror.id,
            local_attributes=mirror.attributes(),
            is_admin=claims.admin_claim or mirror.is_admin,
            session_id=claims.session_id,
        )
