"""
On-Demand Provisioner.

When a request carries a valid credential for an identity whose webhook has
not been applied yet, the request path creates a minimal mirror from the
credential's own claims instead of waiting or calling Clerk:

- revision 0 and created_via = on-demand, so the first webhook (revision >= 1)
  overwrites the provisional attributes
- insert-if-absent, so concurrent first requests end up with one row
- no provider round-trip, so the request never waits on Clerk latency
"""

import logging
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from identity_mirror.audit.identity_events import IdentityAuditEmitter
from identity_mirror.models.identity_mirror import IdentityMirror
from identity_mirror.repositories.identity_mirror_repo import IdentityMirrorRepository
from identity_mirror.services.mirror_writes import FromRequest, merge_write

logger = logging.getLogger(__name__)


class ProvisioningError(Exception):
    """Raised when no mirror could be read back after provisioning."""

    def __init__(self, message: str, external_id: str):
        super().__init__(message)
        self.message = message
        self.external_id = external_id
        self.error_code = "provisioning_failed"


class MirrorProvisioner:
    """Creates provisional mirrors for identities first seen on a request."""

    def __init__(
        self,
        session: Session,
        store: Optional[IdentityMirrorRepository] = None,
        audit: Optional[IdentityAuditEmitter] = None,
    ):
        self.session = session
        self.store = store or IdentityMirrorRepository(session)
        self.audit = audit or IdentityAuditEmitter()

    def ensure_mirror(
        self,
        external_id: str,
        credential_attributes: Optional[Mapping[str, Any]] = None,
    ) -> IdentityMirror:
        """
        Return the mirror for external_id, creating a provisional one if absent.

        Args:
            external_id: Verified Clerk user ID (JWT sub)
            credential_attributes: Attributes available from the verified
                credential itself

        Returns:
            The stored mirror, whichever concurrent writer created it
        """
        try:
            inserted = merge_write(
                self.store,
                FromRequest(external_id=external_id, attributes=dict(credential_attributes or {})),
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.error(
                "On-demand provisioning failed",
                extra={"external_id": external_id},
                exc_info=True,
            )
            raise

        mirror = self.store.get(external_id)
        if mirror is None:
            raise ProvisioningError(
                f"Mirror for {external_id} missing after provisioning",
                external_id=external_id,
            )

        if inserted:
            logger.info(
                "Provisioned mirror on demand",
                extra={"external_id": external_id, "mirror_id": mirror.id},
            )
            self.audit.emit_mirror_first_seen(external_id=external_id, source="on-demand")

        return mirror
