"""
IdentityMirror model: the local, durable copy of one Clerk identity.

Clerk remains the source of truth for authentication. This table mirrors
the identity attributes other subsystems need so they can reference users
by a stable local id without calling Clerk on every read.

Key concepts:
- external_id is the Clerk user ID (immutable, never reused)
- id is the internal UUID other tables reference
- revision only moves forward; stale events never change a row
- Deletion is a tombstone (status = deleted), rows are never removed
- created_via records whether the row first appeared from a webhook or
  from on-demand provisioning during a request

SECURITY: NO PASSWORDS or credentials are stored locally.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import BigInteger, Column, DateTime, Index, JSON, String

from identity_mirror.db_base import Base
from identity_mirror.models.base import TimestampMixin, generate_uuid


class MirrorStatus(str, Enum):
    """Lifecycle status of a mirror row."""
    ACTIVE = "active"
    DELETED = "deleted"


class CreatedVia(str, Enum):
    """Provenance of the first appearance of a mirror row."""
    WEBHOOK = "webhook"
    ON_DEMAND = "on-demand"


# Attribute columns mirrored from the provider. Tombstoning clears all of them.
MIRRORED_ATTRIBUTES = (
    "email",
    "first_name",
    "last_name",
    "username",
    "avatar_url",
    "public_metadata",
)

# On-demand rows start below any webhook revision (webhooks always carry >= 1).
PROVISIONAL_REVISION = 0


class IdentityMirror(Base, TimestampMixin):
    """
    Local mirror of one external identity.

    Written only through IdentityMirrorRepository, whose statements are
    atomic with respect to concurrent writers on the same external_id.
    """

    __tablename__ = "identity_mirrors"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key (stable local identifier)"
    )

    external_id = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Clerk user ID - immutable, never reused after tombstoning"
    )

    email = Column(String(255), nullable=True, index=True, comment="Primary email (from Clerk)")
    first_name = Column(String(255), nullable=True, comment="First name (from Clerk)")
    last_name = Column(String(255), nullable=True, comment="Last name (from Clerk)")
    username = Column(String(255), nullable=True, comment="Username (from Clerk)")
    avatar_url = Column(String(500), nullable=True, comment="Profile image URL (from Clerk)")
    public_metadata = Column(JSON, nullable=True, comment="Clerk public metadata")

    revision = Column(
        BigInteger,
        nullable=False,
        default=PROVISIONAL_REVISION,
        comment="Forward-only revision (provider timestamp in ms, 0 for on-demand rows)"
    )

    status = Column(
        String(20),
        nullable=False,
        default=MirrorStatus.ACTIVE.value,
        comment="active or deleted (tombstone)"
    )

    created_via = Column(
        String(20),
        nullable=False,
        default=CreatedVia.WEBHOOK.value,
        comment="webhook or on-demand - provenance of first appearance"
    )

    last_synced_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the row was last written by either source"
    )

    __table_args__ = (
        Index("idx_identity_mirrors_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<IdentityMirror(id={self.id}, external_id={self.external_id}, "
            f"revision={self.revision}, status={self.status})>"
        )

    @property
    def is_active(self) -> bool:
        return self.status == MirrorStatus.ACTIVE.value

    @property
    def is_provisional(self) -> bool:
        """True while only on-demand data is present (no webhook applied yet)."""
        return self.revision == PROVISIONAL_REVISION

    @property
    def full_name(self) -> str:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts)

    @property
    def display_name(self) -> str:
        """
        Return the best available display name.

        Priority: full_name > username > email > external_id
        """
        return self.full_name or self.username or self.email or self.external_id

    @property
    def is_admin(self) -> bool:
        metadata = self.public_metadata or {}
        return isinstance(metadata, dict) and metadata.get("role") == "admin"

    def attributes(self) -> Dict[str, Any]:
        """Mirrored attributes as a plain dict."""
        return {name: getattr(self, name) for name in MIRRORED_ATTRIBUTES}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        return {
            "id": self.id,
            "external_id": self.external_id,
            **self.attributes(),
            "display_name": self.display_name,
            "revision": self.revision,
            "status": self.status,
            "created_via": self.created_via,
            "created_at": _isoformat(self.created_at),
            "last_synced_at": _isoformat(self.last_synced_at),
        }


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()
