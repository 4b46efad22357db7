"""Database models for the identity mirror."""

from identity_mirror.models.identity_mirror import (
    CreatedVia,
    IdentityMirror,
    MIRRORED_ATTRIBUTES,
    MirrorStatus,
    PROVISIONAL_REVISION,
)

__all__ = [
    "CreatedVia",
    "IdentityMirror",
    "MIRRORED_ATTRIBUTES",
    "MirrorStatus",
    "PROVISIONAL_REVISION",
]
