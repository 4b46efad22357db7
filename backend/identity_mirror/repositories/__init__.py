"""
Repository layer.

The identity mirror store owns every write to identity_mirrors. Each write
is a single atomic statement so concurrent writers on the same external_id
(webhook deliveries, first requests) serialize in the database rather than
in process memory.
"""

from identity_mirror.repositories.identity_mirror_repo import (
    IdentityMirrorRepository,
    StorageConflictError,
)

__all__ = ["IdentityMirrorRepository", "StorageConflictError"]
