"""
The two writers of identity_mirrors, as one tagged union.

Webhook deliveries and request-time provisioning both write the same row.
Rather than two code paths with their own overwrite rules, each write is
described as FromWebhook or FromRequest and merged by merge_write() through
the store's single revision-ordering rule:

    FromWebhook(created)  -> upsert_if_newer(reactivate=True)
    FromWebhook(updated)  -> upsert_if_newer(reactivate=False)
    FromWebhook(deleted)  -> tombstone_if_newer
    FromRequest           -> insert_if_absent at revision 0, which is never
                             newer than an existing row
"""

from dataclasses import dataclass, field
from typing import Any, Mapping, Union

from identity_mirror.models.identity_mirror import CreatedVia
from identity_mirror.repositories.identity_mirror_repo import IdentityMirrorRepository
from identity_mirror.webhooks.verifier import EventKind, VerifiedEvent


@dataclass(frozen=True)
class FromWebhook:
    event: VerifiedEvent

    @property
    def external_id(self) -> str:
        return self.event.external_id

    @property
    def source(self) -> CreatedVia:
        return CreatedVia.WEBHOOK


@dataclass(frozen=True)
class FromRequest:
    external_id: str
    attributes: Mapping[str, Any] = field(default_factory=dict)

    @property
    def source(self) -> CreatedVia:
        return CreatedVia.ON_DEMAND


MirrorWrite = Union[FromWebhook, FromRequest]


def merge_write(store: IdentityMirrorRepository, write: MirrorWrite) -> bool:
    """
    Apply a write through the revision rule.

    Returns:
        True if the store changed, False if the write was stale (or, for
        FromRequest, if the row already existed)
    """
    if isinstance(write, FromRequest):
        return store.insert_if_absent(write.external_id, write.attributes)

    event = write.event
    if event.kind is None:
        raise ValueError(f"Unsupported event type cannot be merged: {event.event_type}")

    if event.kind is EventKind.DELETED:
        return store.tombstone_if_newer(event.external_id, event.revision)

    return store.upsert_if_newer(
        event.external_id,
        event.attributes,
        event.revision,
        created_via=CreatedVia.WEBHOOK,
        reactivate=event.kind is EventKind.CREATED,
    )
