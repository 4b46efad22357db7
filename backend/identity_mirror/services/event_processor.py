"""
Event Processor for verified Clerk identity events.

Applies user.created / user.updated / user.deleted to the identity mirror
store, idempotently and in revision order per identity:

- created/updated upsert the mirror only when the event is strictly newer
- deleted tombstones the mirror under the same rule
- anything not newer is a silent no-op (replays, out-of-order deliveries)
- an on-demand row is upgraded in place and keeps created_via = on-demand

The processor never retries. A storage failure rolls back and propagates so
the webhook route answers 5xx and Svix redelivers; re-applying the same
event later is safe.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from identity_mirror.audit.identity_events import IdentityAuditEmitter
from identity_mirror.repositories.identity_mirror_repo import IdentityMirrorRepository
from identity_mirror.services.mirror_writes import FromWebhook, merge_write
from identity_mirror.webhooks.verifier import EventKind, VerifiedEvent

logger = logging.getLogger(__name__)


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ApplyResult:
    """Result of applying one verified event."""

    external_id: Optional[str]
    event_type: str
    outcome: ApplyOutcome
    revision: Optional[int] = None
    status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "external_id": self.external_id,
            "event_type": self.event_type,
            "outcome": self.outcome.value,
            "revision": self.revision,
            "status": self.status,
        }


class EventProcessor:
    """
    Applies verified webhook events to the local store.

    One instance per delivery; the session is the delivery's unit of work.
    """

    def __init__(
        self,
        session: Session,
        store: Optional[IdentityMirrorRepository] = None,
        audit: Optional[IdentityAuditEmitter] = None,
    ):
        self.session = session
        self.store = store or IdentityMirrorRepository(session)
        self.audit = audit or IdentityAuditEmitter()

    def apply(self, event: VerifiedEvent) -> ApplyResult:
        """
        Apply a verified event.

        Args:
            event: Output of WebhookVerifier.verify

        Returns:
            ApplyResult with outcome applied, stale or ignored

        Raises:
            StorageConflictError / SQLAlchemyError: storage failed; nothing
                was committed and the event may be redelivered
        """
        if not event.is_supported:
            logger.info(
                "Ignoring unsupported webhook event",
                extra={"event_type": event.event_type, "svix_id": event.message_id},
            )
            return ApplyResult(
                external_id=event.external_id,
                event_type=event.event_type,
                outcome=ApplyOutcome.IGNORED,
            )

        external_id = event.external_id
        try:
            existed = self.store.get(external_id) is not None
            changed = merge_write(self.store, FromWebhook(event))
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.error(
                "Failed to apply webhook event",
                extra={
                    "event_type": event.event_type,
                    "external_id": external_id,
                    "revision": event.revision,
                },
                exc_info=True,
            )
            raise

        mirror = self.store.get(external_id)
        result = ApplyResult(
            external_id=external_id,
            event_type=event.event_type,
            outcome=ApplyOutcome.APPLIED if changed else ApplyOutcome.STALE,
            revision=mirror.revision if mirror else None,
            status=mirror.status if mirror else None,
        )

        if not changed:
            logger.info(
                "Stale webhook event skipped",
                extra={
                    "event_type": event.event_type,
                    "external_id": external_id,
                    "event_revision": event.revision,
                    "stored_revision": result.revision,
                },
            )
            return result

        if not existed:
            self.audit.emit_mirror_first_seen(external_id=external_id, source="webhook")
        if event.kind is EventKind.DELETED:
            self.audit.emit_mirror_tombstoned(external_id=external_id, revision=event.revision)

        logger.info(
            "Applied webhook event",
            extra={
                "event_type": event.event_type,
                "external_id": external_id,
                "revision": result.revision,
                "status": result.status,
            },
        )
        return result
