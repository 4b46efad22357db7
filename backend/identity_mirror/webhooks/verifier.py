"""
Event Verifier for Clerk webhooks.

Clerk delivers webhooks through Svix. Each delivery carries:
- svix-id: Unique message identifier
- svix-timestamp: Unix timestamp (seconds) of the delivery attempt
- svix-signature: One or more "v1,<base64 HMAC-SHA256>" signatures over
  "{svix_id}.{svix_timestamp}.{raw_body}"

SECURITY:
- Verification MUST run over the exact raw request bytes. Parsing and
  re-serializing the JSON first changes the bytes and breaks the signature.
- Nothing unverified may reach the event processor.
- Timestamps outside the tolerance window are rejected (replay protection).

Documentation: https://clerk.com/docs/webhooks/sync-data
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from svix.webhooks import Webhook, WebhookVerificationError

from identity_mirror.config.settings import DEFAULT_WEBHOOK_TOLERANCE_SECONDS, MirrorSettings

logger = logging.getLogger(__name__)

SVIX_HEADERS = ("svix-id", "svix-timestamp", "svix-signature")

# Svix rejects timestamps further than this from now inside Webhook.verify
SVIX_TOLERANCE_SECONDS = 300


class VerificationFailure(Exception):
    """Raised when an inbound webhook cannot be proven to come from Clerk."""

    def __init__(self, message: str, error_code: str = "verification_failed"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class EventKind(str, Enum):
    """Identity lifecycle events the processor applies."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


_USER_EVENT_KINDS = {
    "user.created": EventKind.CREATED,
    "user.updated": EventKind.UPDATED,
    "user.deleted": EventKind.DELETED,
}


@dataclass(frozen=True)
class VerifiedEvent:
    """
    A webhook event whose signature and timestamp have been verified.

    kind is None for provider events this system does not mirror
    (session.created, organization.updated, ...).
    """

    message_id: str
    event_type: str
    kind: Optional[EventKind]
    external_id: Optional[str]
    revision: int
    attributes: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_supported(self) -> bool:
        return self.kind is not None


# =============================================================================
# Payload models
# =============================================================================


class ClerkEmailAddress(BaseModel):
    id: Optional[str] = None
    email_address: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class ClerkUserData(BaseModel):
    """The `data` object of user.* events (user.deleted only carries id)."""

    id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    image_url: Optional[str] = None
    profile_image_url: Optional[str] = None
    primary_email_address_id: Optional[str] = None
    email_addresses: List[ClerkEmailAddress] = Field(default_factory=list)
    public_metadata: Optional[Dict[str, Any]] = None
    updated_at: Optional[int] = None

    model_config = ConfigDict(extra="allow")

    def primary_email(self) -> Optional[str]:
        """Primary email, falling back to the first address."""
        for email in self.email_addresses:
            if email.id and email.id == self.primary_email_address_id:
                return email.email_address
        if self.email_addresses:
            return self.email_addresses[0].email_address
        return None

    def mirrored_attributes(self) -> Dict[str, Any]:
        return {
            "email": self.primary_email(),
            "first_name": self.first_name,
            "last_name": self.last_name,
            "username": self.username,
            "avatar_url": self.image_url or self.profile_image_url,
            "public_metadata": self.public_metadata,
        }


class ClerkWebhookPayload(BaseModel):
    """Envelope of every Clerk webhook."""

    type: str
    data: Dict[str, Any]
    object: Optional[str] = None
    timestamp: Optional[int] = None

    model_config = ConfigDict(extra="allow")


# =============================================================================
# Verifier
# =============================================================================


class WebhookVerifier:
    """
    Verifies Svix-signed Clerk webhooks and parses them into VerifiedEvent.

    Usage:
        verifier = WebhookVerifier(secret="whsec_...")
        event = verifier.verify(await request.body(), request.headers)
    """

    def __init__(
        self,
        secret: Optional[str],
        tolerance_seconds: int = DEFAULT_WEBHOOK_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            secret: Clerk webhook signing secret (whsec_...)
            tolerance_seconds: Maximum accepted distance between svix-timestamp
                and now. Capped at Svix's own five minute window.
            clock: Time source, injectable for tests
        """
        if tolerance_seconds > SVIX_TOLERANCE_SECONDS:
            logger.warning(
                "Webhook tolerance exceeds the Svix window, capping",
                extra={"configured_seconds": tolerance_seconds, "effective_seconds": SVIX_TOLERANCE_SECONDS},
            )
            tolerance_seconds = SVIX_TOLERANCE_SECONDS
        self._secret = secret
        self._tolerance_seconds = tolerance_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: MirrorSettings) -> "WebhookVerifier":
        return cls(
            secret=settings.clerk_webhook_secret,
            tolerance_seconds=settings.webhook_tolerance_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._secret)

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> VerifiedEvent:
        """
        Verify a raw webhook delivery.

        Args:
            raw_body: Exact, unparsed request body
            headers: Request headers (any case)

        Returns:
            VerifiedEvent

        Raises:
            VerificationFailure: Missing headers, stale timestamp, bad signature
                or malformed payload
        """
        if not self._secret:
            raise VerificationFailure(
                "Webhook signing secret is not configured",
                error_code="not_configured",
            )

        svix_headers = self._extract_headers(headers)
        timestamp = self._check_timestamp(svix_headers["svix-timestamp"])

        try:
            webhook = Webhook(self._secret)
        except ValueError as e:
            raise VerificationFailure(
                "Webhook signing secret is malformed",
                error_code="not_configured",
            ) from e

        # Signature check only; the return value differs across svix releases
        try:
            webhook.verify(raw_body, svix_headers)
        except WebhookVerificationError as e:
            if "timestamp" in str(e).lower():
                raise VerificationFailure(
                    f"Webhook timestamp rejected: {e}",
                    error_code="invalid_timestamp",
                ) from e
            raise VerificationFailure(
                f"Invalid webhook signature: {e}",
                error_code="invalid_signature",
            ) from e
        except ValueError as e:
            # svix 1.x parses the body after a matching signature
            raise VerificationFailure(
                "Webhook body is not valid JSON",
                error_code="malformed_payload",
            ) from e

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise VerificationFailure(
                "Webhook body is not valid JSON",
                error_code="malformed_payload",
            ) from e

        return self._parse(payload, svix_headers["svix-id"], timestamp)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _extract_headers(self, headers: Mapping[str, str]) -> Dict[str, str]:
        lowered = {k.lower(): v for k, v in headers.items()}
        missing = [name for name in SVIX_HEADERS if not lowered.get(name)]
        if missing:
            raise VerificationFailure(
                f"Missing webhook headers: {missing}",
                error_code="missing_headers",
            )
        return {name: lowered[name] for name in SVIX_HEADERS}

    def _check_timestamp(self, raw_timestamp: str) -> int:
        try:
            timestamp = int(raw_timestamp)
        except ValueError:
            raise VerificationFailure(
                "svix-timestamp is not an integer",
                error_code="invalid_timestamp",
            )

        skew = abs(self._clock() - timestamp)
        if skew > self._tolerance_seconds:
            raise VerificationFailure(
                "Webhook timestamp outside tolerance window",
                error_code="invalid_timestamp",
            )
        return timestamp

    def _parse(self, payload: Any, message_id: str, svix_timestamp: int) -> VerifiedEvent:
        if not isinstance(payload, dict):
            raise VerificationFailure(
                "Webhook payload must be a JSON object",
                error_code="malformed_payload",
            )

        try:
            envelope = ClerkWebhookPayload.model_validate(payload)
            data = ClerkUserData.model_validate(envelope.data)
        except ValidationError as e:
            raise VerificationFailure(
                f"Malformed webhook payload: {e.error_count()} validation error(s)",
                error_code="malformed_payload",
            ) from e

        kind = _USER_EVENT_KINDS.get(envelope.type)

        if kind is None:
            return VerifiedEvent(
                message_id=message_id,
                event_type=envelope.type,
                kind=None,
                external_id=data.id,
                revision=envelope.timestamp or svix_timestamp * 1000,
            )

        if not data.id:
            raise VerificationFailure(
                f"Missing user id in {envelope.type} payload",
                error_code="malformed_payload",
            )

        if kind is EventKind.DELETED:
            # user.deleted carries no updated_at; the event time orders it
            return VerifiedEvent(
                message_id=message_id,
                event_type=envelope.type,
                kind=kind,
                external_id=data.id,
                revision=self._event_time_revision(envelope, message_id, svix_timestamp),
            )

        return VerifiedEvent(
            message_id=message_id,
            event_type=envelope.type,
            kind=kind,
            external_id=data.id,
            revision=(
                data.updated_at
                if data.updated_at is not None
                else self._event_time_revision(envelope, message_id, svix_timestamp)
            ),
            attributes=data.mirrored_attributes(),
        )

    def _event_time_revision(
        self,
        envelope: ClerkWebhookPayload,
        message_id: str,
        svix_timestamp: int,
    ) -> int:
        if envelope.timestamp:
            return envelope.timestamp
        # The delivery time moves forward on every Svix redelivery
        logger.warning(
            "Webhook carries no event time, ordering by delivery time",
            extra={"event_type": envelope.type, "svix_id": message_id},
        )
        return svix_timestamp * 1000
