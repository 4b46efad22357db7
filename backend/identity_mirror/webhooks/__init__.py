"""Inbound webhook verification for Clerk (delivered through Svix)."""

from identity_mirror.webhooks.verifier import (
    EventKind,
    VerificationFailure,
    VerifiedEvent,
    WebhookVerifier,
)

__all__ = ["EventKind", "VerificationFailure", "VerifiedEvent", "WebhookVerifier"]
