"""
Clerk webhook ingress for identity synchronization.

SECURITY: Every delivery is verified (Svix signature + timestamp) over the
raw body before anything is parsed or written.

Supported Events:
- user.created, user.updated, user.deleted

Other event types (session.created, ...) are verified and acknowledged with
200 so Svix does not redeliver them, but nothing is written.

Status codes drive Svix redelivery:
- 200: applied, stale or ignored (never redelivered)
- 400: verification failed (terminal for this delivery)
- 503: signing secret not configured
- 500: storage failure (redelivered, re-applying is idempotent)

Documentation: https://clerk.com/docs/webhooks/sync-data
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from identity_mirror.audit.identity_events import IdentityAuditEmitter
from identity_mirror.config.settings import MirrorSettings, get_settings
from identity_mirror.database.session import get_db_session
from identity_mirror.repositories.identity_mirror_repo import StorageConflictError
from identity_mirror.services.event_processor import EventProcessor
from identity_mirror.webhooks.verifier import VerificationFailure, WebhookVerifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class WebhookResponse(BaseModel):
    """Acknowledgement returned to Svix."""
    received: bool = True
    status: str
    event_type: str
    external_id: Optional[str] = None
    revision: Optional[int] = None


def _settings(request: Request) -> MirrorSettings:
    return getattr(request.app.state, "settings", None) or get_settings()


def get_webhook_verifier(request: Request) -> WebhookVerifier:
    """FastAPI dependency for the webhook verifier."""
    return WebhookVerifier.from_settings(_settings(request))


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@router.post("/clerk", response_model=WebhookResponse)
async def handle_clerk_webhook(
    request: Request,
    verifier: WebhookVerifier = Depends(get_webhook_verifier),
    db: Session = Depends(get_db_session),
):
    """
    Handle incoming Clerk webhooks.

    Does not require JWT authentication (webhooks are server-to-server).
    """
    if not verifier.is_configured:
        logger.error("CLERK_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook handler not configured",
        )

    # Raw bytes: the signature covers the body exactly as sent
    body = await request.body()
    audit = IdentityAuditEmitter(correlation_id=request.headers.get("svix-id"))

    try:
        event = verifier.verify(body, request.headers)
    except VerificationFailure as e:
        audit.emit_webhook_rejected(
            error_code=e.error_code,
            message_id=request.headers.get("svix-id"),
            client_ip=_client_ip(request),
        )
        if e.error_code == "not_configured":
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Webhook handler not configured",
            )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": e.message, "error_code": e.error_code},
        )

    logger.info(
        "Received Clerk webhook",
        extra={"event_type": event.event_type, "svix_id": event.message_id},
    )

    processor = EventProcessor(db, audit=audit)
    try:
        result = await run_in_threadpool(processor.apply, event)
    except (StorageConflictError, SQLAlchemyError) as e:
        logger.error(
            f"Storage failure applying webhook: {e}",
            extra={"event_type": event.event_type, "svix_id": event.message_id},
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to apply event, retry later",
        )

    return WebhookResponse(
        received=True,
        status=result.outcome.value,
        event_type=result.event_type,
        external_id=result.external_id,
        revision=result.revision,
    )


@router.get("/clerk/health")
async def clerk_webhook_health(request: Request):
    """
    Health check for Clerk webhook endpoint.

    Does not require authentication.
    """
    return {
        "status": "healthy",
        "webhook_secret_configured": _settings(request).webhook_configured,
    }
