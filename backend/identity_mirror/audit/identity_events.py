"""
Identity audit events for security-relevant identity changes.

Events are written to the dedicated `identity_mirror.audit` logger so they
can be routed to a separate sink (SIEM, audit index) by log configuration.

SECURITY REQUIREMENTS:
- NEVER include email or other PII in metadata - use external_id only
- ALL events MUST include correlation_id for request tracing

Events emitted:
- identity.webhook_rejected: Inbound webhook failed verification
- identity.mirror_first_seen: A mirror row was created (webhook or on-demand)
- identity.mirror_tombstoned: A mirror row was tombstoned by user.deleted
- identity.inactive_access: A valid credential referenced a tombstoned mirror
"""

import logging
import uuid
from typing import Any, Dict, Optional

audit_logger = logging.getLogger("identity_mirror.audit")


class IdentityAuditEmitter:
    """
    Emits identity audit events.

    Usage:
        emitter = IdentityAuditEmitter(correlation_id="abc-123")
        emitter.emit_mirror_first_seen(external_id="user_xyz", source="webhook")
    """

    SOURCES = frozenset({"webhook", "on-demand"})

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or str(uuid.uuid4())

    def _emit(self, action: str, level: int = logging.INFO, **metadata: Any) -> None:
        payload: Dict[str, Any] = {
            "audit_action": action,
            "correlation_id": self.correlation_id,
        }
        payload.update({k: v for k, v in metadata.items() if v is not None})
        audit_logger.log(level, action, extra=payload)

    def emit_webhook_rejected(
        self,
        error_code: str,
        message_id: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> None:
        self._emit(
            "identity.webhook_rejected",
            level=logging.WARNING,
            error_code=error_code,
            svix_id=message_id,
            client_ip=client_ip,
        )

    def emit_mirror_first_seen(self, external_id: str, source: str) -> None:
        if source not in self.SOURCES:
            raise ValueError(f"Invalid source: {source}. Must be one of {sorted(self.SOURCES)}")
        self._emit("identity.mirror_first_seen", external_id=external_id, source=source)

    def emit_mirror_tombstoned(self, external_id: str, revision: int) -> None:
        self._emit("identity.mirror_tombstoned", external_id=external_id, revision=revision)

    def emit_inactive_access(self, external_id: str, path: Optional[str] = None) -> None:
        self._emit(
            "identity.inactive_access",
            level=logging.WARNING,
            external_id=external_id,
            path=path,
        )
