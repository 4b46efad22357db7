from identity_mirror.audit.identity_events import IdentityAuditEmitter

__all__ = ["IdentityAuditEmitter"]
