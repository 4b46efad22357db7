"""
Tests for identity audit events.
"""

import logging

import pytest

from identity_mirror.audit import IdentityAuditEmitter

AUDIT_LOGGER = "identity_mirror.audit"


def _records(caplog, action):
    return [r for r in caplog.records if getattr(r, "audit_action", None) == action]


def test_first_seen_carries_correlation_id(caplog):
    emitter = IdentityAuditEmitter(correlation_id="msg_123")

    with caplog.at_level(logging.INFO, logger=AUDIT_LOGGER):
        emitter.emit_mirror_first_seen(external_id="user_2abc", source="on-demand")

    [record] = _records(caplog, "identity.mirror_first_seen")
    assert record.correlation_id == "msg_123"
    assert record.external_id == "user_2abc"
    assert record.source == "on-demand"


def test_generated_correlation_id():
    assert IdentityAuditEmitter().correlation_id != IdentityAuditEmitter().correlation_id


def test_invalid_source_rejected():
    with pytest.raises(ValueError, match="Invalid source"):
        IdentityAuditEmitter().emit_mirror_first_seen(external_id="user_2abc", source="backfill")


def test_rejection_is_a_warning_without_empty_fields(caplog):
    with caplog.at_level(logging.INFO, logger=AUDIT_LOGGER):
        IdentityAuditEmitter().emit_webhook_rejected(error_code="invalid_signature")

    [record] = _records(caplog, "identity.webhook_rejected")
    assert record.levelno == logging.WARNING
    assert record.error_code == "invalid_signature"
    assert not hasattr(record, "svix_id")
    assert not hasattr(record, "client_ip")


def test_tombstone_and_inactive_access(caplog):
    emitter = IdentityAuditEmitter()

    with caplog.at_level(logging.INFO, logger=AUDIT_LOGGER):
        emitter.emit_mirror_tombstoned(external_id="user_2abc", revision=1_700_000_000_000)
        emitter.emit_inactive_access(external_id="user_2abc", path="/api/users/me")

    [tombstoned] = _records(caplog, "identity.mirror_tombstoned")
    [inactive] = _records(caplog, "identity.inactive_access")
    assert tombstoned.revision == 1_700_000_000_000
    assert inactive.path == "/api/users/me"
    assert inactive.levelno == logging.WARNING
