"""
Tests for Svix webhook verification and Clerk payload parsing.
"""

import json
import time
from datetime import datetime, timedelta, timezone

import pytest
from svix.webhooks import Webhook

from identity_mirror.config.settings import MirrorSettings
from identity_mirror.webhooks import verifier as verifier_module
from identity_mirror.webhooks.verifier import (
    ClerkUserData,
    EventKind,
    VerificationFailure,
    WebhookVerifier,
)


@pytest.fixture
def verifier(webhook_secret):
    return WebhookVerifier(secret=webhook_secret)


class TestSignatureVerification:

    def test_valid_created_event(self, verifier, sign_webhook, user_event):
        body, headers = sign_webhook(user_event("user.created", updated_at=1_700_000_000_000))

        event = verifier.verify(body, headers)

        assert event.kind is EventKind.CREATED
        assert event.external_id == "user_2abc"
        assert event.revision == 1_700_000_000_000
        assert event.message_id == headers["svix-id"]
        assert event.attributes["email"] == "ada@example.com"
        assert event.attributes["avatar_url"] == "https://img.clerk.com/ada.png"
        assert event.is_supported

    def test_header_names_are_case_insensitive(self, verifier, sign_webhook, user_event):
        body, headers = sign_webhook(user_event("user.updated"))
        upper = {k.upper(): v for k, v in headers.items()}

        assert verifier.verify(body, upper).kind is EventKind.UPDATED

    @pytest.mark.parametrize("svix_result", [None, {"type": "other", "data": {}}, b"ignored"])
    def test_body_is_parsed_from_raw_bytes(self, verifier, sign_webhook, user_event, monkeypatch, svix_result):
        # Webhook.verify returns the parsed body on svix 1.x and None on 2.x
        real_verify = verifier_module.Webhook.verify

        def verify_then_return(self, data, headers):
            real_verify(self, data, headers)
            return svix_result

        monkeypatch.setattr(verifier_module.Webhook, "verify", verify_then_return)
        body, headers = sign_webhook(user_event("user.created", updated_at=1_700_000_000_000))

        event = verifier.verify(body, headers)

        assert event.kind is EventKind.CREATED
        assert event.external_id == "user_2abc"
        assert event.revision == 1_700_000_000_000

    def test_signed_non_json_body_is_malformed(self, verifier, webhook_secret):
        timestamp = datetime.now(timezone.utc)
        body = "not json at all"
        headers = {
            "svix-id": "msg_nonjson",
            "svix-timestamp": str(int(timestamp.timestamp())),
            "svix-signature": Webhook(webhook_secret).sign("msg_nonjson", timestamp, body),
        }

        with pytest.raises(VerificationFailure) as exc_info:
            verifier.verify(body.encode("utf-8"), headers)
        assert exc_info.value.error_code == "malformed_payload"

    def test_tampered_body_is_rejected(self, verifier, sign_webhook, user_event):
        body, headers = sign_webhook(user_event("user.created", first_name="Ada"))
        tampered = body.replace(b"Ada", b"Eve")

        with pytest.raises(VerificationFailure) as exc_info:
            verifier.verify(tampered, headers)
        assert exc_info.value.error_code == "invalid_signature"

    def test_reserialized_body_is_rejected(self, verifier, sign_webhook, user_event):
        body, headers = sign_webhook(user_event("user.created"))
        reserialized = json.dumps(json.loads(body), indent=2).encode()

        with pytest.raises(VerificationFailure) as exc_info:
            verifier.verify(reserialized, headers)
        assert exc_info.value.error_code == "invalid_signature"

    def test_wrong_secret_is_rejected(self, verifier, sign_webhook, user_event):
        body, headers = sign_webhook(
            user_event("user.created"),
            secret="whsec_c2VjcmV0X29mX2Fub3RoZXJfYXBwbGljYXRpb24=",
        )

        with pytest.raises(VerificationFailure) as exc_info:
            verifier.verify(body, headers)
        assert exc_info.value.error_code == "invalid_signature"

    @pytest.mark.parametrize("missing", ["svix-id", "svix-timestamp", "svix-signature"])
    def test_missing_header_is_rejected(self, verifier, sign_webhook, user_event, missing):
        body, headers = sign_webhook(user_event("user.created"))
        del headers[missing]

        with pytest.raises(VerificationFailure) as exc_info:
            verifier.verify(body, headers)
        assert exc_info.value.error_code == "missing_headers"

    def test_stale_timestamp_is_rejected(self, verifier, sign_webhook, user_event):
        old = datetime.now(timezone.utc) - timedelta(minutes=10)
        body, headers = sign_webhook(user_event("user.created"), timestamp=old)

        with pytest.raises(VerificationFailure) as exc_info:
            verifier.verify(body, headers)
        assert exc_info.value.error_code == "invalid_timestamp"

    def test_tolerance_uses_injected_clock(self, webhook_secret, sign_webhook, user_event):
        body, headers = sign_webhook(user_event("user.created"))
        verifier = WebhookVerifier(secret=webhook_secret, tolerance_seconds=30, clock=lambda: time.time() + 60)

        with pytest.raises(VerificationFailure) as exc_info:
            verifier.verify(body, headers)
        assert exc_info.value.error_code == "invalid_timestamp"

    def test_tolerance_is_capped_at_svix_window(self, webhook_secret, sign_webhook, user_event):
        old = datetime.now(timezone.utc) - timedelta(seconds=400)
        body, headers = sign_webhook(user_event("user.created"), timestamp=old)
        verifier = WebhookVerifier(secret=webhook_secret, tolerance_seconds=600)

        with pytest.raises(VerificationFailure) as exc_info:
            verifier.verify(body, headers)
        assert exc_info.value.error_code == "invalid_timestamp"

    def test_svix_timestamp_rejection_is_not_reported_as_bad_signature(self, webhook_secret, sign_webhook, user_event):
        old = datetime.now(timezone.utc) - timedelta(seconds=400)
        body, headers = sign_webhook(user_event("user.created"), timestamp=old)
        # Local window passes; Svix still applies its own against wall-clock time
        verifier = WebhookVerifier(secret=webhook_secret, clock=lambda: time.time() - 400)

        with pytest.raises(VerificationFailure) as exc_info:
            verifier.verify(body, headers)
        assert exc_info.value.error_code == "invalid_timestamp"

    def test_non_numeric_timestamp_is_rejected(self, verifier, sign_webhook, user_event):
        body, headers = sign_webhook(user_event("user.created"))
        headers["svix-timestamp"] = "yesterday"

        with pytest.raises(VerificationFailure) as exc_info:
            verifier.verify(body, headers)
        assert exc_info.value.error_code == "invalid_timestamp"

    def test_unconfigured_secret(self, sign_webhook, user_event):
        body, headers = sign_webhook(user_event("user.created"))
        verifier = WebhookVerifier(secret=None)

        assert verifier.is_configured is False
        with pytest.raises(VerificationFailure) as exc_info:
            verifier.verify(body, headers)
        assert exc_info.value.error_code == "not_configured"

    def test_from_settings(self, webhook_secret):
        settings = MirrorSettings(clerk_webhook_secret=webhook_secret, webhook_tolerance_seconds=120)
        assert WebhookVerifier.from_settings(settings).is_configured


class TestPayloadParsing:

    def test_deleted_event_uses_envelope_timestamp(self, verifier, sign_webhook, user_event):
        body, headers = sign_webhook(user_event("user.deleted", timestamp=1_700_000_500_000))

        event = verifier.verify(body, headers)

        assert event.kind is EventKind.DELETED
        assert event.revision == 1_700_000_500_000
        assert dict(event.attributes) == {}

    def test_revision_falls_back_to_svix_timestamp(self, verifier, sign_webhook):
        payload = {"type": "user.deleted", "data": {"id": "user_2abc", "deleted": True}}
        body, headers = sign_webhook(payload)

        event = verifier.verify(body, headers)

        assert event.revision == int(headers["svix-timestamp"]) * 1000

    def test_delivery_time_fallback_is_logged(self, verifier, sign_webhook, caplog):
        payload = {"type": "user.deleted", "data": {"id": "user_2abc", "deleted": True}}
        body, headers = sign_webhook(payload)

        with caplog.at_level("WARNING", logger="identity_mirror.webhooks.verifier"):
            verifier.verify(body, headers)

        assert any("delivery time" in r.getMessage() for r in caplog.records)

    def test_event_time_does_not_warn(self, verifier, sign_webhook, user_event, caplog):
        body, headers = sign_webhook(user_event("user.deleted", timestamp=1_700_000_500_000))

        with caplog.at_level("WARNING", logger="identity_mirror.webhooks.verifier"):
            verifier.verify(body, headers)

        assert not any("delivery time" in r.getMessage() for r in caplog.records)

    def test_unsupported_event_type_is_verified_but_unsupported(self, verifier, sign_webhook):
        payload = {"type": "session.created", "data": {"id": "sess_1", "user_id": "user_2abc"}}
        body, headers = sign_webhook(payload)

        event = verifier.verify(body, headers)

        assert event.kind is None
        assert event.is_supported is False
        assert event.event_type == "session.created"

    def test_user_event_without_id_is_malformed(self, verifier, sign_webhook):
        body, headers = sign_webhook({"type": "user.created", "data": {"first_name": "Ada"}})

        with pytest.raises(VerificationFailure) as exc_info:
            verifier.verify(body, headers)
        assert exc_info.value.error_code == "malformed_payload"

    def test_envelope_without_type_is_malformed(self, verifier, sign_webhook):
        body, headers = sign_webhook({"data": {"id": "user_2abc"}})

        with pytest.raises(VerificationFailure) as exc_info:
            verifier.verify(body, headers)
        assert exc_info.value.error_code == "malformed_payload"


class TestClerkUserData:

    def test_primary_email_is_selected_by_id(self):
        data = ClerkUserData(
            id="user_1",
            primary_email_address_id="idn_2",
            email_addresses=[
                {"id": "idn_1", "email_address": "first@example.com"},
                {"id": "idn_2", "email_address": "primary@example.com"},
            ],
        )
        assert data.primary_email() == "primary@example.com"

    def test_primary_email_falls_back_to_first(self):
        data = ClerkUserData(
            id="user_1",
            email_addresses=[{"id": "idn_1", "email_address": "first@example.com"}],
        )
        assert data.primary_email() == "first@example.com"

    def test_no_email(self):
        assert ClerkUserData(id="user_1").primary_email() is None

    def test_profile_image_url_fallback(self):
        data = ClerkUserData(id="user_1", profile_image_url="https://img/legacy.png")
        assert data.mirrored_attributes()["avatar_url"] == "https://img/legacy.png"
