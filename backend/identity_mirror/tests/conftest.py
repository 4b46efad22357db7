"""
Root test configuration and fixtures.

- db_engine / db_session / session_factory: SQLite in-memory, fresh per test
- webhook_secret / sign_webhook / user_event: Svix-signed Clerk deliveries
- rsa_keypair / create_test_token / clerk_verifier: Clerk JWTs with a mocked JWKS
"""

import json
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Generator, Optional, Tuple
from unittest.mock import MagicMock

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from svix.webhooks import Webhook

from identity_mirror.app import create_app
from identity_mirror.auth.clerk_verifier import ClerkJWTVerifier
from identity_mirror.auth.context_resolver import IdentityContext
from identity_mirror.auth.middleware import get_identity_context
from identity_mirror.config.settings import MirrorSettings
from identity_mirror.database.session import get_db_session
from identity_mirror.db_base import Base
from identity_mirror.tests.utils import OPTIONAL_AUTH_PATH, make_engine

os.environ.setdefault("ENV", "test")

TEST_ISSUER = "https://test.clerk.accounts.dev"
TEST_WEBHOOK_SECRET = "whsec_MfKQ9r8GKYqrTwjUPD8ILPZIo2LaLaSw"


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_engine() -> Generator[Engine, None, None]:
    engine = make_engine()
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Webhooks
# =============================================================================


@pytest.fixture
def webhook_secret() -> str:
    return TEST_WEBHOOK_SECRET


@pytest.fixture
def sign_webhook(webhook_secret):
    """Factory returning (raw_body, headers) for a signed delivery."""

    def _sign(
        payload: Dict[str, Any],
        timestamp: Optional[datetime] = None,
        msg_id: Optional[str] = None,
        secret: Optional[str] = None,
    ) -> Tuple[bytes, Dict[str, str]]:
        body = json.dumps(payload)
        msg_id = msg_id or f"msg_{uuid.uuid4().hex}"
        timestamp = timestamp or datetime.now(timezone.utc)
        signature = Webhook(secret or webhook_secret).sign(msg_id, timestamp, body)
        headers = {
            "svix-id": msg_id,
            "svix-timestamp": str(int(timestamp.timestamp())),
            "svix-signature": signature,
            "content-type": "application/json",
        }
        return body.encode("utf-8"), headers

    return _sign


@pytest.fixture
def user_event():
    """Factory for Clerk user.* webhook payloads."""

    def _event(
        event_type: str,
        user_id: str = "user_2abc",
        updated_at: Optional[int] = None,
        first_name: str = "Ada",
        email: str = "ada@example.com",
        public_metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[int] = None,
    ) -> Dict[str, Any]:
        updated_at = updated_at or int(time.time() * 1000)
        if event_type == "user.deleted":
            data = {"id": user_id, "object": "user", "deleted": True}
        else:
            data = {
                "id": user_id,
                "object": "user",
                "first_name": first_name,
                "last_name": "Lovelace",
                "username": "ada",
                "image_url": "https://img.clerk.com/ada.png",
                "primary_email_address_id": "idn_primary",
                "email_addresses": [
                    {"id": "idn_other", "email_address": "other@example.com"},
                    {"id": "idn_primary", "email_address": email},
                ],
                "public_metadata": public_metadata or {},
                "created_at": updated_at,
                "updated_at": updated_at,
            }
        return {
            "type": event_type,
            "object": "event",
            "timestamp": timestamp or updated_at,
            "data": data,
        }

    return _event


# =============================================================================
# Clerk JWTs
# =============================================================================


@pytest.fixture(scope="session")
def rsa_keypair():
    """Generate RSA keypair for testing."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return {
        "private_key": private_key,
        "public_key": private_key.public_key(),
        "private_pem": private_pem,
    }


@pytest.fixture
def clerk_issuer() -> str:
    return TEST_ISSUER


@pytest.fixture
def create_test_token(rsa_keypair, clerk_issuer):
    """Factory to create test JWTs."""

    def _create(claims: Optional[Dict[str, Any]] = None, expired: bool = False, invalid_sig: bool = False) -> str:
        now = int(time.time())
        default_claims = {
            "sub": "user_2abc",
            "iss": clerk_issuer,
            "exp": now - 3600 if expired else now + 3600,
            "iat": now - 7200 if expired else now,
            "sid": "sess_test123",
        }
        token_claims = {**default_claims, **(claims or {})}

        key = rsa_keypair["private_pem"]
        if invalid_sig:
            key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

        return jwt.encode(token_claims, key, algorithm="RS256", headers={"kid": "test-key-1"})

    return _create


@pytest.fixture
def jwks_client(rsa_keypair):
    """JWKS client double that always returns the test public key."""
    client = MagicMock()
    client.get_signing_key_from_jwt.return_value = MagicMock(key=rsa_keypair["public_key"])
    return client


@pytest.fixture
def clerk_verifier(clerk_issuer, jwks_client) -> ClerkJWTVerifier:
    return ClerkJWTVerifier(issuer=clerk_issuer, jwks_client=jwks_client)


# =============================================================================
# Application
# =============================================================================


@pytest.fixture
def make_app(clerk_verifier, session_factory, webhook_secret, clerk_issuer):
    """Factory for a fully wired app backed by the test database."""

    def _make(settings: Optional[MirrorSettings] = None, verifier=None, sessions=None):
        settings = settings or MirrorSettings(
            clerk_webhook_secret=webhook_secret,
            clerk_issuer_url=clerk_issuer,
        )
        sessions = sessions or session_factory
        app = create_app(
            settings=settings,
            verifier=verifier or clerk_verifier,
            session_factory=sessions,
            optional_auth_paths=(OPTIONAL_AUTH_PATH,),
        )

        def override_db():
            session = session_factory()
            try:
                yield session
            finally:
                session.close()

        app.dependency_overrides[get_db_session] = override_db

        @app.get(OPTIONAL_AUTH_PATH)
        async def greeting(identity: IdentityContext = Depends(get_identity_context)):
            return {"authenticated": identity.is_authenticated, "external_id": identity.external_id}

        return app

    return _make


@pytest.fixture
def client(make_app):
    return TestClient(make_app())
