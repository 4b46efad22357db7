"""
Runtime settings for the identity mirror.

All values come from environment variables. Secrets are never logged;
use `describe()` for a loggable summary.

Environment variables:
    DATABASE_URL: SQLAlchemy URL (postgres:// is normalised to postgresql://)
    CLERK_WEBHOOK_SECRET: Svix signing secret from the Clerk dashboard (whsec_...)
    CLERK_ISSUER_URL: Clerk frontend API URL, the expected JWT issuer
    CLERK_JWKS_URL: Optional JWKS override (default: <issuer>/.well-known/jwks.json)
    CLERK_AUDIENCE: Optional expected JWT audience
    CLERK_AUTHORIZED_PARTIES: Optional comma-separated allow-list for the azp claim
    WEBHOOK_TOLERANCE_SECONDS: Accepted svix-timestamp skew (default and maximum: 300,
        the window Svix itself enforces)
    LOG_LEVEL: Root log level (default: INFO)
    AUTO_CREATE_TABLES: Create tables on startup when "true" (local development)
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

DEFAULT_WEBHOOK_TOLERANCE_SECONDS = 300


def _normalize_database_url(database_url: Optional[str]) -> Optional[str]:
    # Render and Heroku hand out postgres:// which SQLAlchemy no longer accepts
    if database_url and database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def _parse_bool(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in {"1", "true", "yes", "on"}


def _parse_list(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class MirrorSettings:
    """Immutable snapshot of the environment configuration."""

    database_url: Optional[str] = None
    clerk_webhook_secret: Optional[str] = field(default=None, repr=False)
    clerk_issuer_url: Optional[str] = None
    clerk_jwks_url: Optional[str] = None
    clerk_audience: Optional[str] = None
    clerk_authorized_parties: Tuple[str, ...] = ()
    webhook_tolerance_seconds: int = DEFAULT_WEBHOOK_TOLERANCE_SECONDS
    log_level: str = "INFO"
    auto_create_tables: bool = False

    @classmethod
    def from_env(cls) -> "MirrorSettings":
        tolerance = os.getenv("WEBHOOK_TOLERANCE_SECONDS")
        return cls(
            database_url=_normalize_database_url(os.getenv("DATABASE_URL")),
            clerk_webhook_secret=os.getenv("CLERK_WEBHOOK_SECRET") or None,
            clerk_issuer_url=os.getenv("CLERK_ISSUER_URL") or None,
            clerk_jwks_url=os.getenv("CLERK_JWKS_URL") or None,
            clerk_audience=os.getenv("CLERK_AUDIENCE") or None,
            clerk_authorized_parties=_parse_list(os.getenv("CLERK_AUTHORIZED_PARTIES")),
            webhook_tolerance_seconds=(
                int(tolerance) if tolerance else DEFAULT_WEBHOOK_TOLERANCE_SECONDS
            ),
            log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
            auto_create_tables=_parse_bool(os.getenv("AUTO_CREATE_TABLES")),
        )

    @property
    def webhook_configured(self) -> bool:
        return bool(self.clerk_webhook_secret)

    @property
    def auth_configured(self) -> bool:
        return bool(self.clerk_issuer_url)

    def describe(self) -> Dict[str, Any]:
        """Loggable summary (no secrets)."""
        return {
            "database_configured": bool(self.database_url),
            "webhook_configured": self.webhook_configured,
            "auth_configured": self.auth_configured,
            "issuer": self.clerk_issuer_url,
            "webhook_tolerance_seconds": self.webhook_tolerance_seconds,
        }


def get_settings() -> MirrorSettings:
    """Read settings from the current environment."""
    return MirrorSettings.from_env()
