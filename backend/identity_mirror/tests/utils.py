"""Shared test helpers."""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from identity_mirror.db_base import Base
import identity_mirror.models  # noqa: F401 - register model metadata

# Route where the auth middleware attaches an identity if present but never rejects
OPTIONAL_AUTH_PATH = "/api/public/greeting"


def make_engine(url: str = "sqlite:///:memory:") -> Engine:
    """SQLite engine with the identity mirror schema created."""
    if url == "sqlite:///:memory:":
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        # File databases are shared between threads; wait on the write lock
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 15})
    Base.metadata.create_all(bind=engine)
    return engine
