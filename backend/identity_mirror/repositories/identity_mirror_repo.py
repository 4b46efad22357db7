"""
Local User Store: atomic, revision-gated writes to identity_mirrors.

Every mutating method is one INSERT ... ON CONFLICT statement keyed on
external_id. The revision check lives in the statement's WHERE clause, which
makes it a compare-and-swap evaluated under the database's row lock:

    upsert_if_newer     -> insert, or update when stored.revision < new revision
    tombstone_if_newer  -> insert tombstone, or tombstone when stored.revision < new revision
    insert_if_absent    -> insert, or do nothing

Callers own the transaction (commit / rollback). Transient lock errors are
retried here with exponential backoff and surface as StorageConflictError
only once the retry budget is exhausted.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import case, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from identity_mirror.models.identity_mirror import (
    CreatedVia,
    IdentityMirror,
    MIRRORED_ATTRIBUTES,
    MirrorStatus,
    PROVISIONAL_REVISION,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONFLICT_RETRIES = 3
DEFAULT_BASE_DELAY_SECONDS = 0.05
DEFAULT_MAX_DELAY_SECONDS = 1.0

# PostgreSQL serialization_failure / deadlock_detected
_TRANSIENT_PGCODES = frozenset({"40001", "40P01"})
_TRANSIENT_MESSAGES = ("database is locked", "database table is locked", "deadlock", "could not serialize")


class StorageConflictError(Exception):
    """Raised when a concurrent write race could not be resolved by retrying."""

    def __init__(self, message: str, external_id: str, attempts: int):
        super().__init__(message)
        self.message = message
        self.external_id = external_id
        self.attempts = attempts
        self.error_code = "storage_conflict"


class UnsupportedDialectError(Exception):
    """Raised when the bound database has no ON CONFLICT support wired up."""


def _is_transient(error: OperationalError) -> bool:
    pgcode = getattr(error.orig, "pgcode", None)
    if pgcode in _TRANSIENT_PGCODES:
        return True
    message = str(error.orig).lower()
    return any(fragment in message for fragment in _TRANSIENT_MESSAGES)


def _attribute_values(attributes: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Project an attribute mapping onto the mirrored columns (missing -> None)."""
    attributes = attributes or {}
    return {name: attributes.get(name) for name in MIRRORED_ATTRIBUTES}


class IdentityMirrorRepository:
    """
    Store API for identity mirrors.

    Usage:
        repo = IdentityMirrorRepository(session)
        if repo.upsert_if_newer("user_123", {"email": "a@x.com"}, 1700000000000):
            session.commit()
    """

    def __init__(
        self,
        session: Session,
        max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
    ):
        self.session = session
        self.max_conflict_retries = max_conflict_retries
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, external_id: str) -> Optional[IdentityMirror]:
        """
        Get the mirror for an external id, or None.

        populate_existing refreshes any instance already in the identity map,
        since the upsert statements bypass the ORM unit of work.
        """
        stmt = (
            select(IdentityMirror)
            .where(IdentityMirror.external_id == external_id)
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def get_by_local_id(self, local_id: str) -> Optional[IdentityMirror]:
        """Get the mirror by its internal id, tombstones included."""
        stmt = (
            select(IdentityMirror)
            .where(IdentityMirror.id == local_id)
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def external_id_for_local_id(self, local_id: str) -> Optional[str]:
        """Clerk user ID for an internal id, or None if no row has that id."""
        stmt = select(IdentityMirror.external_id).where(IdentityMirror.id == local_id)
        return self.session.execute(stmt).scalar_one_or_none()

    def list_mirrors(
        self,
        status: Optional[MirrorStatus] = MirrorStatus.ACTIVE,
        limit: int = 100,
        offset: int = 0,
    ) -> List[IdentityMirror]:
        """List mirrors ordered by creation time; status=None includes tombstones."""
        stmt = select(IdentityMirror)
        if status is not None:
            stmt = stmt.where(IdentityMirror.status == status.value)
        stmt = stmt.order_by(IdentityMirror.created_at, IdentityMirror.external_id).limit(limit).offset(offset)
        return list(self.session.execute(stmt).scalars())

    # =========================================================================
    # Atomic writes
    # =========================================================================

    def upsert_if_newer(
        self,
        external_id: str,
        attributes: Optional[Mapping[str, Any]],
        revision: int,
        created_via: CreatedVia = CreatedVia.WEBHOOK,
        reactivate: bool = True,
    ) -> bool:
        """
        Insert the mirror, or overwrite it if revision is strictly newer.

        Args:
            external_id: Clerk user ID
            attributes: Authoritative attributes; replaces all mirrored columns
            revision: Revision carried by the write
            created_via: Provenance recorded only when the row is inserted
            reactivate: If False, a tombstoned row keeps its status and scrubbed
                attributes (only the revision advances)

        Returns:
            True if a row was inserted or updated, False for a stale write
        """
        table = IdentityMirror.__table__
        now = datetime.now(timezone.utc)
        insert = self._insert_construct()

        stmt = insert(table).values(
            external_id=external_id,
            revision=revision,
            status=MirrorStatus.ACTIVE.value,
            created_via=created_via.value,
            last_synced_at=now,
            **_attribute_values(attributes),
        )
        excluded = stmt.excluded

        is_tombstone = table.c.status == MirrorStatus.DELETED.value
        updates: Dict[str, Any] = {}
        for name in MIRRORED_ATTRIBUTES:
            if reactivate:
                updates[name] = excluded[name]
            else:
                updates[name] = case((is_tombstone, table.c[name]), else_=excluded[name])
        updates["status"] = excluded.status if reactivate else table.c.status
        # created_via is never updated: it records the first appearance
        updates["revision"] = excluded.revision
        updates["last_synced_at"] = excluded.last_synced_at
        updates["updated_at"] = func.now()

        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.external_id],
            set_=updates,
            where=table.c.revision < excluded.revision,
        ).returning(table.c.id)

        return self._execute_atomic(stmt, "upsert_if_newer", external_id)

    def tombstone_if_newer(self, external_id: str, revision: int) -> bool:
        """
        Tombstone the mirror if revision is strictly newer.

        Unknown identities get a tombstone row so a delayed, older creation
        event cannot bring them back. Mirrored attributes are scrubbed.

        Returns:
            True if a row was inserted or tombstoned, False for a stale delete
        """
        table = IdentityMirror.__table__
        now = datetime.now(timezone.utc)
        insert = self._insert_construct()

        stmt = insert(table).values(
            external_id=external_id,
            revision=revision,
            status=MirrorStatus.DELETED.value,
            created_via=CreatedVia.WEBHOOK.value,
            last_synced_at=now,
            **_attribute_values(None),
        )
        excluded = stmt.excluded

        updates: Dict[str, Any] = {name: None for name in MIRRORED_ATTRIBUTES}
        updates["status"] = MirrorStatus.DELETED.value
        updates["revision"] = excluded.revision
        updates["last_synced_at"] = excluded.last_synced_at
        updates["updated_at"] = func.now()

        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.external_id],
            set_=updates,
            where=table.c.revision < excluded.revision,
        ).returning(table.c.id)

        return self._execute_atomic(stmt, "tombstone_if_newer", external_id)

    def insert_if_absent(
        self,
        external_id: str,
        minimal_attributes: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Insert a provisional on-demand mirror unless any row already exists.

        Concurrent callers race down to a single row; losers are a no-op,
        never an IntegrityError.

        Returns:
            True if this call inserted the row
        """
        table = IdentityMirror.__table__
        insert = self._insert_construct()

        stmt = (
            insert(table)
            .values(
                external_id=external_id,
                revision=PROVISIONAL_REVISION,
                status=MirrorStatus.ACTIVE.value,
                created_via=CreatedVia.ON_DEMAND.value,
                last_synced_at=datetime.now(timezone.utc),
                **_attribute_values(minimal_attributes),
            )
            .on_conflict_do_nothing(index_elements=[table.c.external_id])
            .returning(table.c.id)
        )

        return self._execute_atomic(stmt, "insert_if_absent", external_id)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _insert_construct(self):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert
        if dialect == "sqlite":
            return sqlite.insert
        raise UnsupportedDialectError(f"ON CONFLICT writes are not supported on {dialect}")

    def _calculate_backoff_delay(self, attempt: int) -> float:
        delay = self.base_delay_seconds * (2 ** attempt)
        return min(delay, self.max_delay_seconds)

    def _execute_atomic(self, stmt, operation: str, external_id: str) -> bool:
        """
        Execute one atomic write, retrying transient lock conflicts.

        The statement is the whole unit of work, so rolling back and
        re-running it is safe.
        """
        attempt = 0
        while True:
            try:
                return self.session.execute(stmt).first() is not None
            except OperationalError as e:
                if not _is_transient(e):
                    raise
                self.session.rollback()
                if attempt >= self.max_conflict_retries:
                    logger.error(
                        "Storage conflict not resolved after retries",
                        extra={
                            "operation": operation,
                            "external_id": external_id,
                            "attempts": attempt + 1,
                        },
                    )
                    raise StorageConflictError(
                        f"{operation} conflicted {attempt + 1} times for {external_id}",
                        external_id=external_id,
                        attempts=attempt + 1,
                    ) from e

                delay = self._calculate_backoff_delay(attempt)
                logger.warning(
                    "Storage conflict, retrying",
                    extra={
                        "operation": operation,
                        "external_id": external_id,
                        "attempt": attempt + 1,
                        "delay_seconds": delay,
                    },
                )
                time.sleep(delay)
                attempt += 1
