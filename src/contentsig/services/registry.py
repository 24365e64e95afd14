"""End-entity registry.

Records which end-entity (EE) key each signer uses, so that restarts and
sibling instances reuse a published EE instead of minting a new one.

All reads and writes for a signer happen inside an end-entity operations
transaction. The transaction starts by upserting the signer's row in
endentities_lock, which holds a write lock on that row until commit; a
second transaction for the same signer blocks on that upsert until the
first one commits or rolls back, then sees its EE.

Example:
    registry = EndEntityRegistry(session_factory)
    with registry.end_entity_operations("remote-settings") as tx:
        lookup = tx.find_suitable_end_entity(max_age=timedelta(days=30))
        if not lookup.found:
            tx.insert_end_entity(x5u, label, "remote-settings", handle)
        tx.end()
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from contentsig.db import create_db_engine, create_session_factory
from contentsig.db.models import EndEntity, EndEntityLock
from contentsig.db.models.base import utcnow

if TYPE_CHECKING:
    from collections.abc import Iterator
    from datetime import datetime, timedelta

    from sqlalchemy.orm import Session, sessionmaker

    from contentsig.core.config import DatabaseSettings

logger = logging.getLogger(__name__)

# Dialect-specific INSERT constructs supporting ON CONFLICT DO UPDATE
_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class RegistryError(Exception):
    """Raised when a registry operation fails.

    Attributes:
        operation: The registry operation that failed.
        signer_id: The signer the operation was for.
    """

    def __init__(self, message: str, *, operation: str, signer_id: str) -> None:
        self.operation = operation
        self.signer_id = signer_id
        super().__init__(message)


class LookupStatus(str, Enum):
    """Outcome of a suitable end-entity lookup."""

    FOUND = "found"
    NOT_FOUND = "not_found"


@dataclass(frozen=True, slots=True)
class EndEntityLookup:
    """Result of looking up a suitable end-entity.

    Attributes:
        status: Whether a suitable record exists.
        record: The record when found, None otherwise.
    """

    status: LookupStatus
    record: EndEntity | None = None

    @property
    def found(self) -> bool:
        return self.status is LookupStatus.FOUND


class EndEntityTransaction:
    """End-entity operations for one signer inside a single transaction.

    Obtained from EndEntityRegistry.end_entity_operations(); the registry
    acquires the lock before handing it out and always closes it.
    """

    def __init__(self, session: Session, signer_id: str) -> None:
        self._session = session
        self._signer_id = signer_id
        self._owner = uuid.uuid4().hex
        self._ended = False

    @property
    def signer_id(self) -> str:
        return self._signer_id

    @property
    def ended(self) -> bool:
        return self._ended

    def acquire(self) -> None:
        """Upsert the signer's lock row, blocking while another transaction holds it.

        Raises:
            RegistryError: If the lock row cannot be written.
        """
        dialect = self._session.get_bind().dialect.name
        insert = _UPSERT_INSERTS.get(dialect)
        if insert is None:
            msg = f"registry: unsupported database dialect {dialect!r}"
            raise RegistryError(msg, operation="acquire", signer_id=self._signer_id)

        now = utcnow()
        stmt = insert(EndEntityLock).values(
            signer_id=self._signer_id,
            is_locked=True,
            lock_owner=self._owner,
            locked_at=now,
            freed_at=None,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[EndEntityLock.signer_id],
            set_={
                "is_locked": True,
                "lock_owner": self._owner,
                "locked_at": now,
                "freed_at": None,
            },
        )
        try:
            self._session.execute(stmt)
        except SQLAlchemyError as exc:
            msg = f"registry: failed to lock end-entity operations for {self._signer_id!r}: {exc}"
            raise RegistryError(msg, operation="acquire", signer_id=self._signer_id) from exc
        logger.debug("Acquired end-entity lock for %s (owner=%s)", self._signer_id, self._owner)

    def find_suitable_end_entity(
        self,
        max_age: timedelta,
        *,
        now: datetime | None = None,
    ) -> EndEntityLookup:
        """Find the newest current end-entity younger than max_age.

        Args:
            max_age: Records created earlier than now - max_age are unsuitable.
            now: Reference time, defaults to the current UTC time.

        Returns:
            EndEntityLookup, NOT_FOUND when no record qualifies.

        Raises:
            RegistryError: If the query fails.
        """
        cutoff = (now or utcnow()) - max_age
        query = (
            select(EndEntity)
            .where(
                EndEntity.signer_id == self._signer_id,
                EndEntity.is_current.is_(True),
                EndEntity.created_at > cutoff,
            )
            .order_by(EndEntity.created_at.desc(), EndEntity.id.desc())
            .limit(1)
        )
        try:
            record = self._session.scalars(query).first()
        except SQLAlchemyError as exc:
            msg = f"registry: failed to look up end-entity for {self._signer_id!r}: {exc}"
            raise RegistryError(msg, operation="find", signer_id=self._signer_id) from exc

        if record is None:
            return EndEntityLookup(status=LookupStatus.NOT_FOUND)
        return EndEntityLookup(status=LookupStatus.FOUND, record=record)

    def insert_end_entity(
        self,
        x5u: str,
        label: str,
        signer_id: str,
        hsm_handle: str,
    ) -> EndEntity:
        """Record a new end-entity and supersede the signer's earlier ones.

        Raises:
            RegistryError: If the insert fails.
        """
        record = EndEntity(
            created_at=utcnow(),
            label=label,
            signer_id=signer_id,
            x5u=x5u,
            hsm_handle=hsm_handle,
            is_current=True,
        )
        try:
            self._session.execute(
                update(EndEntity)
                .where(EndEntity.signer_id == signer_id, EndEntity.is_current.is_(True))
                .values(is_current=False)
            )
            self._session.add(record)
            self._session.flush()
        except SQLAlchemyError as exc:
            msg = f"registry: failed to insert end-entity {label!r}: {exc}"
            raise RegistryError(msg, operation="insert", signer_id=self._signer_id) from exc

        logger.info("Recorded end-entity %s for signer %s", label, signer_id)
        return record

    def end(self) -> None:
        """Release the lock and commit the transaction.

        Raises:
            RegistryError: If the transaction cannot be committed.
        """
        if self._ended:
            return
        try:
            self._session.execute(
                update(EndEntityLock)
                .where(EndEntityLock.signer_id == self._signer_id)
                .values(is_locked=False, freed_at=utcnow())
            )
            self._session.commit()
        except SQLAlchemyError as exc:
            msg = f"registry: failed to commit end-entity operations for {self._signer_id!r}: {exc}"
            raise RegistryError(msg, operation="end", signer_id=self._signer_id) from exc
        self._ended = True
        logger.debug("Released end-entity lock for %s", self._signer_id)

    def rollback(self) -> None:
        """Discard everything done in the transaction, including the lock."""
        if self._ended:
            return
        self._session.rollback()
        self._ended = True
        logger.debug("Rolled back end-entity operations for %s", self._signer_id)


class EndEntityRegistry:
    """Transactional store of end-entity records, keyed by signer id."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> EndEntityRegistry:
        """Create a registry from DatabaseSettings configuration."""
        return cls(create_session_factory(create_db_engine(settings)))

    @contextmanager
    def end_entity_operations(self, signer_id: str) -> Iterator[EndEntityTransaction]:
        """Open an end-entity operations transaction for a signer.

        The lock is acquired before the transaction is yielded. Leaving the
        block normally commits it if the caller has not called end() already;
        leaving it with an exception rolls it back. The session is closed on
        every path.

        Raises:
            RegistryError: If the lock cannot be acquired or the commit fails.
        """
        session = self._session_factory()
        tx = EndEntityTransaction(session, signer_id)
        try:
            tx.acquire()
            yield tx
            tx.end()
        except BaseException:
            tx.rollback()
            raise
        finally:
            session.close()
