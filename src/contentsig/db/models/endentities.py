"""End-entity registry models.

The registry records which end-entity (EE) key each signer currently uses:
- endentities: one row per minted EE, superseded rows are kept
- endentities_lock: one row per signer, locked for the duration of an
  end-entity operations transaction
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Boolean, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from contentsig.db.models.base import (
    Base,
    LongString,
    MediumString,
    OptionalTimestampTZ,
    TimestampTZ,
)


class EndEntity(Base):
    """An end-entity key minted for a signer.

    Rows are never updated except to clear is_current when a newer EE
    supersedes them.
    """

    __tablename__ = "endentities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[TimestampTZ]

    # <signer id>-<UTC timestamp>, also the key-store label of the EE key
    label: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    signer_id: Mapped[MediumString]

    # Public location of the certificate chain for this EE
    x5u: Mapped[LongString]

    # Opaque key-store handle of the EE private key
    hsm_handle: Mapped[str] = mapped_column(String(255), nullable=False)

    is_current: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("ix_endentities_signer_current", "signer_id", "is_current"),)

    def __repr__(self) -> str:
        return f"<EndEntity label={self.label!r} signer_id={self.signer_id!r}>"


class EndEntityLock(Base):
    """Per-signer lock row for end-entity operations.

    Writing to this row at the start of a transaction serializes concurrent
    end-entity operations for the same signer until commit.
    """

    __tablename__ = "endentities_lock"

    signer_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    is_locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    lock_owner: Mapped[str | None] = mapped_column(String(64), nullable=True)
    locked_at: Mapped[TimestampTZ]
    freed_at: Mapped[OptionalTimestampTZ]
