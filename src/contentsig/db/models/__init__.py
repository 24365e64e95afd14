"""SQLAlchemy ORM models.

- base: Common metadata and type definitions
- endentities: End-entity registry and per-signer lock
"""

from contentsig.db.models.base import Base, metadata
from contentsig.db.models.endentities import EndEntity, EndEntityLock

__all__ = [
    "Base",
    "EndEntity",
    "EndEntityLock",
    "metadata",
]
