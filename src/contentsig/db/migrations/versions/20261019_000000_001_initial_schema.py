"""Initial schema: end-entity registry.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00

Creates:
- endentities: end-entity keys minted per signer
- endentities_lock: per-signer lock rows for end-entity operations
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Apply migration: Create end-entity registry tables."""
    op.create_table(
        "endentities",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        # <signer id>-<UTC timestamp>
        sa.Column("label", sa.String(255), nullable=False),
        sa.Column("signer_id", sa.String(255), nullable=False),
        sa.Column("x5u", sa.String(1000), nullable=False),
        sa.Column("hsm_handle", sa.String(255), nullable=False),
        sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_endentities")),
        sa.UniqueConstraint("label", name=op.f("uq_endentities_label")),
    )
    op.create_index(
        "ix_endentities_signer_current",
        "endentities",
        ["signer_id", "is_current"],
        unique=False,
    )

    op.create_table(
        "endentities_lock",
        sa.Column("signer_id", sa.String(255), nullable=False),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("lock_owner", sa.String(64), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("freed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("signer_id", name=op.f("pk_endentities_lock")),
    )


def downgrade() -> None:
    """Revert migration: Drop end-entity registry tables."""
    op.drop_table("endentities_lock")
    op.drop_index("ix_endentities_signer_current", table_name="endentities")
    op.drop_table("endentities")
