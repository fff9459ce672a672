"""Create versions and heads tables

Revision ID: 001
Revises: None
Create Date: 2026-10-18 00:00:00.000000+00:00

What:  Creates the two tables of the version store.
How:   Portable column types only (String, JSON, TIMESTAMP), so the same
       migration runs on SQLite and PostgreSQL.

Rollback: downgrade() drops both tables; every stored revision is lost.
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create `versions`, its indexes, then `heads` which references it."""
    op.create_table(
        "versions",
        sa.Column(
            "version",
            sa.String(64),
            nullable=False,
            comment="Opaque revision id, never reused",
        ),
        sa.Column(
            "key",
            sa.String(64),
            nullable=False,
            comment="Logical record id shared by all revisions of a record",
        ),
        sa.Column("value", sa.JSON(), nullable=False, comment="Revision document"),
        sa.Column(
            "links",
            sa.JSON(),
            nullable=False,
            comment="Parent versions this revision supersedes",
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
            comment="Local insertion time (UTC)",
        ),
        sa.PrimaryKeyConstraint("version"),
    )
    op.create_index("idx_versions_key", "versions", ["key"])
    op.create_index("idx_versions_created_at", "versions", ["created_at"])

    op.create_table(
        "heads",
        sa.Column("key", sa.String(64), nullable=False),
        sa.Column("version", sa.String(64), nullable=False),
        sa.ForeignKeyConstraint(["version"], ["versions.version"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("key", "version"),
    )


def downgrade() -> None:
    op.drop_table("heads")
    op.drop_index("idx_versions_created_at", table_name="versions")
    op.drop_index("idx_versions_key", table_name="versions")
    op.drop_table("versions")
