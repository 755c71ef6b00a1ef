"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

Creates the videos table the upload handler and processing worker share.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "videos",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("owner_id", sa.String(36), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("source_object_path", sa.String(1024), nullable=True),
        sa.Column("processing_status", sa.String(20), nullable=False, server_default="uploading"),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "processing_status IN ('uploading', 'processing', 'done', 'failed')",
            name="ck_videos_processing_status",
        ),
    )
    op.create_index("ix_videos_owner_id", "videos", ["owner_id"])
    op.create_index("ix_videos_processing_status", "videos", ["processing_status"])


def downgrade() -> None:
    op.drop_index("ix_videos_processing_status", table_name="videos")
    op.drop_index("ix_videos_owner_id", table_name="videos")
    op.drop_table("videos")
