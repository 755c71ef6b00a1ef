from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


async def configure_database(db: Database = database):
    """
    Configure database-specific settings after connection.
    SQLite needs foreign keys switched on per connection; PostgreSQL enforces them already.
    """
    if db.url.dialect == "sqlite":
        await db.execute("PRAGMA foreign_keys = ON")


# Only the columns the processing pipeline and upload handler touch.
# The rest of the video record (moderation, visibility, counters) is owned elsewhere.
videos = sa.Table(
    "videos",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),  # asset id (uuid4)
    sa.Column("owner_id", sa.String(36), nullable=False),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("description", sa.Text, nullable=True),
    sa.Column("source_object_path", sa.String(1024), nullable=True),
    sa.Column(
        "processing_status",
        sa.String(20),
        sa.CheckConstraint(
            "processing_status IN ('uploading', 'processing', 'done', 'failed')",
            name="ck_videos_processing_status",
        ),
        nullable=False,
        default="uploading",
    ),
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    sa.Index("ix_videos_owner_id", "owner_id"),
    sa.Index("ix_videos_processing_status", "processing_status"),
)
