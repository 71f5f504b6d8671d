from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Catalog of videos hosted by the third-party video host.
# The media itself never lives here; only the remote codes and display metadata.
videos = sa.Table(
    "videos",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("file_code", sa.String(255), unique=True, nullable=False),  # remote asset id
    sa.Column("embed_code", sa.String(255), nullable=False),  # suffix of the embed URL
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("thumbnail", sa.Text, nullable=False),  # CDN URL or host thumbnail URL
    sa.Column("duration", sa.String(16), nullable=False, default="0:00"),  # m:ss or h:mm:ss
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('processing', 'active', 'failed')",
            name="ck_videos_status"
        ),
        nullable=False,
        default="processing"
    ),
    sa.Column("views", sa.Integer, nullable=False, default=0),
    sa.Column("upload_date", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow),
    sa.Index("ix_videos_upload_date", "upload_date"),
)


async def configure_database():
    """
    Configure database-specific settings after connection.

    SQLite needs WAL mode so the health check and request handlers don't
    block each other. PostgreSQL needs nothing.
    """
    if database.url.dialect == "sqlite":
        await database.execute("PRAGMA journal_mode=WAL")


def create_tables():
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(DATABASE_URL)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created successfully!")
