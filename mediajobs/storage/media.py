import aiosqlite
import structlog
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from mediajobs.errors import MediaNotFoundError

logger = structlog.get_logger()

# Result columns a worker may write, keyed by the record attribute name
_RESULT_COLUMNS = {
    "duration_seconds": "duration_seconds",
    "thumbnail_url": "thumbnail_url",
    "transcript_url": "transcript_url",
}


@dataclass
class MediaRecord:
    """The fields of a media file the pipeline reads or writes."""
    id: str
    owner_id: str
    storage_url: Optional[str] = None
    duration_seconds: Optional[int] = None
    thumbnail_url: Optional[str] = None
    transcript_url: Optional[str] = None


class MediaStore:
    """Persistent media records in a SQLite database."""

    def __init__(self, db_path: str) -> None:
        """Initialize media store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        logger.info("media_store_initialized", db_path=self.db_path, source="media_store")

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS media_files (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    storage_url TEXT,
                    duration_seconds INTEGER,
                    thumbnail_url TEXT,
                    transcript_url TEXT,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_media_files_owner
                ON media_files(owner_id)
            """)

            await db.commit()

        logger.info("media_database_initialized", source="media_store")

    async def upsert_media(
        self, media_id: str, owner_id: str, storage_url: Optional[str]
    ) -> None:
        """Register a media file, as the upload flow does.

        Args:
            media_id: Media file ID
            owner_id: User who uploaded the file
            storage_url: Private reference ('private:<fileId>:/<name>') or public URL
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO media_files (id, owner_id, storage_url, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    owner_id = excluded.owner_id,
                    storage_url = excluded.storage_url,
                    updated_at = excluded.updated_at
                """,
                (media_id, owner_id, storage_url, _now()),
            )
            await db.commit()

        logger.info("media_upserted", media_id=media_id, source="media_store")

    async def get_media(self, media_id: str) -> Optional[MediaRecord]:
        """Get a media record.

        Returns:
            MediaRecord or None if the media file does not exist
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """
                SELECT id, owner_id, storage_url, duration_seconds,
                       thumbnail_url, transcript_url
                FROM media_files
                WHERE id = ?
                """,
                (media_id,),
            ) as cursor:
                row = await cursor.fetchone()
                if row:
                    return MediaRecord(**dict(row))

        return None

    async def update_result(self, media_id: str, field: str, value) -> None:
        """Overwrite one result field of a media record.

        Args:
            media_id: Media file ID
            field: One of duration_seconds, thumbnail_url, transcript_url
            value: New value; replaces any previous one

        Raises:
            ValueError: If field is not a result field
            MediaNotFoundError: If the media file does not exist
        """
        column = _RESULT_COLUMNS.get(field)
        if column is None:
            raise ValueError(f"Not a writable result field: {field}")

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                UPDATE media_files
                SET {column} = ?, updated_at = ?
                WHERE id = ?
                """,
                (value, _now(), media_id),
            )
            await db.commit()
            updated = cursor.rowcount

        if not updated:
            raise MediaNotFoundError(f"Media file not found: {media_id}")

        logger.info(
            "media_result_updated",
            media_id=media_id,
            field=field,
            source="media_store",
        )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
