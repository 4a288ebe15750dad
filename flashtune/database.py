"""
FlashTune - Library Database

Embedded SQLite database (via aiosqlite) holding songs, playlists and
playlist membership.  The file lives in the local cache directory; the copy
on the USB volume (``.musicdb``) is kept in step by ``flashtune.mirror``.

Every write goes through the session's write queue and, inside the same
queued task, is followed by a mirror sync.  A failed sync never rolls back
the local write; it comes back as ``WriteOutcome.warning`` instead.
"""

import asyncio
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import aiosqlite
from loguru import logger

from flashtune.exceptions import DatabaseError, LibraryNotReadyError
from flashtune.session import LibrarySession, SyncOutcome, SyncStatus, WriteOutcome

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS songs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    artist TEXT NOT NULL,
    album TEXT NOT NULL DEFAULT '',
    cover_path TEXT NOT NULL DEFAULT '',
    source_url TEXT NOT NULL UNIQUE,
    filename TEXT NOT NULL,
    download_date TEXT NOT NULL,
    duration_ms INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS playlists (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS playlist_songs (
    playlist_id INTEGER NOT NULL REFERENCES playlists(id) ON DELETE CASCADE,
    song_id INTEGER NOT NULL REFERENCES songs(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    PRIMARY KEY (playlist_id, song_id)
);

CREATE INDEX IF NOT EXISTS idx_songs_source_url ON songs(source_url);
CREATE INDEX IF NOT EXISTS idx_playlist_songs_position
    ON playlist_songs(playlist_id, position);
"""

# ---------------------------------------------------------------------------
# Migration helpers
# ---------------------------------------------------------------------------
# Volumes written by older app versions may lack these columns.
_MIGRATIONS = [
    {
        "check": "SELECT COUNT(*) FROM pragma_table_info('songs') WHERE name='cover_path'",
        "apply": [
            "ALTER TABLE songs ADD COLUMN cover_path TEXT NOT NULL DEFAULT ''",
        ],
        "description": "Add cover_path column",
    },
    {
        "check": "SELECT COUNT(*) FROM pragma_table_info('songs') WHERE name='duration_ms'",
        "apply": [
            "ALTER TABLE songs ADD COLUMN duration_ms INTEGER NOT NULL DEFAULT 0",
        ],
        "description": "Add duration_ms column",
    },
]

SONG_FIELDS = (
    "title",
    "artist",
    "album",
    "cover_path",
    "source_url",
    "filename",
    "download_date",
    "duration_ms",
)

# Columns a metadata edit may touch
UPDATABLE_SONG_FIELDS = {"title", "artist", "album", "cover_path", "filename", "duration_ms"}


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def row_to_dict(row) -> Dict[str, Any]:
    """Convert a database row to a plain dictionary."""
    if row is None:
        return {}
    return dict(row)


async def _run_migrations(db: aiosqlite.Connection) -> None:
    """Run any pending schema migrations."""
    for migration in _MIGRATIONS:
        cursor = await db.execute(str(migration["check"]))
        (count,) = await cursor.fetchone()
        if count == 0:
            logger.info("🔄 Running migration: {}", migration["description"])
            for stmt in migration["apply"]:
                await db.execute(stmt)
            await db.commit()
            logger.success("✅ Migration applied: {}", migration["description"])


class LibraryDatabase:
    """Songs / playlists store bound to a ``LibrarySession``."""

    def __init__(
        self,
        session: LibrarySession,
        after_write: Optional[Callable[[], Awaitable[SyncOutcome]]] = None,
    ):
        self.session = session
        # Set by the library to the mirror's sync-if-attached step
        self.after_write = after_write

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    @property
    def is_open(self) -> bool:
        return self.session.connection is not None

    async def open(self) -> None:
        """Open the working copy, creating tables and running migrations."""
        if self.session.connection is not None:
            return
        path = self.session.local_db_path
        path.parent.mkdir(parents=True, exist_ok=True)
        db: Optional[aiosqlite.Connection] = None
        try:
            db = await aiosqlite.connect(str(path))
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            # The file is copied to the volume as-is, so no WAL side files
            await db.execute("PRAGMA journal_mode = DELETE")
            await db.executescript(SCHEMA_SQL)
            await db.commit()
            await _run_migrations(db)
        except Exception as e:
            if db is not None:
                await db.close()
            logger.critical("❌ Failed to open database {}: {}", path, e)
            raise DatabaseError(f"Failed to open database {path}: {e}", {"path": str(path)}) from e

        self.session.connection = db
        logger.success("✅ Database opened at {}", path)

    async def close(self) -> None:
        db = self.session.connection
        if db is None:
            return
        self.session.connection = None
        await db.close()
        logger.debug("🔒 Database closed")

    async def set_aside(self) -> Optional[Path]:
        """
        Move the closed working copy to ``<name>.previous`` so the next
        ``open()`` starts from an empty schema.  Returns the new path, or
        None when there was no working copy.
        """
        if self.session.connection is not None:
            raise DatabaseError("Cannot set aside an open database")
        path = self.session.local_db_path
        if not path.exists():
            return None
        previous = path.with_name(path.name + ".previous")
        await asyncio.to_thread(os.replace, path, previous)
        logger.info("📦 Previous working copy moved to {}", previous)
        return previous

    def _conn(self) -> aiosqlite.Connection:
        if self.session.connection is None:
            raise LibraryNotReadyError("Library database is not open")
        return self.session.connection

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------
    async def _write(self, apply: Callable[[aiosqlite.Connection], Awaitable[Any]]) -> WriteOutcome:
        """Queue *apply*, commit it, then sync the mirror in the same task."""

        async def task() -> WriteOutcome:
            async with self.session.apply_lock:
                db = self._conn()
                try:
                    value = await apply(db)
                    await db.commit()
                except Exception:
                    await db.rollback()
                    raise
            mirror = SyncOutcome(SyncStatus.SKIPPED)
            if self.after_write is not None:
                mirror = await self.after_write()
            return WriteOutcome(value, mirror)

        return await self.session.queue.submit(task)

    async def insert_song(
        self,
        title: str,
        artist: str,
        source_url: str,
        filename: str,
        album: str = "",
        cover_path: str = "",
        duration_ms: int = 0,
        download_date: Optional[str] = None,
    ) -> WriteOutcome:
        """Insert a song; a duplicate source_url is silently ignored (value None)."""
        values = (
            title,
            artist,
            album or "",
            cover_path or "",
            source_url,
            filename,
            download_date or now_iso(),
            int(duration_ms or 0),
        )

        async def apply(db: aiosqlite.Connection) -> Optional[int]:
            cursor = await db.execute(
                f"""
                INSERT OR IGNORE INTO songs ({", ".join(SONG_FIELDS)})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                values,
            )
            if cursor.rowcount == 0:
                logger.info("ℹ️  Song already in library, insert ignored: {}", source_url)
                return None
            logger.success("✅ Song added (id={}): {} - {}", cursor.lastrowid, artist, title)
            return cursor.lastrowid

        return await self._write(apply)

    async def update_song(self, song_id: int, **fields) -> WriteOutcome:
        """Update metadata columns of a song.  Unknown or empty fields are a no-op."""
        filtered = {k: v for k, v in fields.items() if k in UPDATABLE_SONG_FIELDS}
        if not filtered:
            return WriteOutcome(False)

        set_clause = ", ".join(f"{k} = ?" for k in filtered)
        values = list(filtered.values()) + [song_id]

        async def apply(db: aiosqlite.Connection) -> bool:
            cursor = await db.execute(f"UPDATE songs SET {set_clause} WHERE id = ?", values)
            updated = cursor.rowcount > 0
            if updated:
                logger.info("✏️ Song id={} updated: {}", song_id, list(filtered.keys()))
            return updated

        return await self._write(apply)

    async def delete_song(self, song_id: int) -> WriteOutcome:
        """Delete a song and its playlist memberships."""

        async def apply(db: aiosqlite.Connection) -> bool:
            await db.execute("DELETE FROM playlist_songs WHERE song_id = ?", (song_id,))
            cursor = await db.execute("DELETE FROM songs WHERE id = ?", (song_id,))
            deleted = cursor.rowcount > 0
            if deleted:
                logger.info("🗑️ Song id={} deleted", song_id)
            return deleted

        return await self._write(apply)

    async def create_playlist(self, name: str) -> WriteOutcome:
        created_at = now_iso()

        async def apply(db: aiosqlite.Connection) -> int:
            cursor = await db.execute(
                "INSERT INTO playlists (name, created_at) VALUES (?, ?)",
                (name, created_at),
            )
            logger.info("📃 Playlist created (id={}): {}", cursor.lastrowid, name)
            return cursor.lastrowid

        return await self._write(apply)

    async def delete_playlist(self, playlist_id: int) -> WriteOutcome:
        async def apply(db: aiosqlite.Connection) -> bool:
            await db.execute("DELETE FROM playlist_songs WHERE playlist_id = ?", (playlist_id,))
            cursor = await db.execute("DELETE FROM playlists WHERE id = ?", (playlist_id,))
            deleted = cursor.rowcount > 0
            if deleted:
                logger.info("🗑️ Playlist id={} deleted", playlist_id)
            return deleted

        return await self._write(apply)

    async def add_song_to_playlist(self, playlist_id: int, song_id: int) -> WriteOutcome:
        """Append a song to a playlist.  Adding an existing member is a no-op."""

        async def apply(db: aiosqlite.Connection) -> bool:
            cursor = await db.execute(
                "SELECT 1 FROM playlist_songs WHERE playlist_id = ? AND song_id = ?",
                (playlist_id, song_id),
            )
            if await cursor.fetchone():
                return False
            await db.execute(
                """
                INSERT INTO playlist_songs (playlist_id, song_id, position)
                SELECT ?, ?, COALESCE(MAX(position), 0) + 1
                FROM playlist_songs WHERE playlist_id = ?
                """,
                (playlist_id, song_id, playlist_id),
            )
            return True

        return await self._write(apply)

    async def remove_song_from_playlist(self, playlist_id: int, song_id: int) -> WriteOutcome:
        async def apply(db: aiosqlite.Connection) -> bool:
            cursor = await db.execute(
                "DELETE FROM playlist_songs WHERE playlist_id = ? AND song_id = ?",
                (playlist_id, song_id),
            )
            return cursor.rowcount > 0

        return await self._write(apply)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def _fetch_all(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        async with self.session.apply_lock:
            cursor = await self._conn().execute(sql, params)
            rows = await cursor.fetchall()
        return [row_to_dict(r) for r in rows]

    async def _fetch_one(self, sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        async with self.session.apply_lock:
            cursor = await self._conn().execute(sql, params)
            row = await cursor.fetchone()
        return row_to_dict(row) if row else None

    async def get_all_songs(self) -> List[Dict[str, Any]]:
        """All songs, most recently downloaded first."""
        return await self._fetch_all("SELECT * FROM songs ORDER BY download_date DESC, id DESC")

    async def get_song(self, song_id: int) -> Optional[Dict[str, Any]]:
        return await self._fetch_one("SELECT * FROM songs WHERE id = ?", (song_id,))

    async def song_exists_by_url(self, source_url: str) -> bool:
        row = await self._fetch_one("SELECT id FROM songs WHERE source_url = ?", (source_url,))
        return row is not None

    async def count_songs(self) -> int:
        row = await self._fetch_one("SELECT COUNT(*) AS total FROM songs")
        return int(row["total"]) if row else 0

    async def get_all_playlists(self) -> List[Dict[str, Any]]:
        """All playlists with their song counts, newest first."""
        return await self._fetch_all(
            """
            SELECT p.*, COUNT(ps.song_id) AS song_count
            FROM playlists p
            LEFT JOIN playlist_songs ps ON ps.playlist_id = p.id
            GROUP BY p.id
            ORDER BY p.created_at DESC, p.id DESC
            """
        )

    async def get_playlist(self, playlist_id: int) -> Optional[Dict[str, Any]]:
        return await self._fetch_one("SELECT * FROM playlists WHERE id = ?", (playlist_id,))

    async def get_playlist_songs(self, playlist_id: int) -> List[Dict[str, Any]]:
        """Songs of a playlist in position order."""
        return await self._fetch_all(
            """
            SELECT s.*, ps.position
            FROM playlist_songs ps
            JOIN songs s ON s.id = ps.song_id
            WHERE ps.playlist_id = ?
            ORDER BY ps.position ASC
            """,
            (playlist_id,),
        )

    async def get_playlist_ids_for_song(self, song_id: int) -> Set[int]:
        rows = await self._fetch_all(
            "SELECT playlist_id FROM playlist_songs WHERE song_id = ?", (song_id,)
        )
        return {r["playlist_id"] for r in rows}
