"""
FlashTune - USB Database Mirror

Keeps the volume copy of the library database (``<root>/.musicdb``) in step
with the local working copy:

- attach:  volume → local.  A missing or unreadable volume copy is not an
           error: the local copy is kept when it came from this same
           volume, otherwise it is set aside and the volume starts fresh
- write:   local → volume after every successful write
- detach:  one final local → volume push, then the volume is forgotten

All three run as tasks on the session's write queue, so they are ordered
with respect to every database write.  Syncs always overwrite the whole
file; the last writer wins.
"""

from typing import Any

from loguru import logger

from flashtune.database import LibraryDatabase
from flashtune.exceptions import DatabaseError, StorageError
from flashtune.session import LibrarySession, SyncOutcome, SyncStatus


class UsbMirror:
    def __init__(self, session: LibrarySession, database: LibraryDatabase, provider: Any):
        self.session = session
        self.database = database
        self.provider = provider

    @property
    def is_attached(self) -> bool:
        return self.session.is_attached

    @property
    def volume_root(self) -> str | None:
        return self.session.volume_root if self.session.is_attached else None

    # ------------------------------------------------------------------
    # Attach / detach
    # ------------------------------------------------------------------
    async def attach(self, root_uri: str) -> None:
        """Make *root_uri* the current volume and load its database copy."""

        async def task() -> None:
            session = self.session
            async with session.apply_lock:
                session.transitioning = True
                try:
                    session.volume_root = root_uri
                    await self.database.close()
                    try:
                        await self.provider.copy_database(root_uri, session.local_db_path)
                        logger.success("⬇️  Database copied from volume {}", root_uri)
                    except StorageError as e:
                        if session.working_copy_root == root_uri:
                            logger.info(
                                "ℹ️  No usable database on {} ({}), keeping local copy",
                                root_uri,
                                e,
                            )
                        else:
                            # The working copy belongs to another volume (or is unknown)
                            logger.info(
                                "ℹ️  No usable database on {} ({}), starting fresh", root_uri, e
                            )
                            await self.database.set_aside()
                    try:
                        await self.database.open()
                    except DatabaseError:
                        session.volume_root = None
                        session.working_copy_root = None
                        raise
                    session.working_copy_root = root_uri
                finally:
                    session.transitioning = False
            logger.info("🔌 Volume attached: {}", root_uri)

        await self.session.queue.submit(task)

    async def detach(self) -> SyncOutcome:
        """
        Push the database one last time and forget the volume.

        The push is best-effort: the drive may already be gone, so a failure
        is returned as a warning outcome rather than raised.
        """

        async def task() -> SyncOutcome:
            session = self.session
            root = session.volume_root
            if root is None:
                return SyncOutcome(SyncStatus.SKIPPED)
            session.transitioning = True
            try:
                outcome = await self._push(root)
            finally:
                session.volume_root = None
                session.transitioning = False
            logger.info("⏏️  Volume detached: {}", root)
            return outcome

        return await self.session.queue.submit(task)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------
    async def sync_if_attached(self) -> SyncOutcome:
        """
        Push the database to the current volume, if any.

        Only call this from inside a write-queue task.
        """
        root = self.session.volume_root
        if root is None:
            return SyncOutcome(SyncStatus.SKIPPED)
        return await self._push(root)

    async def sync_now(self) -> SyncOutcome:
        """Queue an explicit sync behind any pending writes."""
        return await self.session.queue.submit(self.sync_if_attached)

    async def _push(self, root: str) -> SyncOutcome:
        try:
            await self.provider.sync_database(self.session.local_db_path, root)
        except StorageError as e:
            logger.warning("⚠️  Failed to sync database to {}: {}", root, e)
            outcome = SyncOutcome(
                SyncStatus.FAILED,
                volume=root,
                message=f"Saved locally, but the USB copy could not be updated: {e.message}",
            )
        else:
            logger.info("⬆️  Database synced to {}", root)
            outcome = SyncOutcome(SyncStatus.SYNCED, volume=root)
        self.session.last_sync = outcome
        return outcome
