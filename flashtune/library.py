"""
FlashTune - Library

Wires the session, the database, the USB mirror and the storage provider
together.  One ``Library`` lives on ``app.state.library`` for the lifetime
of the service.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from flashtune.config import MUSIC_DIR_NAME
from flashtune.database import LibraryDatabase
from flashtune.exceptions import StorageError
from flashtune.mirror import UsbMirror
from flashtune.resolver import join_uri
from flashtune.session import LibrarySession, SyncOutcome, SyncStatus
from flashtune.storage import VolumeStorage


class Library:
    def __init__(self, provider: VolumeStorage, local_db_path: Path):
        self.provider = provider
        self.session = LibrarySession(local_db_path)
        self.db = LibraryDatabase(self.session)
        self.mirror = UsbMirror(self.session, self.db, provider)
        self.db.after_write = self.mirror.sync_if_attached

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self, reattach: bool = True) -> None:
        """Open the local database and re-attach a still-mounted granted volume."""
        await self.db.open()
        root = self.provider.active_root if reattach else None
        if root:
            logger.info("🔁 Re-attaching previously granted volume {}", root)
            await self.mirror.attach(root)

    async def shutdown(self) -> SyncOutcome:
        outcome = SyncOutcome(SyncStatus.SKIPPED)
        if self.session.volume_root is not None:
            outcome = await self.mirror.detach()
        await self.session.queue.close()
        await self.db.close()
        return outcome

    # ------------------------------------------------------------------
    # Volume
    # ------------------------------------------------------------------
    @property
    def volume_root(self) -> Optional[str]:
        return self.mirror.volume_root

    def require_volume(self) -> str:
        root = self.mirror.volume_root
        if root is None:
            raise StorageError("E_NO_VOLUME", "No USB volume is attached")
        return root

    async def connect(self, volume_path: Optional[str] = None) -> str:
        """Grant (or reuse the grant for) a volume and attach it."""
        root = await self.provider.request_permission(volume_path)
        await self.mirror.attach(root)
        return root

    async def disconnect(self) -> SyncOutcome:
        return await self.mirror.detach()

    def music_uri(self, filename: str = "") -> str:
        root = self.require_volume()
        return join_uri(root, MUSIC_DIR_NAME, filename) if filename else join_uri(root, MUSIC_DIR_NAME)

    async def music_files(self) -> List[str]:
        """Names of the files in the volume's Music directory."""
        try:
            entries = await self.provider.list_directory(self.music_uri())
        except StorageError as e:
            if e.code == "E_NOT_FOUND":
                return []
            raise
        return [e.name for e in entries if not e.is_directory]

    async def status(self) -> Dict[str, Any]:
        root = self.mirror.volume_root
        info: Dict[str, Any] = {
            "attached": root is not None,
            "volume": root,
            "storage": None,
            "music_files": [],
            "last_sync": self.session.last_sync.to_dict() if self.session.last_sync else None,
            "warning": None,
        }
        if root is None:
            return info
        try:
            info["storage"] = (await self.provider.get_storage_info(root)).to_dict()
            info["music_files"] = await self.music_files()
        except StorageError as e:
            logger.warning("⚠️  Volume {} not readable: {}", root, e)
            info["warning"] = e.message
        return info
