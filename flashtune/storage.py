"""
FlashTune - Volume Storage

Filesystem-backed storage provider for a removable volume (a mounted USB
drive).  Access is permission-gated: a volume directory must be granted
first, and every later operation is resolved through ``PathResolver``
against the granted roots.

All blocking filesystem work runs in a worker thread via
``asyncio.to_thread``.  Every failure is raised as ``StorageError`` with an
operation code and the path involved.
"""

import asyncio
import json
import os
import shutil
import sqlite3
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from flashtune.config import DB_VOLUME_FILENAME
from flashtune.exceptions import StorageError
from flashtune.resolver import PathResolver, join_uri, path_to_uri, uri_to_path


def _check_database_file(path: Path) -> None:
    """Raise ``sqlite3.DatabaseError`` unless *path* is an intact SQLite database."""
    conn = sqlite3.connect(str(path))
    try:
        (result,) = conn.execute("PRAGMA quick_check").fetchone()
    finally:
        conn.close()
    if result != "ok":
        raise sqlite3.DatabaseError(f"integrity check failed: {result}")


@dataclass
class FileEntry:
    name: str
    uri: str
    is_directory: bool
    size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StorageInfo:
    used: int
    free: int
    total: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------
class GrantStore:
    """
    Persisted storage grants.

    The JSON file holds every root ever granted plus the active one::

        {"active": "file:///media/usb", "grants": ["file:///media/usb"]}
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.active: Optional[str] = None
        self.grants: List[str] = []
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("⚠️  Ignoring unreadable grants file {}: {}", self.path, e)
            return
        self.active = data.get("active") or None
        self.grants = [g for g in data.get("grants", []) if isinstance(g, str)]

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(
            json.dumps({"active": self.active, "grants": self.grants}, indent=2),
            encoding="utf-8",
        )
        os.replace(tmp, self.path)

    def grant(self, root_uri: str) -> None:
        if root_uri not in self.grants:
            self.grants.append(root_uri)
        self.active = root_uri
        self._save()

    def revoke_active(self) -> Optional[str]:
        revoked = self.active
        self.active = None
        self._save()
        return revoked

    def is_valid(self, root_uri: Optional[str]) -> bool:
        return bool(root_uri) and uri_to_path(root_uri).is_dir()

    def known_roots(self) -> List[str]:
        """The active grant first, then older grants whose volume is present."""
        roots: List[str] = []
        if self.active:
            roots.append(self.active)
        for g in self.grants:
            if g not in roots and self.is_valid(g):
                roots.append(g)
        return roots


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------
class VolumeStorage:
    """Storage-provider capability over mounted volume directories."""

    def __init__(self, grants: GrantStore, db_filename: str = DB_VOLUME_FILENAME):
        self.grants = grants
        self.db_filename = db_filename
        self.resolver = PathResolver(grants.known_roots)

    # ------------------------------------------------------------------
    # Permission
    # ------------------------------------------------------------------
    async def request_permission(self, volume_path: Optional[str] = None) -> str:
        """
        Grant access to *volume_path* and return its root URI.

        Without a path, the persisted active grant is returned if its volume
        is still mounted.
        """
        if volume_path is None:
            if self.grants.is_valid(self.grants.active):
                return self.grants.active  # type: ignore[return-value]
            raise StorageError(
                "E_USB_PERMISSION",
                "No USB volume has been granted; pass the mount path to grant one",
            )

        path = uri_to_path(volume_path)
        if not path.is_dir():
            raise StorageError(
                "E_USB_PERMISSION",
                f"Volume path is not a directory: {volume_path}",
                {"path": volume_path},
            )
        root_uri = path_to_uri(path)
        await asyncio.to_thread(self.grants.grant, root_uri)
        logger.info("🔓 Storage access granted for {}", root_uri)
        return root_uri

    async def clear_permission(self) -> Optional[str]:
        revoked = await asyncio.to_thread(self.grants.revoke_active)
        if revoked:
            logger.info("🔒 Storage access cleared for {}", revoked)
        return revoked

    @property
    def active_root(self) -> Optional[str]:
        return self.grants.active if self.grants.is_valid(self.grants.active) else None

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------
    async def list_directory(self, uri: str) -> List[FileEntry]:
        return await asyncio.to_thread(self._list_directory, uri)

    def _list_directory(self, uri: str) -> List[FileEntry]:
        directory = self.resolver.resolve_existing(uri, allow_direct=False)
        if not directory.is_dir():
            raise StorageError("E_LIST_DIRECTORY", f"Not a directory: {uri}", {"uri": uri})
        try:
            children = list(directory.iterdir())
        except OSError as e:
            raise StorageError("E_LIST_DIRECTORY", f"Cannot list {uri}: {e}", {"uri": uri}) from e

        entries = [
            FileEntry(
                name=child.name,
                uri=join_uri(uri, child.name),
                is_directory=child.is_dir(),
                size=child.stat().st_size if child.is_file() else 0,
            )
            for child in children
        ]
        # Directories first, then alphabetical
        entries.sort(key=lambda e: (not e.is_directory, e.name.lower()))
        return entries

    async def write_file(self, dest_uri: str, local_source: Path) -> Path:
        """Copy a local file onto the volume at *dest_uri*."""
        return await asyncio.to_thread(self._write_file, dest_uri, Path(local_source))

    def _write_file(self, dest_uri: str, local_source: Path) -> Path:
        if not local_source.is_file():
            raise StorageError(
                "E_WRITE_FILE",
                f"Source file not found: {local_source}",
                {"source": str(local_source)},
            )
        target = self.resolver.resolve_for_write(dest_uri)
        try:
            shutil.copyfile(local_source, target)
        except OSError as e:
            raise StorageError(
                "E_WRITE_FILE", f"Cannot write {dest_uri}: {e}", {"uri": dest_uri}
            ) from e
        logger.debug("💾 Wrote {} ({} bytes)", dest_uri, target.stat().st_size)
        return target

    async def read_file(self, source_uri: str, local_dest: Path) -> Path:
        """Copy a file from the volume to a local path."""
        return await asyncio.to_thread(self._read_file, source_uri, Path(local_dest))

    def _read_file(self, source_uri: str, local_dest: Path) -> Path:
        source = self.resolver.resolve_existing(source_uri, allow_direct=False)
        if not source.is_file():
            raise StorageError("E_READ_FILE", f"Not a file: {source_uri}", {"uri": source_uri})
        try:
            local_dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, local_dest)
        except OSError as e:
            raise StorageError(
                "E_READ_FILE", f"Cannot read {source_uri}: {e}", {"uri": source_uri}
            ) from e
        return local_dest

    async def delete_file(self, uri: str) -> None:
        await asyncio.to_thread(self._delete_file, uri)

    def _delete_file(self, uri: str) -> None:
        matched = self.resolver.match_root(uri)
        if matched is not None and not matched[1]:
            raise StorageError("E_DELETE_FILE", f"Refusing to delete a volume root: {uri}", {"uri": uri})
        target = self.resolver.resolve_existing(uri, allow_direct=False)
        try:
            if target.is_dir():
                shutil.rmtree(target)
            else:
                target.unlink()
        except OSError as e:
            raise StorageError("E_DELETE_FILE", f"Cannot delete {uri}: {e}", {"uri": uri}) from e
        logger.info("🗑️ Deleted {}", uri)

    async def get_storage_info(self, uri: str) -> StorageInfo:
        return await asyncio.to_thread(self._get_storage_info, uri)

    def _get_storage_info(self, uri: str) -> StorageInfo:
        path = self.resolver.resolve_existing(uri, allow_direct=False)
        try:
            usage = shutil.disk_usage(path)
        except OSError as e:
            raise StorageError("E_STORAGE_INFO", f"Cannot stat {uri}: {e}", {"uri": uri}) from e
        return StorageInfo(used=usage.used, free=usage.free, total=usage.total)

    # ------------------------------------------------------------------
    # Database mirror
    # ------------------------------------------------------------------
    async def copy_database(self, root_uri: str, local_dest: Path) -> Path:
        """Replace the local working copy with the volume's database file."""
        return await asyncio.to_thread(self._copy_database, root_uri, Path(local_dest))

    def _copy_database(self, root_uri: str, local_dest: Path) -> Path:
        source = self.resolver.resolve_existing(
            join_uri(root_uri, self.db_filename), allow_direct=False
        )
        tmp = local_dest.with_name(local_dest.name + ".tmp")
        try:
            local_dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, tmp)
            _check_database_file(tmp)
            os.replace(tmp, local_dest)
        except (OSError, sqlite3.DatabaseError) as e:
            tmp.unlink(missing_ok=True)
            raise StorageError(
                "E_COPY_DATABASE", f"Cannot copy database from {root_uri}: {e}", {"uri": root_uri}
            ) from e
        return local_dest

    async def sync_database(self, local_source: Path, root_uri: str) -> Path:
        """Overwrite the volume's database file with the local working copy."""
        return await asyncio.to_thread(self._sync_database, Path(local_source), root_uri)

    def _sync_database(self, local_source: Path, root_uri: str) -> Path:
        if not local_source.is_file():
            raise StorageError(
                "E_SYNC_DATABASE",
                f"Local database not found: {local_source}",
                {"source": str(local_source)},
            )
        # Write next to the target, then rename over it
        tmp_path = self.resolver.resolve_for_write(join_uri(root_uri, self.db_filename + ".tmp"))
        target = tmp_path.with_name(self.db_filename)
        try:
            shutil.copyfile(local_source, tmp_path)
            os.replace(tmp_path, target)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(
                "E_SYNC_DATABASE", f"Cannot sync database to {root_uri}: {e}", {"uri": root_uri}
            ) from e
        return target
