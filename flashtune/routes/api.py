"""
FlashTune - Library API Routes

JSON endpoints for the library manager:
- Songs (list, get, update, delete) and their playlist membership
- Playlists (list, create, delete, add/remove/list songs)
- USB volume (connect, disconnect, status, manual sync, browse, permission)
- Download-and-save of a search result onto the volume
- Optional preview playback
- Health and system status

Writes return ``{"...": ..., "warning": str | null}``; a warning means the
change was saved locally but the USB copy of the database is stale.
"""

import time
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from loguru import logger
from pydantic import BaseModel

from flashtune import config
from flashtune.auth import get_auth_readiness
from flashtune.exceptions import (
    DownloadError,
    DuplicateSongError,
    StorageError,
)
from flashtune.library import Library
from flashtune.services.downloader import download_and_save

router = APIRouter(prefix="/api", tags=["API"])

# Track startup time for health check
_START_TIME = time.time()


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------
class SongUpdate(BaseModel):
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    cover_path: Optional[str] = None
    duration_ms: Optional[int] = None


class PlaylistCreate(BaseModel):
    name: str


class PlaylistSongAdd(BaseModel):
    song_id: int


class UsbConnectRequest(BaseModel):
    path: Optional[str] = None


class DownloadRequest(BaseModel):
    source_url: str
    title: str = ""
    artist: str = ""
    duration_ms: int = 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _library(request: Request) -> Library:
    library = getattr(request.app.state, "library", None)
    if library is None or not library.db.is_open:
        raise HTTPException(status_code=503, detail="Library is not ready")
    return library


def _storage_http_error(e: StorageError) -> HTTPException:
    if e.code == "E_NOT_FOUND":
        return HTTPException(status_code=404, detail=e.message)
    if e.code in ("E_NO_VOLUME", "E_USB_PERMISSION"):
        return HTTPException(status_code=409, detail=e.message)
    if e.code == "E_INVALID_PATH":
        return HTTPException(status_code=400, detail=e.message)
    return HTTPException(status_code=500, detail=str(e))


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------
@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint for the service."""
    library = getattr(request.app.state, "library", None)
    db_ok = library is not None and library.db.is_open
    return {
        "status": "ok" if db_ok else "degraded",
        "database": "ok" if db_ok else "closed",
        "uptime_seconds": round(time.time() - _START_TIME, 2),
        "version": config.APP_VERSION,
    }


@router.get("/system/status")
async def system_status(request: Request):
    """Library, volume and preview status in one call."""
    library = _library(request)
    db_path = library.session.local_db_path
    return {
        "database": {
            "path": str(db_path),
            "size_bytes": db_path.stat().st_size if db_path.exists() else 0,
            "songs": await library.db.count_songs(),
        },
        "usb": await library.status(),
        "preview_available": getattr(request.app.state, "preview", None) is not None,
        "auth": get_auth_readiness(),
    }


# ---------------------------------------------------------------------------
# Songs
# ---------------------------------------------------------------------------
@router.get("/songs")
async def list_songs(request: Request):
    library = _library(request)
    songs = await library.db.get_all_songs()
    return {"songs": songs, "total": len(songs)}


@router.get("/songs/{song_id}")
async def get_song(request: Request, song_id: int):
    song = await _library(request).db.get_song(song_id)
    if not song:
        raise HTTPException(status_code=404, detail="Song not found")
    return song


@router.put("/songs/{song_id}")
async def update_song(request: Request, song_id: int, body: SongUpdate):
    library = _library(request)
    if not await library.db.get_song(song_id):
        raise HTTPException(status_code=404, detail="Song not found")

    fields = body.model_dump(exclude_none=True)
    outcome = await library.db.update_song(song_id, **fields)
    return {
        "song": await library.db.get_song(song_id),
        "updated": bool(outcome.value),
        "warning": outcome.warning,
    }


@router.delete("/songs/{song_id}")
async def delete_song(
    request: Request,
    song_id: int,
    delete_file: bool = Query(True, description="Also remove the MP3 from the volume"),
):
    library = _library(request)
    song = await library.db.get_song(song_id)
    if not song:
        raise HTTPException(status_code=404, detail="Song not found")

    warnings = []
    if delete_file and library.volume_root:
        try:
            await library.provider.delete_file(library.music_uri(song["filename"]))
        except StorageError as e:
            logger.warning("⚠️  Could not delete {} from the volume: {}", song["filename"], e)
            warnings.append(e.message)

    outcome = await library.db.delete_song(song_id)
    if outcome.warning:
        warnings.append(outcome.warning)
    return {"deleted": bool(outcome.value), "warning": "; ".join(warnings) or None}


@router.get("/songs/{song_id}/playlists")
async def song_playlists(request: Request, song_id: int):
    ids = await _library(request).db.get_playlist_ids_for_song(song_id)
    return {"playlist_ids": sorted(ids)}


# ---------------------------------------------------------------------------
# Playlists
# ---------------------------------------------------------------------------
@router.get("/playlists")
async def list_playlists(request: Request):
    return {"playlists": await _library(request).db.get_all_playlists()}


@router.post("/playlists", status_code=201)
async def create_playlist(request: Request, body: PlaylistCreate):
    name = body.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Playlist name is required")
    library = _library(request)
    outcome = await library.db.create_playlist(name)
    return {"playlist": await library.db.get_playlist(outcome.value), "warning": outcome.warning}


@router.delete("/playlists/{playlist_id}")
async def delete_playlist(request: Request, playlist_id: int):
    outcome = await _library(request).db.delete_playlist(playlist_id)
    if not outcome.value:
        raise HTTPException(status_code=404, detail="Playlist not found")
    return {"deleted": True, "warning": outcome.warning}


@router.get("/playlists/{playlist_id}/songs")
async def playlist_songs(request: Request, playlist_id: int):
    library = _library(request)
    if not await library.db.get_playlist(playlist_id):
        raise HTTPException(status_code=404, detail="Playlist not found")
    return {"songs": await library.db.get_playlist_songs(playlist_id)}


@router.post("/playlists/{playlist_id}/songs")
async def add_playlist_song(request: Request, playlist_id: int, body: PlaylistSongAdd):
    library = _library(request)
    if not await library.db.get_playlist(playlist_id):
        raise HTTPException(status_code=404, detail="Playlist not found")
    if not await library.db.get_song(body.song_id):
        raise HTTPException(status_code=404, detail="Song not found")
    outcome = await library.db.add_song_to_playlist(playlist_id, body.song_id)
    return {"added": bool(outcome.value), "warning": outcome.warning}


@router.delete("/playlists/{playlist_id}/songs/{song_id}")
async def remove_playlist_song(request: Request, playlist_id: int, song_id: int):
    outcome = await _library(request).db.remove_song_from_playlist(playlist_id, song_id)
    return {"removed": bool(outcome.value), "warning": outcome.warning}


# ---------------------------------------------------------------------------
# USB volume
# ---------------------------------------------------------------------------
@router.post("/usb/connect")
async def usb_connect(request: Request, body: UsbConnectRequest):
    """Grant access to a mounted volume (or reuse the saved grant) and attach it."""
    library = _library(request)
    try:
        await library.connect(body.path)
    except StorageError as e:
        raise _storage_http_error(e)
    return await library.status()


@router.post("/usb/disconnect")
async def usb_disconnect(request: Request):
    outcome = await _library(request).disconnect()
    return {"attached": False, "sync": outcome.to_dict(), "warning": outcome.warning}


@router.get("/usb/status")
async def usb_status(request: Request):
    return await _library(request).status()


@router.post("/usb/sync")
async def usb_sync(request: Request):
    library = _library(request)
    if not library.volume_root:
        raise HTTPException(status_code=409, detail="No USB volume is attached")
    outcome = await library.mirror.sync_now()
    return {"sync": outcome.to_dict(), "warning": outcome.warning}


@router.get("/usb/browse")
async def usb_browse(request: Request, uri: Optional[str] = Query(None)):
    """List a directory on the attached volume (its root by default)."""
    library = _library(request)
    try:
        target = uri or library.require_volume()
        entries = await library.provider.list_directory(target)
    except StorageError as e:
        raise _storage_http_error(e)
    return {"uri": target, "entries": [e.to_dict() for e in entries]}


@router.delete("/usb/permission")
async def usb_forget(request: Request):
    """Detach and drop the saved grant so the volume is not re-attached on startup."""
    library = _library(request)
    outcome = await library.disconnect()
    revoked = await library.provider.clear_permission()
    return {"revoked": revoked, "warning": outcome.warning}


# ---------------------------------------------------------------------------
# Downloads
# ---------------------------------------------------------------------------
@router.post("/downloads", status_code=201)
async def create_download(request: Request, body: DownloadRequest):
    """Download a search result and save it onto the attached volume."""
    library = _library(request)
    try:
        return await download_and_save(library, body.model_dump())
    except DuplicateSongError as e:
        raise HTTPException(status_code=422, detail=e.message)
    except DownloadError as e:
        status = e.status_code if 400 <= e.status_code < 600 else 502
        raise HTTPException(status_code=status, detail=e.message)
    except StorageError as e:
        raise _storage_http_error(e)


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------
@router.post("/songs/{song_id}/preview")
async def preview_song(request: Request, song_id: int):
    player = getattr(request.app.state, "preview", None)
    if player is None:
        raise HTTPException(status_code=503, detail="Preview playback is not available")

    library = _library(request)
    song = await library.db.get_song(song_id)
    if not song:
        raise HTTPException(status_code=404, detail="Song not found")

    local = config.PREVIEW_DIR / f"{uuid.uuid4().hex[:8]}_{song['filename']}"
    try:
        await library.provider.read_file(library.music_uri(song["filename"]), local)
    except StorageError as e:
        raise _storage_http_error(e)
    await player.play(local)
    return {"playing": song}


@router.delete("/preview")
async def stop_preview(request: Request) -> Dict[str, Any]:
    player = getattr(request.app.state, "preview", None)
    if player is not None:
        await player.stop()
    return {"playing": None}

