"""
FlashTune - Download & Save

Library-side download flow for one search result:

1. Reject sources already recorded in the library
2. POST {BACKEND_URL}/download and stream the MP3 into a local temp file
3. Copy the temp file onto the volume as ``Music/<Artist - Title>.mp3``
4. Insert the song row (the insert's queued task also syncs ``.musicdb``)
5. Remove the temp file, whatever happened
"""

import json
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
import httpx
from loguru import logger

from flashtune import config
from flashtune.exceptions import DownloadError, DuplicateSongError
from flashtune.library import Library
from flashtune.utils import song_filename, unique_filename


def _error_message(body: bytes, fallback: str) -> str:
    try:
        data = json.loads(body)
    except ValueError:
        return body.decode("utf-8", errors="replace").strip() or fallback
    if isinstance(data, dict):
        return str(data.get("error") or data.get("detail") or fallback)
    return fallback


async def fetch_audio(
    source_url: str,
    dest: Path,
    client: Optional[httpx.AsyncClient] = None,
) -> int:
    """Stream the backend's MP3 for *source_url* into *dest*; return the byte count."""
    headers = {config.API_KEY_HEADER: config.API_KEY} if config.API_KEY else {}
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(
            base_url=config.BACKEND_URL,
            timeout=httpx.Timeout(config.DOWNLOAD_TIMEOUT, connect=10.0),
        )

    written = 0
    try:
        async with client.stream(
            "POST", "/download", json={"url": source_url}, headers=headers
        ) as response:
            if response.status_code != 200:
                body = await response.aread()
                message = _error_message(body, f"Download failed ({response.status_code})")
                logger.error("❌ Backend download failed ({}): {}", response.status_code, message)
                raise DownloadError(message, status_code=response.status_code)

            async with aiofiles.open(dest, "wb") as f:
                async for chunk in response.aiter_bytes(chunk_size=65536):
                    await f.write(chunk)
                    written += len(chunk)
    except httpx.HTTPError as e:
        raise DownloadError(f"Could not reach the download backend: {e}") from e
    finally:
        if owns_client:
            await client.aclose()

    if written == 0:
        raise DownloadError("Backend returned no audio data")
    logger.info("⬇️ Downloaded {} bytes for {}", written, source_url)
    return written


async def download_and_save(
    library: Library,
    result: Dict[str, Any],
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """
    Download a search result onto the attached volume and record it.

    Returns ``{"song": <row>, "warning": <mirror warning or None>}``.
    """
    source_url = str(result.get("source_url") or "").strip()
    if not source_url:
        raise DownloadError("source_url is required", status_code=400)
    title = str(result.get("title") or "").strip()
    artist = str(result.get("artist") or "").strip()

    library.require_volume()
    if await library.db.song_exists_by_url(source_url):
        raise DuplicateSongError("Song already exists on drive", {"source_url": source_url})

    # Same artist and title from another source gets its own file
    taken = await library.music_files()
    taken += [s["filename"] for s in await library.db.get_all_songs()]
    filename = unique_filename(song_filename(artist, title), taken)
    config.TEMP_DIR.mkdir(parents=True, exist_ok=True)
    temp_path = config.TEMP_DIR / f"{uuid.uuid4().hex[:8]}_{filename}"

    try:
        await fetch_audio(source_url, temp_path, client=client)
        await library.provider.write_file(library.music_uri(filename), temp_path)
        outcome = await library.db.insert_song(
            title=title or "Unknown Title",
            artist=artist or "Unknown Artist",
            source_url=source_url,
            filename=filename,
            duration_ms=int(result.get("duration_ms") or 0),
        )
    finally:
        temp_path.unlink(missing_ok=True)

    song = await library.db.get_song(outcome.value) if outcome.value else None
    logger.success("✅ Saved {} to the drive", filename)
    return {"song": song, "warning": outcome.warning}
