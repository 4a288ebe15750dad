"""
FlashTune - Backend Routes

The yt-dlp façade used by clients:

- ``GET|POST /download``  stream a source as MP3 (``audio/mpeg``)
- ``GET /search``         YouTube search results
- ``GET /playlist-info``  entries of a playlist URL
- ``GET /health``         liveness

Errors are returned as ``{"error": "<message>"}``.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from flashtune.exceptions import YtDlpError
from flashtune.services import ytdlp
from flashtune.services.responder import DownloadResponder

router = APIRouter(tags=["Backend"])


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def _body_url(request: Request) -> Optional[str]:
    """The ``url`` field of a JSON body, if there is one."""
    try:
        body = await request.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("url"), str):
        return body["url"]
    return None


async def _download(request: Request, url: Optional[str]):
    url = (url or "").strip()
    if not url:
        return _error(400, "url is required")
    return await DownloadResponder(url, request).respond()


@router.get("/download")
async def download_get(request: Request, url: Optional[str] = Query(None)):
    """Stream the audio of *url* transcoded to MP3."""
    return await _download(request, url)


@router.post("/download")
async def download_post(request: Request, url: Optional[str] = Query(None)):
    """Same as GET; the URL may also come as JSON ``{"url": ...}``."""
    if not (url or "").strip():
        url = await _body_url(request)
    return await _download(request, url)


@router.get("/search")
async def search(query: Optional[str] = Query(None)):
    query = (query or "").strip()
    if not query:
        return _error(400, "query is required")
    try:
        return await ytdlp.search(query)
    except YtDlpError as e:
        return _error(e.status_code, e.message)


@router.get("/playlist-info")
async def playlist_info(url: Optional[str] = Query(None)):
    url = (url or "").strip()
    if not url:
        return _error(400, "url is required")
    try:
        return await ytdlp.get_playlist_info(url)
    except YtDlpError as e:
        return _error(e.status_code, e.message)


@router.get("/health")
async def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}
