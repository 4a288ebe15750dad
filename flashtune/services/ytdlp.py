"""
FlashTune - yt-dlp Metadata Calls

Search and playlist lookups.  Both run yt-dlp with ``--dump-json`` and
collect one JSON object per output line; no media is downloaded here (the
audio pipeline lives in ``services/pipeline.py``).
"""

import asyncio
import json
from typing import Any, Dict, List

from loguru import logger

from flashtune import config
from flashtune.exceptions import YtDlpError


def parse_entry(entry: Dict[str, Any]) -> Dict[str, Any]:
    """Map one yt-dlp info dict to a search result."""
    try:
        duration = float(entry.get("duration") or 0)
    except (TypeError, ValueError):
        duration = 0.0

    return {
        "title": str(entry.get("title") or "").strip(),
        "artist": str(entry.get("uploader") or entry.get("channel") or "").strip(),
        "duration_ms": int(max(duration, 0) * 1000),
        "thumbnail_url": str(entry.get("thumbnail") or "").strip(),
        "source_url": str(entry.get("webpage_url") or entry.get("url") or "").strip(),
    }


async def collect_json_lines(args: List[str], fallback_message: str) -> List[Dict[str, Any]]:
    """Run yt-dlp with *args* and parse every non-empty stdout line as JSON."""
    executable = config.YTDLP_PATH
    try:
        proc = await asyncio.create_subprocess_exec(
            executable,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise YtDlpError(f"{executable} executable not found on server PATH", 500) from e
    except OSError as e:
        raise YtDlpError(str(e), 500) from e

    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip()
        logger.warning("⚠️  yt-dlp exited with {}: {}", proc.returncode, message)
        raise YtDlpError(message or fallback_message, 422)

    try:
        return [
            json.loads(line)
            for line in stdout.decode("utf-8", errors="replace").splitlines()
            if line.strip()
        ]
    except json.JSONDecodeError as e:
        raise YtDlpError("Failed to parse yt-dlp output", 422) from e


async def search(query: str, limit: int | None = None) -> List[Dict[str, Any]]:
    """Search YouTube; results without a usable source URL are dropped."""
    limit = limit or config.SEARCH_RESULT_LIMIT
    lines = await collect_json_lines(
        [
            f"ytsearch{limit}:{query}",
            "--dump-json",
            "--flat-playlist",
            "--no-download",
            "--no-playlist",
        ],
        "yt-dlp search failed",
    )
    results = [parse_entry(line) for line in lines]
    return [r for r in results if r["source_url"]]


async def get_playlist_info(url: str) -> Dict[str, Any]:
    """List the entries of a playlist URL without downloading them."""
    lines = await collect_json_lines(
        ["--flat-playlist", "--dump-json", "--no-download", "--", url],
        "yt-dlp playlist failed",
    )
    entries = [parse_entry(line) for line in lines]
    tracks = [e for e in entries if e["source_url"]]
    title = str(lines[0].get("playlist_title") or "").strip() if lines else ""
    return {"title": title, "track_count": len(tracks), "tracks": tracks}
