"""
FlashTune - Pytest Configuration & Shared Fixtures

Provides reusable fixtures for:
- Fake yt-dlp / ffmpeg executables (small /bin/sh scripts)
- Temporary directories acting as mounted USB volumes
- A started ``Library`` bound to temporary paths
- Clean auth state for every test
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict

import pytest

from flashtune import auth, config
from flashtune.library import Library
from flashtune.storage import GrantStore, VolumeStorage

# ---------------------------------------------------------------------------
# Auth isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def no_auth(monkeypatch):
    """Every test starts with authentication disabled."""
    auth.reset_token_state()
    monkeypatch.setattr(config, "API_KEY", "")
    yield
    auth.reset_token_state()


# ---------------------------------------------------------------------------
# Fake external tools
# ---------------------------------------------------------------------------


@pytest.fixture
def make_tool(tmp_path: Path):
    """Write an executable /bin/sh script and return its path."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _make(name: str, body: str) -> str:
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
        path.chmod(0o755)
        return str(path)

    return _make


@pytest.fixture
def fake_tools(make_tool, monkeypatch):
    """
    Point YTDLP_PATH / FFMPEG_PATH at fake scripts.

    The default transcoder is ``cat``: whatever the extractor writes comes
    out unchanged as the "MP3".
    """

    def _install(extractor_body: str, transcoder_body: str = "exec cat") -> Dict[str, str]:
        paths = {
            "extractor": make_tool("yt-dlp", extractor_body),
            "transcoder": make_tool("ffmpeg", transcoder_body),
        }
        monkeypatch.setattr(config, "YTDLP_PATH", paths["extractor"])
        monkeypatch.setattr(config, "FFMPEG_PATH", paths["transcoder"])
        return paths

    return _install


# ---------------------------------------------------------------------------
# Volumes and library
# ---------------------------------------------------------------------------


@pytest.fixture
def volume(tmp_path: Path) -> Path:
    """An empty directory standing in for a mounted USB drive."""
    d = tmp_path / "usb"
    d.mkdir()
    return d


@pytest.fixture
def second_volume(tmp_path: Path) -> Path:
    d = tmp_path / "usb2"
    d.mkdir()
    return d


@pytest.fixture
def open_library(tmp_path: Path):
    """
    Factory for a started library with its own cache directory.

    Usage (inside a coroutine)::

        async with open_library(volume) as library:
            ...
    """

    @asynccontextmanager
    async def _open(volume_path: Path | None = None, cache: str = "cache"):
        cache_dir = tmp_path / cache
        provider = VolumeStorage(GrantStore(cache_dir / "grants.json"))
        library = Library(provider, cache_dir / "flashtune.musicdb")
        await library.start(reattach=False)
        try:
            if volume_path is not None:
                await library.connect(str(volume_path))
            yield library
        finally:
            await library.shutdown()

    return _open


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------


@pytest.fixture
def sample_song() -> Dict[str, Any]:
    return {
        "title": "One More Time",
        "artist": "Daft Punk",
        "source_url": "https://www.youtube.com/watch?v=FGBhQbmPwH8",
        "filename": "Daft Punk - One More Time.mp3",
        "duration_ms": 320000,
    }


def make_song(n: int, **overrides: Any) -> Dict[str, Any]:
    song = {
        "title": f"Song {n}",
        "artist": f"Artist {n}",
        "source_url": f"https://example.com/watch?v={n}",
        "filename": f"Artist {n} - Song {n}.mp3",
    }
    song.update(overrides)
    return song


@pytest.fixture
def song_factory():
    return make_song
