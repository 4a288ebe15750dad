"""
FlashTune - Configuration
All settings loaded from environment variables with sensible defaults.

The service keeps its working copy of the music database in a local cache
directory.  The removable USB volume holds the durable copy (``.musicdb``)
and the MP3 files under ``Music/``.  Local disk is otherwise only used for
transient staging (temp downloads, preview copies).
"""

import os
import tempfile
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from .env file
_ = load_dotenv()

# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------
APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = int(os.getenv("APP_PORT", "3000"))
APP_ENV = os.getenv("APP_ENV", "development")
APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# ---------------------------------------------------------------------------
# Authentication (X-API-Key header)
# ---------------------------------------------------------------------------
API_KEY = os.getenv("API_KEY", "").strip()
TOKEN_CONFIG_PATH = Path(os.getenv("TOKEN_CONFIG_PATH", "config/tokens.yaml"))
# "yaml-only" or "yaml-with-legacy-fallback" (also accepts API_KEY)
TOKEN_AUTH_MODE = os.getenv("TOKEN_AUTH_MODE", "yaml-with-legacy-fallback")
API_KEY_HEADER = "X-API-Key"

# ---------------------------------------------------------------------------
# External tools
# ---------------------------------------------------------------------------
YTDLP_PATH = os.getenv("YTDLP_PATH", "yt-dlp")
FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")
# Optional; previews are disabled when it cannot be found on PATH
FFPLAY_PATH = os.getenv("FFPLAY_PATH", "ffplay")

SEARCH_RESULT_LIMIT = int(os.getenv("SEARCH_RESULT_LIMIT", "5"))

# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------
STREAM_CHUNK_SIZE = int(os.getenv("STREAM_CHUNK_SIZE", "65536"))
# Seconds between client-disconnect checks while waiting for the first byte
DISCONNECT_POLL_INTERVAL = float(os.getenv("DISCONNECT_POLL_INTERVAL", "0.5"))

# ---------------------------------------------------------------------------
# Paths: local disk is used for the working DB copy and transient files
# ---------------------------------------------------------------------------
BASE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = BASE_DIR.parent

CACHE_DIR = Path(
    os.getenv("CACHE_DIR", os.path.join(tempfile.gettempdir(), "flashtune-cache"))
)
TEMP_DIR = Path(os.getenv("TEMP_DIR", os.path.join(CACHE_DIR, "flashtune")))
PREVIEW_DIR = Path(os.getenv("PREVIEW_DIR", os.path.join(TEMP_DIR, "preview")))

# Working copy of the library; replaced from the volume on every attach
DB_LOCAL_PATH = Path(
    os.getenv("DB_LOCAL_PATH", os.path.join(CACHE_DIR, "flashtune.musicdb"))
)

# Persisted storage grants (granted volume roots + the active one)
GRANTS_PATH = Path(os.getenv("GRANTS_PATH", os.path.join(CACHE_DIR, "grants.json")))

# ---------------------------------------------------------------------------
# Removable volume layout
# ---------------------------------------------------------------------------
DB_VOLUME_FILENAME = os.getenv("DB_VOLUME_FILENAME", ".musicdb")
MUSIC_DIR_NAME = os.getenv("MUSIC_DIR_NAME", "Music")

# ---------------------------------------------------------------------------
# Download flow (library side calling the /download façade)
# ---------------------------------------------------------------------------
BACKEND_URL = os.getenv("BACKEND_URL", f"http://127.0.0.1:{APP_PORT}").rstrip("/")
# Seconds without data before the backend stream is abandoned
DOWNLOAD_TIMEOUT = float(os.getenv("DOWNLOAD_TIMEOUT", "300"))

# ---------------------------------------------------------------------------
# Logging (stdout only)
# ---------------------------------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def ensure_directories() -> None:
    """Create the local cache and temp directories.

    The volume side is created lazily by the storage provider when files
    are written to it.
    """
    CACHE_DIR.mkdir(parents=True, exist_ok=True)
    TEMP_DIR.mkdir(parents=True, exist_ok=True)
    PREVIEW_DIR.mkdir(parents=True, exist_ok=True)
    DB_LOCAL_PATH.parent.mkdir(parents=True, exist_ok=True)
    GRANTS_PATH.parent.mkdir(parents=True, exist_ok=True)
