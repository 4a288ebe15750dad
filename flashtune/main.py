"""
FlashTune - Main Application

Single FastAPI application that serves:
- The yt-dlp façade (/download, /search, /playlist-info, /health)
- The library API (/api/...) for songs, playlists and the USB volume
- X-API-Key authentication for everything except health checks

The working copy of the music database lives in the local cache directory.
On startup the previously granted USB volume is re-attached (its
``.musicdb`` copied in); on shutdown the database is pushed back to the
volume one final time.
"""

import sys
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from flashtune import config
from flashtune.auth import auth_required, is_auth_enabled, load_token_config
from flashtune.config import (
    APP_ENV,
    APP_HOST,
    APP_PORT,
    APP_VERSION,
    DEBUG,
    LOG_LEVEL,
    ensure_directories,
)
from flashtune.exceptions import LibraryNotReadyError, StorageError
from flashtune.library import Library
from flashtune.routes.api import router as api_router
from flashtune.routes.download import router as backend_router
from flashtune.services.preview import resolve_preview_player
from flashtune.storage import GrantStore, VolumeStorage

# ---------------------------------------------------------------------------
# Logging setup (stdout only)
# ---------------------------------------------------------------------------
logger.remove()

logger.add(
    sys.stdout,
    level="DEBUG" if DEBUG else LOG_LEVEL,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    colorize=True,
)


def build_library() -> Library:
    """Create the library from the configured paths (read at call time)."""
    provider = VolumeStorage(GrantStore(config.GRANTS_PATH))
    return Library(provider, config.DB_LOCAL_PATH)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    On startup:
        1. Create the local cache directories
        2. Load the API token file (an invalid file aborts startup)
        3. Open the local database and re-attach a still-mounted volume
        4. Resolve the optional preview player

    On shutdown:
        5. Stop any preview
        6. Detach the volume (final best-effort sync) and close the database
    """
    # --- Startup ---
    logger.info("🚀 Starting FlashTune v{}", APP_VERSION)
    logger.info("📋 Environment: {} | Debug: {}", APP_ENV, DEBUG)

    # Step 1
    ensure_directories()
    logger.info("📁 Cache directories initialized")

    # Step 2
    load_token_config()
    if is_auth_enabled():
        logger.info("🔒 API key authentication enabled")
    else:
        logger.warning("🔓 Authentication DISABLED (no token file and no API_KEY set)")

    # Step 3
    library = build_library()
    try:
        await library.start()
    except StorageError as e:
        logger.warning("⚠️  Could not re-attach the saved volume: {}", e)
    except Exception as e:
        logger.critical("❌ Library initialization failed: {}", e)
        raise
    app.state.library = library

    # Step 4
    app.state.preview = resolve_preview_player()

    logger.success("✅ Application ready — listening on {}:{}", APP_HOST, APP_PORT)

    yield

    # --- Shutdown ---
    logger.info("🛑 Shutting down FlashTune …")

    # Step 5
    if app.state.preview is not None:
        await app.state.preview.stop()

    # Step 6
    outcome = await library.shutdown()
    if outcome.failed:
        logger.warning("⚠️  Final USB sync failed: {}", outcome.message)

    logger.info("👋 Shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="FlashTune",
        description=(
            "Download music as MP3 and keep a USB drive's library and "
            "playlists in sync."
        ),
        version=APP_VERSION,
        lifespan=lifespan,
        docs_url="/docs" if DEBUG else None,
        redoc_url="/redoc" if DEBUG else None,
    )

    @app.exception_handler(LibraryNotReadyError)
    async def library_not_ready(request: Request, exc: LibraryNotReadyError):
        return JSONResponse(status_code=503, content={"detail": exc.message})

    # ------------------------------------------------------------------
    # Authentication middleware
    # ------------------------------------------------------------------
    @app.middleware("http")
    async def auth_middleware(request: Request, call_next):
        """Reject requests without a valid X-API-Key."""
        if auth_required(request):
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})
        return await call_next(request)

    # ------------------------------------------------------------------
    # Request logging middleware
    # ------------------------------------------------------------------
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log every incoming HTTP request with timing information."""
        start = time.time()
        try:
            response = await call_next(request)
        except Exception as exc:
            duration = round(time.time() - start, 3)
            logger.error(
                "❌ {method} {path} — unhandled error after {duration}s: {exc}",
                method=request.method,
                path=request.url.path,
                duration=duration,
                exc=exc,
            )
            raise

        duration = round(time.time() - start, 3)
        status = response.status_code
        if status >= 500:
            log = logger.error
        elif status >= 400:
            log = logger.warning
        else:
            log = logger.info
        log(
            "📤 {method} {path} — {status} [{duration}s]",
            method=request.method,
            path=request.url.path,
            status=status,
            duration=duration,
        )
        return response

    # ------------------------------------------------------------------
    # Register routers
    # ------------------------------------------------------------------
    app.include_router(api_router)  # /api/*: library JSON endpoints
    app.include_router(backend_router)  # /download, /search, /playlist-info, /health

    return app


# ---------------------------------------------------------------------------
# Create the app instance (used by Uvicorn)
# ---------------------------------------------------------------------------
app = create_app()


def run() -> None:
    """Console entry point."""
    import uvicorn

    uvicorn.run(
        "flashtune.main:app",
        host=APP_HOST,
        port=APP_PORT,
        reload=DEBUG,
        log_level="debug" if DEBUG else "info",
    )


# ---------------------------------------------------------------------------
# Direct execution (development)
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run()
