"""
FlashTune - Preview Player

Optional local playback of a song through ``ffplay``.  The player is
resolved once at startup; when ffplay is not installed the resolver returns
None and callers report previews as unavailable.
"""

import asyncio
import shutil
from pathlib import Path
from typing import Optional

from loguru import logger

from flashtune import config


class PreviewPlayer:
    def __init__(self, executable: str):
        self.executable = executable
        self._process: Optional[asyncio.subprocess.Process] = None
        self._current: Optional[Path] = None

    @property
    def is_playing(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def current(self) -> Optional[Path]:
        return self._current if self.is_playing else None

    async def play(self, path: Path) -> None:
        """Stop whatever is playing and start *path*."""
        await self.stop()
        self._process = await asyncio.create_subprocess_exec(
            self.executable,
            "-nodisp",
            "-autoexit",
            "-loglevel",
            "error",
            str(path),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        self._current = Path(path)
        logger.info("▶️ Preview started: {}", path.name)

    async def stop(self) -> None:
        process, current = self._process, self._current
        self._process = None
        self._current = None
        if process is not None and process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            await process.wait()
            logger.info("⏹️ Preview stopped")
        if current is not None:
            current.unlink(missing_ok=True)


def resolve_preview_player() -> Optional[PreviewPlayer]:
    """Return a player when ffplay is available, otherwise None."""
    executable = shutil.which(config.FFPLAY_PATH)
    if executable is None:
        logger.info("ℹ️  {} not found, previews disabled", config.FFPLAY_PATH)
        return None
    logger.info("🎧 Preview player available ({})", executable)
    return PreviewPlayer(executable)
