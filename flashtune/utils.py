"""
FlashTune - Shared Utilities

Common helpers used across multiple modules to avoid duplication.
"""

import re
from pathlib import Path
from typing import Iterable

# Characters that FAT/exFAT volumes (and URIs) do not tolerate in names
_UNSAFE_FILENAME_CHARS = re.compile(r'[/\\?%*:|"<>]')


def sanitize_filename(name: str) -> str:
    """
    Sanitize a string for use as a filename on the USB volume.

    Each unsafe character becomes ``-``; leading/trailing whitespace and
    dots are stripped.
    """
    result = _UNSAFE_FILENAME_CHARS.sub("-", name)
    result = result.strip(" .")
    return result or "unknown"


def song_filename(artist: str, title: str, extension: str = ".mp3") -> str:
    """Volume filename for a song: ``"Artist - Title.mp3"``."""
    artist = (artist or "").strip() or "Unknown Artist"
    title = (title or "").strip() or "Unknown Title"
    return sanitize_filename(f"{artist} - {title}") + extension


def unique_filename(filename: str, taken: Iterable[str]) -> str:
    """
    Return *filename*, or ``"<stem> (2)<ext>"``, ``"<stem> (3)<ext>"`` …,
    whichever is first not in *taken*.

    Names are compared case-insensitively, as FAT/exFAT volumes do.
    """
    lowered = {name.lower() for name in taken}
    if filename.lower() not in lowered:
        return filename
    path = Path(filename)
    n = 2
    while f"{path.stem} ({n}){path.suffix}".lower() in lowered:
        n += 1
    return f"{path.stem} ({n}){path.suffix}"
