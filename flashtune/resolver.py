"""
FlashTune - Volume Path Resolution

Volumes are addressed by URIs (``file:///media/usb``).  A path inside a
volume is the root URI plus ``/``-separated, percent-encoded segments::

    file:///media/usb/Music/AC%2FDC%20-%20Back.mp3   ✗ (decodes to a separator)
    file:///media/usb/Music/Daft%20Punk%20-%20One.mp3 ✓

Resolution never trusts the URI as a filesystem path directly.  It finds
the longest granted root that prefixes the URI and walks the remaining
segments one by one from that root, so nothing can escape a granted volume.
"""

from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple
from urllib.parse import quote, unquote, urlparse

from flashtune.exceptions import StorageError

_FORBIDDEN_SEGMENTS = {".", ".."}


def uri_to_path(uri: str) -> Path:
    """Convert a ``file://`` URI (or a plain path) to a local path."""
    if uri.startswith("file://"):
        return Path(unquote(urlparse(uri).path))
    return Path(uri)


def path_to_uri(path: Path) -> str:
    return Path(path).resolve().as_uri()


def join_uri(root: str, *segments: str) -> str:
    """Append percent-encoded *segments* to a root URI."""
    parts = [quote(s, safe="") for s in segments if s]
    return "/".join([root.rstrip("/"), *parts])


class PathResolver:
    """Maps URIs under granted roots to local paths."""

    def __init__(self, known_roots: Callable[[], Iterable[str]]):
        self._known_roots = known_roots

    def match_root(self, uri: str) -> Optional[Tuple[str, List[str]]]:
        """
        Return ``(root, segments)`` for the longest known root prefixing *uri*.

        Segments are percent-decoded with blank ones dropped.  Returns None
        when no granted root matches.
        """
        roots = sorted({r.rstrip("/") for r in self._known_roots() if r}, key=len, reverse=True)
        for root in roots:
            if uri == root or uri.rstrip("/") == root:
                return root, []
            if uri.startswith(root + "/"):
                remainder = uri[len(root) + 1 :]
                segments = [unquote(s) for s in remainder.split("/")]
                segments = [s for s in segments if s.strip()]
                for segment in segments:
                    self._check_segment(segment, uri)
                return root, segments
        return None

    @staticmethod
    def _check_segment(segment: str, uri: str) -> None:
        if segment in _FORBIDDEN_SEGMENTS or "/" in segment or "\\" in segment:
            raise StorageError(
                "E_INVALID_PATH",
                f"Invalid path segment '{segment}' in {uri}",
                details={"uri": uri, "segment": segment},
            )

    def resolve_existing(self, uri: str, allow_direct: bool = True) -> Path:
        """
        Walk to an existing file or directory; raise E_NOT_FOUND otherwise.

        A URI under no granted root is taken as a direct reference, unless
        *allow_direct* is False, in which case it is rejected with
        E_INVALID_PATH.
        """
        matched = self.match_root(uri)
        if matched is None:
            if not allow_direct:
                raise StorageError(
                    "E_INVALID_PATH",
                    f"Path is outside every granted volume: {uri}",
                    {"uri": uri},
                )
            # Not under a granted root: treat as a direct reference
            path = uri_to_path(uri)
            if not path.exists():
                raise StorageError("E_NOT_FOUND", f"File not found: {uri}", {"uri": uri})
            return path

        root, segments = matched
        current = uri_to_path(root)
        if not current.is_dir():
            raise StorageError("E_NOT_FOUND", f"Volume root not available: {root}", {"uri": uri})

        for segment in segments:
            if not current.is_dir():
                raise StorageError("E_NOT_FOUND", f"File not found: {uri}", {"uri": uri})
            current = current / segment
            if not current.exists():
                raise StorageError("E_NOT_FOUND", f"File not found: {uri}", {"uri": uri})
        return current

    def resolve_for_write(self, uri: str) -> Path:
        """
        Return a writable file path for *uri*, creating what is missing.

        Intermediate directories are created; the final segment is created as
        an empty file if absent and reused if it is already a file.  A
        directory at the final position is an error, as is any URI outside
        the granted roots.
        """
        matched = self.match_root(uri)
        if matched is None:
            raise StorageError(
                "E_WRITE_FILE",
                f"Cannot write outside a granted volume: {uri}",
                {"uri": uri},
            )
        root, segments = matched
        if not segments:
            raise StorageError("E_WRITE_FILE", f"Cannot write to the volume root: {uri}", {"uri": uri})

        current = uri_to_path(root)
        if not current.is_dir():
            raise StorageError("E_WRITE_FILE", f"Volume root not available: {root}", {"uri": uri})

        for segment in segments[:-1]:
            current = current / segment
            if current.is_dir():
                continue
            if current.exists():
                raise StorageError(
                    "E_WRITE_FILE",
                    f"Cannot create directory '{segment}', a file is in the way: {uri}",
                    {"uri": uri},
                )
            current.mkdir()

        target = current / segments[-1]
        if target.is_dir():
            raise StorageError(
                "E_WRITE_FILE", f"Target is a directory: {uri}", {"uri": uri}
            )
        if not target.exists():
            target.touch()
        return target
