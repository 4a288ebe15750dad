"""
FlashTune - Exceptions

Every error raised by the service derives from ``FlashtuneError`` so routes
can translate them into HTTP responses in one place.

Hierarchy:
    FlashtuneError
        PipelineError       - yt-dlp / ffmpeg pipeline failures (500 or 422)
        YtDlpError          - search / playlist-info metadata calls
        StorageError        - volume access (code like E_WRITE_FILE)
        DatabaseError       - local SQLite working copy
            LibraryNotReadyError
        DuplicateSongError  - source already on the drive
        DownloadError       - backend /download call made by the library
        TokenConfigError    - invalid API token YAML file
"""

from enum import Enum


class FlashtuneError(Exception):
    """
    Base exception for all FlashTune errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional context (paths, URLs,
                 the wrapped exception).
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------
class PipelineErrorKind(str, Enum):
    EXTRACTOR_NOT_FOUND = "extractor-not-found"
    TRANSCODER_NOT_FOUND = "transcoder-not-found"
    EXTRACTOR_FAILED = "extractor-failed"
    TRANSCODER_FAILED = "transcoder-failed"
    UNEXPECTED_SPAWN_ERROR = "unexpected-spawn-error"


# Environment errors are the server's fault, content failures are the source's
_ENVIRONMENT_KINDS = {
    PipelineErrorKind.EXTRACTOR_NOT_FOUND,
    PipelineErrorKind.TRANSCODER_NOT_FOUND,
    PipelineErrorKind.UNEXPECTED_SPAWN_ERROR,
}


class PipelineError(FlashtuneError):
    """
    Raised (or reported) when the extractor → transcoder pipeline fails.

    ``stderr`` carries whatever the failing process wrote, untrimmed.
    """

    def __init__(
        self,
        kind: PipelineErrorKind,
        message: str,
        stderr: str = "",
        details: dict | None = None,
    ) -> None:
        super().__init__(message, details)
        self.kind = kind
        self.stderr = stderr

    @property
    def status_code(self) -> int:
        return 500 if self.kind in _ENVIRONMENT_KINDS else 422

    @property
    def is_environment_error(self) -> bool:
        return self.kind in _ENVIRONMENT_KINDS


class YtDlpError(FlashtuneError):
    """Raised when a yt-dlp metadata call (search, playlist info) fails."""

    def __init__(self, message: str, status_code: int = 422) -> None:
        super().__init__(message)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Storage / library
# ---------------------------------------------------------------------------
class StorageError(FlashtuneError):
    """
    Raised by the storage provider and the path resolver.

    ``code`` names the failed operation (``E_WRITE_FILE``, ``E_NOT_FOUND``,
    ``E_USB_PERMISSION`` ...); the message carries the path involved.
    """

    def __init__(self, code: str, message: str, details: dict | None = None) -> None:
        super().__init__(message, details)
        self.code = code

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class DatabaseError(FlashtuneError):
    """Raised when the local database cannot be opened or migrated."""


class LibraryNotReadyError(DatabaseError):
    """Raised when the database is used while no connection is open."""


class DuplicateSongError(FlashtuneError):
    """Raised when a download targets a source already recorded in the library."""


class DownloadError(FlashtuneError):
    """Raised when the backend download stream fails or produces nothing."""

    def __init__(self, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


class TokenConfigError(FlashtuneError):
    """Raised when the API token YAML file is malformed."""
