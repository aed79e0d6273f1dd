from __future__ import annotations

from typing import Optional


class CivitaiDownloaderError(Exception):
    """Base class for errors the CLI and supervisor report without a traceback."""

    def __init__(self, message: str, *, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(CivitaiDownloaderError):
    """Raised when settings cannot be resolved or a required setting is missing."""


class CatalogError(CivitaiDownloaderError):
    """Raised when the catalog API returns an unusable response."""


class ArchiveError(CivitaiDownloaderError):
    """Raised when the output tree cannot be archived or its permissions fixed."""


class SupervisorError(CivitaiDownloaderError):
    """Raised when an orchestration step outside the tolerated download loop fails."""
