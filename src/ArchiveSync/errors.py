"""Exception hierarchy shared across revision resolution, caching, and propagation.

A deploy step either succeeds or aborts.  The classes below group the failure
modes so callers (the CLI, the deploy framework) can tell an operator "another
deploy is running" apart from a genuine fault, while every error still derives
from :class:`ArchiveSyncError` for blanket handling.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "ArchiveSyncError",
    "ConfigurationError",
    "ObjectNotFoundError",
    "ResourceBusyError",
    "ConcurrentOperationError",
    "TransferError",
]


class ArchiveSyncError(RuntimeError):
    """Base exception for archive resolution, staging, and release failures."""


class ConfigurationError(ArchiveSyncError):
    """Raised when settings, repository URLs, or archive names are invalid."""


class ObjectNotFoundError(ArchiveSyncError):
    """Raised when the resolved key or version has no matching object."""


class ResourceBusyError(ArchiveSyncError):
    """Raised when a lock is already held incompatibly by another process."""

    def __init__(self, path: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Could not get {path}")
        self.path = path


class ConcurrentOperationError(ArchiveSyncError):
    """Raised when an in-progress download marker is found."""

    def __init__(self, path: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"{path} is found. Another process is running?")
        self.path = path


class TransferError(ArchiveSyncError):
    """Raised when a shell command, rsync, or storage call fails."""

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        returncode: Optional[int] = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.output = output
