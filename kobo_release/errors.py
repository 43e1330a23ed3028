"""Exceptions raised by the release bundling pipeline."""
from __future__ import annotations


class BundleError(RuntimeError):
    """Base error for every failure that aborts a bundling run."""

    def __init__(self, message: str, *, step: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.step = step

    def __str__(self) -> str:
        if self.step:
            return f"[{self.step}] {self.message}"
        return self.message


class UsageError(BundleError):
    """Invalid or missing command line input."""


class ArchiveFormatError(BundleError):
    """Input is neither a gzip tarball nor a zip holding the firmware payload."""


class MetadataError(BundleError):
    """The application version could not be resolved."""


class FilesystemError(BundleError):
    """Extraction, copy or packing failure."""


class BuildStepError(FilesystemError):
    """The external application build step failed."""

    def __init__(self, message: str, *, returncode: int | None = None, step: str | None = None) -> None:
        super().__init__(message, step=step)
        self.returncode = returncode


class ArtifactIntegrityError(BundleError):
    """Produced artifacts do not satisfy the expected layout."""


__all__ = [
    "BundleError",
    "UsageError",
    "ArchiveFormatError",
    "MetadataError",
    "FilesystemError",
    "BuildStepError",
    "ArtifactIntegrityError",
]
