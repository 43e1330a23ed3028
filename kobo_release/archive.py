"""Classification of the menu-injector archive and location of its firmware payload."""
from __future__ import annotations

import gzip
import logging
import shutil
import zipfile
import zlib
from pathlib import Path, PurePosixPath

from .errors import ArchiveFormatError, FilesystemError, UsageError
from .models import FIRMWARE_PAYLOAD_NAME, ArchiveFormat, SourceArchive, StagingTree

_LOGGER = logging.getLogger(__name__)

SIG_GZIP = b"\x1f\x8b"
PAYLOAD_DIR_NAME = "_payload"


def _read_signature(path: Path, size: int = 4) -> bytes:
    try:
        with path.open("rb") as handle:
            return handle.read(size)
    except OSError as exc:
        raise UsageError(f"Cannot read archive {path}: {exc}") from exc


def _check_gzip_stream(path: Path, label: str) -> None:
    """Decompress ``path`` to the end, as ``gzip -t`` does."""

    try:
        with gzip.open(path, "rb") as stream:
            while stream.read(1 << 20):
                pass
    except (OSError, EOFError, zlib.error) as exc:
        raise ArchiveFormatError(f"{label} is not a valid gzip stream: {exc}") from exc


def probe_archive_format(path: Path) -> ArchiveFormat:
    """Return the container format of ``path`` based on its content."""

    path = Path(path).expanduser()
    if not path.is_file():
        raise UsageError(f"Archive not found: {path}")
    if _read_signature(path).startswith(SIG_GZIP):
        _check_gzip_stream(path, str(path))
        return ArchiveFormat.GZIP_TAR
    if zipfile.is_zipfile(path):
        return ArchiveFormat.ZIP_CONTAINER
    raise ArchiveFormatError(f"{path} is neither a gzip tarball nor a zip archive")


def classify_archive(path: Path) -> SourceArchive:
    path = Path(path).expanduser().resolve()
    archive_format = probe_archive_format(path)
    _LOGGER.info("Menu-injector archive %s detected as %s", path, archive_format.value)
    return SourceArchive(path=path, format=archive_format)


def _find_payload_member(archive: zipfile.ZipFile) -> zipfile.ZipInfo | None:
    candidates = [
        info
        for info in archive.infolist()
        if not info.is_dir() and PurePosixPath(info.filename).name == FIRMWARE_PAYLOAD_NAME
    ]
    if not candidates:
        return None
    # A top level member wins; otherwise the first nested one by name.
    candidates.sort(key=lambda info: (info.filename != FIRMWARE_PAYLOAD_NAME, info.filename))
    return candidates[0]


def _extract_zip_payload(source: SourceArchive, destination: Path) -> Path:
    try:
        with zipfile.ZipFile(source.path) as archive:
            member = _find_payload_member(archive)
            if member is None:
                raise ArchiveFormatError(
                    f"Zip archive {source.path} does not contain {FIRMWARE_PAYLOAD_NAME}"
                )
            if member.filename != FIRMWARE_PAYLOAD_NAME:
                _LOGGER.debug("Using nested payload member %s", member.filename)
            destination.parent.mkdir(parents=True, exist_ok=True)
            with archive.open(member) as src, destination.open("wb") as dst:
                shutil.copyfileobj(src, dst)
    except zipfile.BadZipFile as exc:
        raise ArchiveFormatError(f"Corrupt zip archive {source.path}: {exc}") from exc
    except OSError as exc:
        raise FilesystemError(f"Cannot extract {FIRMWARE_PAYLOAD_NAME} from {source.path}: {exc}") from exc

    if not _read_signature(destination).startswith(SIG_GZIP):
        raise ArchiveFormatError(
            f"{FIRMWARE_PAYLOAD_NAME} inside {source.path} is not a gzip tarball"
        )
    _check_gzip_stream(destination, f"{FIRMWARE_PAYLOAD_NAME} inside {source.path}")
    return destination


def locate_payload(source: SourceArchive, staging: StagingTree) -> Path:
    """Return the gzip tarball holding the firmware payload.

    A gzip input is the payload itself and is used in place. A zip container has
    its payload member copied into the staging directory.
    """

    if source.format is ArchiveFormat.GZIP_TAR:
        _LOGGER.debug("Archive is a gzip tarball, using it as the payload directly")
        return source.path
    destination = staging.root / PAYLOAD_DIR_NAME / FIRMWARE_PAYLOAD_NAME
    payload = _extract_zip_payload(source, destination)
    _LOGGER.info("Extracted %s from %s", FIRMWARE_PAYLOAD_NAME, source.path.name)
    return payload


__all__ = [
    "PAYLOAD_DIR_NAME",
    "SIG_GZIP",
    "classify_archive",
    "locate_payload",
    "probe_archive_format",
]
