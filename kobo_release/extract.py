"""Unpacking of the firmware payload into the staging tree."""
from __future__ import annotations

import logging
import os
import shutil
import tarfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from .errors import FilesystemError
from .models import (
    DEVICE_ADDS_PATH,
    OS_ADDITIONS_KNOWN,
    ExtraContentPolicy,
    StagingTree,
)

_LOGGER = logging.getLogger(__name__)

UNPACK_DIR_NAME = "_unpack"


@dataclass(slots=True)
class ExtractionResult:
    tree: StagingTree
    preserved_extra: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)


def _check_member(member: tarfile.TarInfo, destination: Path) -> None:
    name = PurePosixPath(member.name)
    if name.is_absolute() or ".." in name.parts:
        raise FilesystemError(f"Payload member escapes the extraction directory: {member.name}")
    if member.islnk():
        link = PurePosixPath(member.linkname)
        if link.is_absolute() or ".." in link.parts:
            raise FilesystemError(f"Payload hard link points outside the payload: {member.name}")
    if member.isdev():
        raise FilesystemError(f"Payload contains a device node: {member.name}")
    target = os.path.realpath(destination / member.name)
    if os.path.commonpath([target, os.path.realpath(destination)]) != os.path.realpath(destination):
        raise FilesystemError(f"Payload member escapes the extraction directory: {member.name}")


def unpack_tarball(payload: Path, destination: Path) -> list[str]:
    """Extract every member of ``payload`` below ``destination``."""

    destination.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(payload, mode="r:gz") as archive:
            members = archive.getmembers()
            for member in members:
                _check_member(member, destination)
            if hasattr(tarfile, "tar_filter"):
                archive.extractall(destination, members=members, filter="tar")
            else:  # pragma: no cover - interpreters without extraction filters
                archive.extractall(destination, members=members)
    except (tarfile.TarError, EOFError, OSError) as exc:
        raise FilesystemError(f"Cannot unpack firmware payload {payload}: {exc}") from exc
    names = [member.name for member in members if member.isfile()]
    _LOGGER.debug("Unpacked %d files from %s", len(names), payload.name)
    return names


def _files_below(root: Path) -> list[str]:
    return sorted(
        path.relative_to(root).as_posix()
        for path in root.rglob("*")
        if path.is_file() or path.is_symlink()
    )


def _prune_empty_dirs(root: Path) -> None:
    for current, _dirnames, _filenames in os.walk(root, topdown=False):
        current_path = Path(current)
        if current_path == root:
            continue
        if not any(current_path.iterdir()):
            current_path.rmdir()


def extract_payload(
    payload: Path,
    staging: StagingTree,
    *,
    extra_content: ExtraContentPolicy = ExtraContentPolicy.PRESERVE,
) -> ExtractionResult:
    """Unpack ``payload`` and isolate the add-ons subtree at the staging root.

    Everything outside ``mnt/onboard/.adds`` is treated as OS-level additions.
    With :attr:`ExtraContentPolicy.PRESERVE` all of it is kept (and anything
    outside ``usr/`` is reported); with ``DISCARD`` only ``usr/`` survives.
    """

    unpack_dir = staging.root / UNPACK_DIR_NAME
    if unpack_dir.exists():
        shutil.rmtree(unpack_dir)
    unpack_tarball(payload, unpack_dir)

    adds_source = unpack_dir / DEVICE_ADDS_PATH
    if not adds_source.is_dir():
        shutil.rmtree(unpack_dir, ignore_errors=True)
        raise FilesystemError(f"Firmware payload {payload.name} has no {DEVICE_ADDS_PATH.as_posix()} directory")
    if staging.adds_dir.exists():
        raise FilesystemError(f"Staging add-ons directory already exists: {staging.adds_dir}")

    result = ExtractionResult(tree=staging)
    try:
        shutil.move(str(adds_source), str(staging.adds_dir))
        _prune_empty_dirs(unpack_dir)

        staging.os_root.mkdir(exist_ok=True)
        for child in sorted(unpack_dir.iterdir()):
            keep = extra_content is ExtraContentPolicy.PRESERVE or child.name in OS_ADDITIONS_KNOWN
            relative = [f"{child.name}/{name}" for name in _files_below(child)] if child.is_dir() else [child.name]
            if keep:
                shutil.move(str(child), str(staging.os_root / child.name))
                if child.name not in OS_ADDITIONS_KNOWN:
                    result.preserved_extra.extend(relative)
            else:
                result.dropped.extend(relative)
    except OSError as exc:
        raise FilesystemError(f"Cannot rearrange unpacked payload: {exc}") from exc
    finally:
        shutil.rmtree(unpack_dir, ignore_errors=True)

    if result.preserved_extra:
        _LOGGER.warning(
            "Payload carries %d file(s) outside the add-ons path; keeping them in the firmware update: %s",
            len(result.preserved_extra),
            ", ".join(result.preserved_extra),
        )
    if result.dropped:
        _LOGGER.info("Dropped %d file(s) outside the add-ons path", len(result.dropped))

    if payload.is_relative_to(staging.root):
        payload.unlink(missing_ok=True)
        payload_dir = payload.parent
        if payload_dir != staging.root and not any(payload_dir.iterdir()):
            payload_dir.rmdir()

    result.tree = staging.rescan()
    _LOGGER.info(
        "Extracted payload: %d add-on file(s), %d OS addition file(s)",
        len(result.tree.entries_under(staging.adds_dir.name)),
        len(result.tree.entries_under(staging.os_root.name)),
    )
    return result


__all__ = ["ExtractionResult", "UNPACK_DIR_NAME", "extract_payload", "unpack_tarball"]
