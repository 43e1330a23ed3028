"""Assembly of the add-ons-only and firmware-ready packages."""
from __future__ import annotations

import contextlib
import gzip
import hashlib
import io
import logging
import os
import stat
import tarfile
import tempfile
import zipfile
from pathlib import Path
from typing import Iterator

from .errors import ArtifactIntegrityError, FilesystemError
from .models import (
    ADDS_DIR_NAME,
    DEVICE_ADDS_PATH,
    FIRMWARE_DIR_NAME,
    FIRMWARE_PAYLOAD_NAME,
    ArtifactKind,
    OutputArtifact,
    StagingTree,
)

_LOGGER = logging.getLogger(__name__)

# Fixed timestamp keeps repeated builds of the same tree byte-identical.
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)
_TAR_MTIME = 315532800


def app_only_name(app_name: str, version: str) -> str:
    return f"{app_name}-{version}.zip"


def bundle_name(app_name: str, version: str) -> str:
    return f"{app_name}-bundle-{version}.zip"


def _hash_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


@contextlib.contextmanager
def _atomic_destination(destination: Path) -> Iterator[Path]:
    """Yield a temporary path next to ``destination`` and move it into place on success."""

    destination.parent.mkdir(parents=True, exist_ok=True)
    handle, raw_tmp = tempfile.mkstemp(prefix=f".{destination.name}.", suffix=".tmp", dir=destination.parent)
    os.close(handle)
    tmp = Path(raw_tmp)
    try:
        yield tmp
        if destination.exists():
            _LOGGER.warning("Replacing existing artifact %s", destination)
        os.replace(tmp, destination)
    finally:
        with contextlib.suppress(OSError):
            tmp.unlink()


def _walk_sorted(root: Path) -> Iterator[Path]:
    yield root
    if root.is_dir() and not root.is_symlink():
        for child in sorted(root.iterdir(), key=lambda item: item.name):
            yield from _walk_sorted(child)


def _write_zip(destination: Path, root: Path, top_levels: tuple[str, ...]) -> int:
    count = 0
    with zipfile.ZipFile(destination, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
        for top in top_levels:
            base = root / top
            if not base.exists():
                continue
            for path in _walk_sorted(base):
                relative = path.relative_to(root).as_posix()
                mode = path.lstat().st_mode
                if path.is_dir() and not path.is_symlink():
                    info = zipfile.ZipInfo(relative + "/", date_time=_ZIP_EPOCH)
                    info.external_attr = ((stat.S_IFDIR | 0o755) << 16) | 0x10
                    archive.writestr(info, b"")
                    continue
                info = zipfile.ZipInfo(relative, date_time=_ZIP_EPOCH)
                info.compress_type = zipfile.ZIP_DEFLATED
                if path.is_symlink():
                    info.external_attr = (stat.S_IFLNK | 0o777) << 16
                    archive.writestr(info, os.readlink(path))
                else:
                    info.external_attr = (stat.S_IFREG | stat.S_IMODE(mode)) << 16
                    archive.writestr(info, path.read_bytes())
                count += 1
    return count


def _normalize_tarinfo(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.mtime = _TAR_MTIME
    info.uid = info.gid = 0
    info.uname = info.gname = "root"
    return info


def _write_firmware_tarball(tree: StagingTree, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    with destination.open("wb") as raw:
        with gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as compressed:
            with tarfile.open(fileobj=compressed, mode="w", format=tarfile.GNU_FORMAT) as archive:
                archive.add(tree.adds_dir, arcname=DEVICE_ADDS_PATH.as_posix(), filter=_normalize_tarinfo)
                if tree.os_root.is_dir():
                    for child in sorted(tree.os_root.iterdir(), key=lambda item: item.name):
                        archive.add(child, arcname=child.name, filter=_normalize_tarinfo)


def _artifact(kind: ArtifactKind, path: Path) -> OutputArtifact:
    return OutputArtifact(kind=kind, path=path, size=path.stat().st_size, sha256=_hash_sha256(path))


def build_app_only(tree: StagingTree, output_dir: Path, app_name: str, version: str) -> OutputArtifact:
    """Zip the add-ons subtree alone for manual installation."""

    if not tree.adds_dir.is_dir():
        raise FilesystemError(f"Staging tree has no {ADDS_DIR_NAME} directory")
    destination = output_dir.expanduser() / app_only_name(app_name, version)
    try:
        with _atomic_destination(destination) as tmp:
            count = _write_zip(tmp, tree.root, (ADDS_DIR_NAME,))
    except (OSError, zipfile.BadZipFile) as exc:
        raise FilesystemError(f"Cannot write {destination}: {exc}") from exc
    _LOGGER.info("Wrote %s (%d files)", destination, count)
    return _artifact(ArtifactKind.APP_ONLY, destination)


def build_bundle(tree: StagingTree, output_dir: Path, app_name: str, version: str) -> OutputArtifact:
    """Repack the payload as the firmware update and zip it with the add-ons subtree."""

    if not tree.adds_dir.is_dir():
        raise FilesystemError(f"Staging tree has no {ADDS_DIR_NAME} directory")
    firmware_tarball = tree.firmware_dir / FIRMWARE_PAYLOAD_NAME
    destination = output_dir.expanduser() / bundle_name(app_name, version)
    try:
        if tree.firmware_dir.exists():
            raise FilesystemError(f"Firmware directory already present in staging: {tree.firmware_dir}")
        _write_firmware_tarball(tree, firmware_tarball)
        _LOGGER.debug("Firmware update tarball written to %s", firmware_tarball)
        with _atomic_destination(destination) as tmp:
            count = _write_zip(tmp, tree.root, (ADDS_DIR_NAME, FIRMWARE_DIR_NAME))
    except (OSError, tarfile.TarError) as exc:
        raise FilesystemError(f"Cannot write {destination}: {exc}") from exc
    _LOGGER.info("Wrote %s (%d files)", destination, count)
    return _artifact(ArtifactKind.BUNDLE, destination)


def read_zip_tree(path: Path, prefix: str) -> dict[str, bytes]:
    """Return the files of ``path`` below ``prefix`` keyed by their relative name."""

    marker = prefix.rstrip("/") + "/"
    with zipfile.ZipFile(path) as archive:
        return {
            info.filename[len(marker):]: archive.read(info)
            for info in archive.infolist()
            if info.filename.startswith(marker) and not info.is_dir()
        }


def read_tar_tree(data: bytes, prefix: str) -> dict[str, bytes]:
    marker = prefix.rstrip("/") + "/"
    files: dict[str, bytes] = {}
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as archive:
        for member in archive.getmembers():
            name = member.name[2:] if member.name.startswith("./") else member.name
            if not name.startswith(marker):
                continue
            if member.issym():
                files[name[len(marker):]] = member.linkname.encode("utf-8")
            elif member.isfile() or member.islnk():
                # extractfile() follows hard links to the earlier member.
                handle = archive.extractfile(member)
                if handle is not None:
                    files[name[len(marker):]] = handle.read()
    return files


def verify_artifacts(app_only: OutputArtifact, bundle: OutputArtifact) -> None:
    """Check the layout relation between the two artifacts."""

    firmware_prefix = f"{FIRMWARE_DIR_NAME}/"
    firmware_member = f"{FIRMWARE_DIR_NAME}/{FIRMWARE_PAYLOAD_NAME}"
    try:
        with zipfile.ZipFile(app_only.path) as archive:
            app_names = archive.namelist()
        with zipfile.ZipFile(bundle.path) as archive:
            bundle_names = archive.namelist()
            firmware_entries = [
                name for name in bundle_names if name.startswith(firmware_prefix) and not name.endswith("/")
            ]
            if firmware_entries != [firmware_member]:
                raise ArtifactIntegrityError(
                    f"{bundle.path.name} must hold exactly one {firmware_member}, found {firmware_entries}"
                )
            firmware_data = archive.read(firmware_member)
        if any(name == FIRMWARE_DIR_NAME or name.startswith(firmware_prefix) for name in app_names):
            raise ArtifactIntegrityError(f"{app_only.path.name} must not contain {FIRMWARE_DIR_NAME}")
        stray = [name for name in app_names if not name.startswith(f"{ADDS_DIR_NAME}/")]
        if stray:
            raise ArtifactIntegrityError(f"{app_only.path.name} has entries outside {ADDS_DIR_NAME}: {stray}")

        app_tree = read_zip_tree(app_only.path, ADDS_DIR_NAME)
        if read_zip_tree(bundle.path, ADDS_DIR_NAME) != app_tree:
            raise ArtifactIntegrityError(f"{bundle.path.name} add-ons differ from {app_only.path.name}")
        if read_tar_tree(firmware_data, DEVICE_ADDS_PATH.as_posix()) != app_tree:
            raise ArtifactIntegrityError(
                f"{firmware_member} in {bundle.path.name} does not reproduce the add-ons of {app_only.path.name}"
            )
    except (OSError, zipfile.BadZipFile, tarfile.TarError) as exc:
        raise ArtifactIntegrityError(f"Cannot inspect artifacts: {exc}") from exc
    _LOGGER.info("Verified %s against %s", bundle.path.name, app_only.path.name)


__all__ = [
    "app_only_name",
    "build_app_only",
    "build_bundle",
    "bundle_name",
    "read_tar_tree",
    "read_zip_tree",
    "verify_artifacts",
]
