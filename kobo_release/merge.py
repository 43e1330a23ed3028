"""Grafting of the application build and menu fragments into the add-ons tree."""
from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Callable

from .config import BundleSettings
from .errors import BuildStepError, FilesystemError
from .models import MENU_CONFIG_DIR, StagingTree

_LOGGER = logging.getLogger(__name__)

Runner = Callable[..., "subprocess.CompletedProcess[str]"]


def ensure_application_dist(settings: BundleSettings, runner: Runner = subprocess.run) -> bool:
    """Make sure the application distribution exists, building it at most once.

    Returns ``True`` when the external build command had to be run.
    """

    dist_path = settings.dist_path
    if dist_path.is_dir():
        return False
    if not settings.build_command:
        raise FilesystemError(
            f"Application distribution {dist_path} is missing; build it first (no build command configured)"
        )

    command = list(settings.build_command)
    _LOGGER.info("Application distribution missing, running %s", " ".join(command))
    try:
        result = runner(
            command,
            cwd=str(settings.project_root.expanduser()),
            check=False,
            capture_output=True,
            text=True,
            timeout=settings.build_timeout,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        raise BuildStepError(f"Cannot run build command {' '.join(command)}: {exc}") from exc
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise BuildStepError(
            "Build command {} failed with exit code {}: {}".format(" ".join(command), result.returncode, stderr),
            returncode=result.returncode,
        )
    if not dist_path.is_dir():
        raise FilesystemError(f"Build command finished but {dist_path} was not produced")
    return True


def _copy_tree(source: Path, destination: Path) -> int:
    copied = 0
    for path in sorted(source.rglob("*")):
        target = destination / path.relative_to(source)
        if path.is_dir() and not path.is_symlink():
            if target.is_symlink() or (target.exists() and not target.is_dir()):
                target.unlink()
            target.mkdir(parents=True, exist_ok=True)
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        elif target.exists() or target.is_symlink():
            target.unlink()
        shutil.copy2(path, target, follow_symlinks=False)
        copied += 1
    return copied


def merge_application_dist(tree: StagingTree, dist_dir: Path, app_name: str) -> StagingTree:
    """Copy ``dist_dir`` wholesale into ``.adds/<app_name>``."""

    if not dist_dir.is_dir():
        raise FilesystemError(f"Application distribution not found: {dist_dir}")
    destination = tree.adds_dir / app_name
    try:
        destination.mkdir(parents=True, exist_ok=True)
        copied = _copy_tree(dist_dir, destination)
    except OSError as exc:
        raise FilesystemError(f"Cannot copy {dist_dir} into {destination}: {exc}") from exc
    _LOGGER.info("Merged %d application file(s) into %s/%s", copied, tree.adds_dir.name, app_name)
    return tree.rescan()


def merge_fragments(tree: StagingTree, fragments_dir: Path) -> StagingTree:
    """Copy every menu fragment file into the menu-injector configuration directory."""

    if not fragments_dir.is_dir():
        _LOGGER.warning("Menu fragment directory %s not found, nothing to merge", fragments_dir)
        return tree
    destination = tree.root / MENU_CONFIG_DIR
    copied = 0
    try:
        destination.mkdir(parents=True, exist_ok=True)
        for fragment in sorted(fragments_dir.iterdir()):
            if not fragment.is_file():
                _LOGGER.debug("Skipping non-file fragment entry %s", fragment)
                continue
            shutil.copy2(fragment, destination / fragment.name)
            copied += 1
    except OSError as exc:
        raise FilesystemError(f"Cannot copy menu fragments into {destination}: {exc}") from exc
    _LOGGER.info("Merged %d menu fragment(s) into %s", copied, MENU_CONFIG_DIR.as_posix())
    return tree.rescan()


__all__ = ["ensure_application_dist", "merge_application_dist", "merge_fragments"]
