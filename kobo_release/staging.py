"""Scratch directory lifecycle for bundling runs."""
from __future__ import annotations

import contextlib
import logging
import shutil
import signal
import tempfile
from pathlib import Path
from typing import Iterator

from .errors import FilesystemError
from .models import MANAGED_SUBTREES, StagingTree

_LOGGER = logging.getLogger(__name__)

STAGING_PREFIX = ".bundle-"


def create_staging(work_dir: Path) -> StagingTree:
    work_dir = work_dir.expanduser().resolve()
    try:
        work_dir.mkdir(parents=True, exist_ok=True)
        root = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=work_dir))
    except OSError as exc:
        raise FilesystemError(f"Cannot create staging directory in {work_dir}: {exc}") from exc
    _LOGGER.debug("Staging directory created at %s", root)
    return StagingTree(root=root)


def cleanup_staging(tree: StagingTree) -> None:
    """Remove the managed subtrees first, then whatever is left of the root."""

    for name in MANAGED_SUBTREES:
        shutil.rmtree(tree.root / name, ignore_errors=True)
    shutil.rmtree(tree.root, ignore_errors=True)
    if tree.root.exists():
        _LOGGER.warning("Staging directory could not be fully removed: %s", tree.root)
    else:
        _LOGGER.debug("Staging directory removed: %s", tree.root)


def purge_stale_staging(work_dir: Path) -> list[Path]:
    """Delete staging directories left behind by killed runs."""

    removed: list[Path] = []
    work_dir = work_dir.expanduser()
    if not work_dir.is_dir():
        return removed
    for candidate in sorted(work_dir.glob(f"{STAGING_PREFIX}*")):
        if candidate.is_dir() and not candidate.is_symlink():
            _LOGGER.info("Removing stale staging directory %s", candidate)
            shutil.rmtree(candidate, ignore_errors=True)
            removed.append(candidate)
    return removed


@contextlib.contextmanager
def staging_tree(work_dir: Path) -> Iterator[StagingTree]:
    """Yield a fresh :class:`StagingTree` that is removed on every exit path."""

    tree = create_staging(work_dir)
    try:
        yield tree
    finally:
        cleanup_staging(tree)


class TerminationRequested(BaseException):
    """Raised from the SIGTERM handler so ``finally`` blocks still run."""

    def __init__(self, signum: int) -> None:
        super().__init__(f"terminated by signal {signum}")
        self.signum = signum


@contextlib.contextmanager
def terminate_gracefully(signals: tuple[int, ...] = (signal.SIGTERM,)) -> Iterator[None]:
    """Turn termination signals into :class:`TerminationRequested` for the block."""

    def _handle_signal(signum, _frame) -> None:
        raise TerminationRequested(signum)

    previous: dict[int, object] = {}
    for sig in signals:
        try:
            previous[sig] = signal.signal(sig, _handle_signal)
        except ValueError:  # pragma: no cover - not called from the main thread
            _LOGGER.debug("Cannot install handler for signal %s outside the main thread", sig)
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)  # type: ignore[arg-type]


__all__ = [
    "STAGING_PREFIX",
    "TerminationRequested",
    "cleanup_staging",
    "create_staging",
    "purge_stale_staging",
    "staging_tree",
    "terminate_gracefully",
]
