"""Value types passed between the bundling stages."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from pathlib import Path, PurePosixPath
from typing import Mapping

# Fixed device layout. The recovery process extracts KoboRoot.tgz at "/".
FIRMWARE_PAYLOAD_NAME = "KoboRoot.tgz"
DEVICE_ADDS_PATH = PurePosixPath("mnt/onboard/.adds")
ADDS_DIR_NAME = ".adds"
FIRMWARE_DIR_NAME = ".kobo"
MENU_CONFIG_DIR = PurePosixPath(ADDS_DIR_NAME) / "nm"
OS_ADDITIONS_DIR_NAME = "rootfs"
OS_ADDITIONS_KNOWN = ("usr",)
MANAGED_SUBTREES = (ADDS_DIR_NAME, OS_ADDITIONS_DIR_NAME, FIRMWARE_DIR_NAME)


class ArchiveFormat(enum.Enum):
    """Container formats accepted as menu-injector archives."""

    GZIP_TAR = "gzip-tar"
    ZIP_CONTAINER = "zip"


class ExtraContentPolicy(enum.Enum):
    """What to do with payload content outside the add-ons path."""

    PRESERVE = "preserve"
    DISCARD = "discard"


class ArtifactKind(enum.Enum):
    APP_ONLY = "app-only"
    BUNDLE = "bundle"


class PipelineState(enum.Enum):
    START = "start"
    LOCATED = "located"
    EXTRACTED = "extracted"
    MERGED = "merged"
    VERSIONED = "versioned"
    ASSEMBLED = "assembled"
    CLEANED_UP = "cleaned-up"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.CLEANED_UP, PipelineState.ABORTED)


@dataclass(slots=True, frozen=True)
class SourceArchive:
    """User supplied archive together with its detected format."""

    path: Path
    format: ArchiveFormat


@dataclass(slots=True, frozen=True)
class StagingTree:
    """Scratch area owned by a single bundling run.

    ``entries`` lists staged files relative to ``root`` using POSIX separators.
    Stages never mutate a tree in place; they return a refreshed copy through
    :meth:`rescan`.
    """

    root: Path
    entries: tuple[str, ...] = ()

    @property
    def adds_dir(self) -> Path:
        return self.root / ADDS_DIR_NAME

    @property
    def os_root(self) -> Path:
        return self.root / OS_ADDITIONS_DIR_NAME

    @property
    def firmware_dir(self) -> Path:
        return self.root / FIRMWARE_DIR_NAME

    def entries_under(self, prefix: str) -> tuple[str, ...]:
        marker = prefix.rstrip("/") + "/"
        return tuple(entry for entry in self.entries if entry.startswith(marker))

    def rescan(self) -> "StagingTree":
        """Return a copy whose manifest reflects the managed subtrees on disk."""
        collected: list[str] = []
        for top in MANAGED_SUBTREES:
            base = self.root / top
            if not base.exists():
                continue
            for path in sorted(base.rglob("*")):
                if path.is_dir() and not path.is_symlink():
                    continue
                collected.append(path.relative_to(self.root).as_posix())
        return replace(self, entries=tuple(sorted(collected)))


@dataclass(slots=True, frozen=True)
class OutputArtifact:
    kind: ArtifactKind
    path: Path
    size: int = 0
    sha256: str | None = None

    def to_mapping(self) -> Mapping[str, object]:
        return {
            "kind": self.kind.value,
            "path": str(self.path),
            "size": self.size,
            "sha256": self.sha256,
        }


@dataclass(slots=True)
class BundleReport:
    """Summary of a bundling run."""

    archive: SourceArchive | None = None
    version: str | None = None
    staging_root: Path | None = None
    build_invoked: bool = False
    artifacts: list[OutputArtifact] = field(default_factory=list)
    preserved_extra: list[str] = field(default_factory=list)
    states: list[PipelineState] = field(default_factory=lambda: [PipelineState.START])

    @property
    def state(self) -> PipelineState:
        return self.states[-1]

    def advance(self, state: PipelineState) -> None:
        if self.state.is_terminal:
            raise RuntimeError(f"Pipeline already finished in state {self.state.value}")
        self.states.append(state)

    def artifact(self, kind: ArtifactKind) -> OutputArtifact | None:
        for candidate in self.artifacts:
            if candidate.kind is kind:
                return candidate
        return None

    def to_mapping(self) -> Mapping[str, object]:
        return {
            "archive": str(self.archive.path) if self.archive else None,
            "format": self.archive.format.value if self.archive else None,
            "version": self.version,
            "build_invoked": self.build_invoked,
            "artifacts": [artifact.to_mapping() for artifact in self.artifacts],
            "preserved_extra": list(self.preserved_extra),
            "states": [state.value for state in self.states],
        }


__all__ = [
    "ADDS_DIR_NAME",
    "DEVICE_ADDS_PATH",
    "FIRMWARE_DIR_NAME",
    "FIRMWARE_PAYLOAD_NAME",
    "MANAGED_SUBTREES",
    "MENU_CONFIG_DIR",
    "OS_ADDITIONS_DIR_NAME",
    "OS_ADDITIONS_KNOWN",
    "ArchiveFormat",
    "ArtifactKind",
    "BundleReport",
    "ExtraContentPolicy",
    "OutputArtifact",
    "PipelineState",
    "SourceArchive",
    "StagingTree",
]
