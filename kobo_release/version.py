"""Resolution of the application version used to name the artifacts."""
from __future__ import annotations

import logging
import re
import subprocess
import tomllib
from pathlib import Path
from typing import Callable, Mapping

from .config import BundleSettings
from .errors import MetadataError

_LOGGER = logging.getLogger(__name__)

Runner = Callable[..., "subprocess.CompletedProcess[str]"]

_SEMVER_RE = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)


def validate_version(value: str) -> str:
    value = value.strip()
    if not value:
        raise MetadataError("Resolved version is empty")
    if not _SEMVER_RE.match(value):
        raise MetadataError(f"Version {value!r} is not a semantic version")
    return value


def _load_toml(path: Path) -> Mapping[str, object]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise MetadataError(f"Cannot parse {path}: {exc}") from exc
    except OSError as exc:
        raise MetadataError(f"Cannot read {path}: {exc}") from exc


def _crate_manifest(settings: BundleSettings) -> Path | None:
    root = settings.project_root.expanduser()
    for candidate in (root / "crates" / settings.crate / "Cargo.toml", root / "Cargo.toml"):
        if candidate.is_file():
            document = _load_toml(candidate)
            package = document.get("package")
            if isinstance(package, Mapping) and package.get("name") == settings.crate:
                return candidate
    return None


def _workspace_version(start: Path) -> str | None:
    for directory in start.parents:
        manifest = directory / "Cargo.toml"
        if not manifest.is_file():
            continue
        workspace = _load_toml(manifest).get("workspace")
        if not isinstance(workspace, Mapping):
            continue
        package = workspace.get("package")
        if isinstance(package, Mapping) and isinstance(package.get("version"), str):
            return str(package["version"])
        return None
    return None


def version_from_manifest(settings: BundleSettings) -> str | None:
    """Read ``[package].version`` of the application crate, following workspace inheritance."""

    manifest = _crate_manifest(settings)
    if manifest is None:
        return None
    package = _load_toml(manifest).get("package")
    version = package.get("version") if isinstance(package, Mapping) else None
    if isinstance(version, str):
        _LOGGER.debug("Version %s read from %s", version, manifest)
        return version
    if isinstance(version, Mapping) and version.get("workspace") is True:
        inherited = _workspace_version(manifest)
        if inherited is None:
            raise MetadataError(f"{manifest} inherits its version but no workspace version is declared")
        _LOGGER.debug("Version %s inherited from the workspace of %s", inherited, manifest)
        return inherited
    return None


def parse_pkgid(output: str) -> str | None:
    """Extract the version from ``cargo pkgid`` output.

    Handles both ``path+file:///src/crate#0.3.1`` and
    ``path+file:///src/crate#name@0.3.1`` forms.
    """

    text = output.strip()
    if "#" not in text:
        return None
    fragment = text.rsplit("#", 1)[1]
    if "@" in fragment:
        fragment = fragment.rsplit("@", 1)[1]
    elif ":" in fragment:
        fragment = fragment.rsplit(":", 1)[1]
    return fragment or None


def version_from_cargo(settings: BundleSettings, runner: Runner = subprocess.run) -> str | None:
    if not settings.cargo_command:
        return None
    command = [*settings.cargo_command, "pkgid", "-p", settings.crate]
    try:
        result = runner(
            command,
            cwd=str(settings.project_root.expanduser()),
            check=False,
            capture_output=True,
            text=True,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        _LOGGER.debug("Cannot run %s: %s", " ".join(command), exc)
        return None
    if result.returncode != 0:
        _LOGGER.debug("%s failed: %s", " ".join(command), (result.stderr or "").strip())
        return None
    return parse_pkgid(result.stdout or "")


def resolve_version(settings: BundleSettings, runner: Runner = subprocess.run) -> str:
    """Return the application version or raise :class:`MetadataError`."""

    if settings.version:
        return validate_version(settings.version)
    candidate = version_from_manifest(settings) or version_from_cargo(settings, runner)
    if candidate:
        version = validate_version(candidate)
        _LOGGER.info("Resolved %s version %s", settings.crate, version)
        return version
    raise MetadataError(f"Cannot resolve the version of {settings.crate}; refusing to build an unversioned release")


__all__ = [
    "parse_pkgid",
    "resolve_version",
    "validate_version",
    "version_from_cargo",
    "version_from_manifest",
]
