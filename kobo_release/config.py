"""Settings for the bundler: defaults, JSON/YAML file, environment, CLI."""
from __future__ import annotations

import dataclasses
import json
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

try:  # pragma: no cover - optional dependency
    import yaml
except ModuleNotFoundError:  # pragma: no cover - optional dependency
    yaml = None  # type: ignore[assignment]

from .errors import UsageError
from .models import ExtraContentPolicy

ENV_PREFIX = "KOBO_BUNDLE_"
DEFAULT_APP_NAME = "ao3reader"
DEFAULT_BUILD_COMMAND = ("./dist.sh",)


@dataclass(slots=True, frozen=True)
class BundleSettings:
    """Resolved configuration of a bundling run.

    Relative paths are interpreted against ``project_root`` (inputs) or the
    invocation directory (``output_dir``).
    """

    app_name: str = DEFAULT_APP_NAME
    crate_name: str | None = None
    project_root: Path = Path(".")
    dist_dir: Path = Path("dist")
    fragments_dir: Path = Path("contrib/NickelMenu")
    build_command: tuple[str, ...] = DEFAULT_BUILD_COMMAND
    build_timeout: float | None = None
    cargo_command: tuple[str, ...] = ("cargo",)
    output_dir: Path = Path(".")
    extra_content: ExtraContentPolicy = ExtraContentPolicy.PRESERVE
    verify: bool = True
    version: str | None = None

    @property
    def crate(self) -> str:
        return self.crate_name or self.app_name

    def project_path(self, value: Path) -> Path:
        value = value.expanduser()
        if value.is_absolute():
            return value
        return self.project_root.expanduser() / value

    @property
    def dist_path(self) -> Path:
        return self.project_path(self.dist_dir)

    @property
    def fragments_path(self) -> Path:
        return self.project_path(self.fragments_dir)

    @property
    def output_path(self) -> Path:
        return self.output_dir.expanduser()

    def with_overrides(self, **changes: Any) -> "BundleSettings":
        """Return a copy with non-``None`` values from ``changes`` applied."""

        filtered = {key: value for key, value in changes.items() if value is not None}
        if not filtered:
            return self
        return _coerce(self, filtered, source="overrides")


def env_flag(prefix: str, name: str, default: bool) -> bool:
    value = os.environ.get(f"{prefix}{name}")
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def env_value(prefix: str, name: str, default: str | None = None) -> str | None:
    value = os.environ.get(f"{prefix}{name}")
    if value is None:
        return default
    stripped = value.strip()
    return stripped or default


def _load_mapping(path: Path) -> Mapping[str, object]:
    """Load a settings mapping from JSON or YAML."""

    path = path.expanduser()
    if not path.exists():
        raise UsageError(f"Settings file not found: {path}")
    payload = path.read_text(encoding="utf-8")
    data: Any
    if path.suffix.lower() in {".yaml", ".yml"}:
        if yaml is None:
            raise UsageError("PyYAML is required to parse YAML settings files")
        data = yaml.safe_load(payload)
    else:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            if yaml is None:
                raise UsageError(f"Settings file {path} contains invalid JSON: {exc}") from exc
            data = yaml.safe_load(payload)
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise UsageError(f"Settings file {path} must contain a mapping")
    return data


def _command(value: object, *, key: str) -> tuple[str, ...]:
    if isinstance(value, str):
        parts = tuple(shlex.split(value))
    elif isinstance(value, (list, tuple)):
        parts = tuple(str(item) for item in value)
    else:
        raise UsageError(f"'{key}' must be a string or a list of strings")
    return parts


def _coerce(base: BundleSettings, values: Mapping[str, object], *, source: str) -> BundleSettings:
    known = {item.name for item in dataclasses.fields(BundleSettings)}
    unknown = sorted(str(key) for key in values if key not in known)
    if unknown:
        raise UsageError(f"Unknown settings in {source}: {', '.join(unknown)}")

    changes: dict[str, Any] = {}
    for key, value in values.items():
        if key in {"project_root", "dist_dir", "fragments_dir", "output_dir"}:
            changes[key] = Path(str(value))
        elif key in {"build_command", "cargo_command"}:
            changes[key] = _command(value, key=key) if value not in (None, "") else ()
        elif key == "build_timeout":
            try:
                changes[key] = float(value) if value not in (None, "") else None  # type: ignore[arg-type]
            except (TypeError, ValueError) as exc:
                raise UsageError(f"'build_timeout' must be a number, got {value!r}") from exc
        elif key == "extra_content":
            if isinstance(value, ExtraContentPolicy):
                changes[key] = value
            else:
                try:
                    changes[key] = ExtraContentPolicy(str(value).strip().lower())
                except ValueError as exc:
                    choices = ", ".join(policy.value for policy in ExtraContentPolicy)
                    raise UsageError(f"'extra_content' must be one of: {choices}") from exc
        elif key == "verify":
            if isinstance(value, str):
                changes[key] = value.strip().lower() in {"1", "true", "yes", "on"}
            else:
                changes[key] = bool(value)
        elif key in {"app_name", "crate_name", "version"}:
            text = str(value).strip() if value is not None else ""
            if key == "app_name" and not text:
                raise UsageError("'app_name' cannot be empty")
            changes[key] = text or None
        else:  # pragma: no cover - every field is handled above
            changes[key] = value
    return dataclasses.replace(base, **changes)


def _from_environment(prefix: str = ENV_PREFIX) -> dict[str, object]:
    values: dict[str, object] = {}
    for key in (
        "app_name",
        "crate_name",
        "project_root",
        "dist_dir",
        "fragments_dir",
        "build_command",
        "build_timeout",
        "output_dir",
        "extra_content",
        "version",
    ):
        raw = env_value(prefix, key.upper())
        if raw is not None:
            values[key] = raw
    if os.environ.get(f"{prefix}VERIFY") is not None:
        values["verify"] = env_flag(prefix, "VERIFY", True)
    return values


def load_settings(
    path: Path | None = None,
    *,
    overrides: Mapping[str, object] | None = None,
    use_environment: bool = True,
) -> BundleSettings:
    """Build settings from defaults, an optional file, the environment and overrides."""

    settings = BundleSettings()
    if path is not None:
        settings = _coerce(settings, _load_mapping(path), source=str(path))
    if use_environment:
        env_values = _from_environment()
        if env_values:
            settings = _coerce(settings, env_values, source="environment")
    if overrides:
        settings = settings.with_overrides(**overrides)
    return settings


__all__ = [
    "BundleSettings",
    "DEFAULT_APP_NAME",
    "DEFAULT_BUILD_COMMAND",
    "ENV_PREFIX",
    "env_flag",
    "env_value",
    "load_settings",
]
