"""Shared fixtures: synthetic NickelMenu releases and application projects."""
from __future__ import annotations

import io
import os
import subprocess
import sys
import tarfile
import zipfile
from pathlib import Path
from typing import Callable, Mapping

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from kobo_release.config import ENV_PREFIX, BundleSettings

DEFAULT_PAYLOAD: dict[str, bytes] = {
    "mnt/onboard/.adds/menu-fragment/entry.cfg": b"menu_item:main:Reader:cmd_spawn:quiet:/bin/true\n",
    "mnt/onboard/.adds/nm/doc": b"NickelMenu documentation\n",
    "usr/local/Kobo/imageformats/libnm.so": b"\x7fELF-fake-library",
}


def build_tarball(members: Mapping[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def write_zip(path: Path, members: Mapping[str, bytes]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return path


@pytest.fixture(autouse=True)
def _clear_bundle_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith(ENV_PREFIX):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture()
def make_tarball(tmp_path: Path) -> Callable[..., Path]:
    def _make(members: Mapping[str, bytes] | None = None, name: str = "KoboRoot.tgz") -> Path:
        path = tmp_path / "inputs" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(build_tarball(DEFAULT_PAYLOAD if members is None else members))
        return path

    return _make


@pytest.fixture()
def nickel_tgz(make_tarball: Callable[..., Path]) -> Path:
    return make_tarball()


@pytest.fixture()
def nickel_zip(tmp_path: Path) -> Path:
    return write_zip(
        tmp_path / "inputs" / "KoboRoot-nm.zip",
        {"README.txt": b"NickelMenu release\n", "KoboRoot.tgz": build_tarball(DEFAULT_PAYLOAD)},
    )


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    dist = root / "dist"
    dist.mkdir(parents=True)
    (dist / "main.bin").write_bytes(b"reader-binary")
    fragments = root / "contrib" / "NickelMenu"
    fragments.mkdir(parents=True)
    (fragments / "reader").write_text("menu_item:main:Reader:cmd_spawn:/mnt/onboard/.adds/reader/run.sh\n")
    (root / "Cargo.toml").write_text('[package]\nname = "reader"\nversion = "1.2.0"\n', encoding="utf-8")
    return root


@pytest.fixture()
def settings(project: Path, tmp_path: Path) -> BundleSettings:
    return BundleSettings(
        app_name="reader",
        project_root=project,
        output_dir=tmp_path / "out",
        build_command=(),
        cargo_command=(),
    )


class FakeRunner:
    """Records invocations and answers with a canned process result."""

    def __init__(
        self,
        *,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        side_effect: Callable[[list[str], str | None], None] | None = None,
    ) -> None:
        self.calls: list[tuple[list[str], dict[str, object]]] = []
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.side_effect = side_effect

    def __call__(self, command, **kwargs) -> subprocess.CompletedProcess[str]:
        self.calls.append((list(command), kwargs))
        if self.side_effect is not None:
            self.side_effect(list(command), kwargs.get("cwd"))  # type: ignore[arg-type]
        return subprocess.CompletedProcess(command, self.returncode, self.stdout, self.stderr)


@pytest.fixture()
def fake_runner() -> Callable[..., FakeRunner]:
    return FakeRunner


@pytest.fixture()
def tarball_bytes() -> Callable[[Mapping[str, bytes]], bytes]:
    return build_tarball


@pytest.fixture()
def zip_writer() -> Callable[[Path, Mapping[str, bytes]], Path]:
    return write_zip
