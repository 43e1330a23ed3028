from __future__ import annotations

import dataclasses
import subprocess
from pathlib import Path

import pytest

from kobo_release.config import BundleSettings
from kobo_release.errors import BuildStepError, FilesystemError
from kobo_release.merge import ensure_application_dist, merge_application_dist, merge_fragments
from kobo_release.staging import create_staging


def _staged_tree(tmp_path: Path):
    tree = create_staging(tmp_path / "work")
    (tree.adds_dir / "nm").mkdir(parents=True)
    (tree.adds_dir / "nm" / "doc").write_text("upstream doc", encoding="utf-8")
    return tree.rescan()


def test_existing_dist_skips_build(settings: BundleSettings, fake_runner) -> None:
    runner = fake_runner()

    assert ensure_application_dist(dataclasses.replace(settings, build_command=("./dist.sh",)), runner) is False
    assert runner.calls == []


def test_missing_dist_runs_build_exactly_once(settings: BundleSettings, fake_runner) -> None:
    settings = dataclasses.replace(settings, dist_dir=Path("build/dist"), build_command=("./dist.sh", "--release"))

    def _produce(_command: list[str], cwd: str | None) -> None:
        target = Path(cwd) / "build" / "dist"
        target.mkdir(parents=True)
        (target / "main.bin").write_bytes(b"fresh")

    runner = fake_runner(side_effect=_produce)

    assert ensure_application_dist(settings, runner) is True
    assert len(runner.calls) == 1
    command, kwargs = runner.calls[0]
    assert command == ["./dist.sh", "--release"]
    assert kwargs["cwd"] == str(settings.project_root)
    assert kwargs["check"] is False


def test_missing_dist_without_build_command(settings: BundleSettings) -> None:
    settings = dataclasses.replace(settings, dist_dir=Path("nowhere"), build_command=())

    with pytest.raises(FilesystemError, match="build it first"):
        ensure_application_dist(settings)


def test_failing_build_raises_build_step_error(settings: BundleSettings, fake_runner) -> None:
    settings = dataclasses.replace(settings, dist_dir=Path("nowhere"), build_command=("./dist.sh",))
    runner = fake_runner(returncode=2, stderr="cargo exploded")

    with pytest.raises(BuildStepError) as excinfo:
        ensure_application_dist(settings, runner)
    assert excinfo.value.returncode == 2
    assert "cargo exploded" in str(excinfo.value)
    assert len(runner.calls) == 1


def test_build_that_produces_nothing_is_reported(settings: BundleSettings, fake_runner) -> None:
    settings = dataclasses.replace(settings, dist_dir=Path("nowhere"), build_command=("./dist.sh",))

    with pytest.raises(FilesystemError, match="was not produced"):
        ensure_application_dist(settings, fake_runner())


def test_build_command_that_cannot_start(settings: BundleSettings) -> None:
    settings = dataclasses.replace(settings, dist_dir=Path("nowhere"), build_command=("./dist.sh",))

    def _timeout(command, **_kwargs):
        raise subprocess.TimeoutExpired(command, 5)

    with pytest.raises(BuildStepError, match="Cannot run build command"):
        ensure_application_dist(settings, _timeout)


def test_merge_application_dist_overwrites_by_name(tmp_path: Path, project: Path) -> None:
    tree = _staged_tree(tmp_path)
    (tree.adds_dir / "reader").mkdir()
    (tree.adds_dir / "reader" / "main.bin").write_bytes(b"stale")
    (tree.adds_dir / "reader" / "keep.txt").write_text("untouched", encoding="utf-8")

    merged = merge_application_dist(tree, project / "dist", "reader")

    assert (merged.adds_dir / "reader" / "main.bin").read_bytes() == b"reader-binary"
    assert (merged.adds_dir / "reader" / "keep.txt").read_text(encoding="utf-8") == "untouched"
    assert ".adds/reader/main.bin" in merged.entries
    assert ".adds/reader/main.bin" not in tree.entries


def test_merge_application_dist_requires_directory(tmp_path: Path) -> None:
    tree = _staged_tree(tmp_path)

    with pytest.raises(FilesystemError, match="not found"):
        merge_application_dist(tree, tmp_path / "missing", "reader")


def test_merge_fragments_copies_regular_files_only(tmp_path: Path) -> None:
    tree = _staged_tree(tmp_path)
    fragments = tmp_path / "fragments"
    (fragments / "nested").mkdir(parents=True)
    (fragments / "reader").write_text("menu_item", encoding="utf-8")
    (fragments / "doc").write_text("our doc", encoding="utf-8")
    (fragments / "nested" / "ignored").write_text("x", encoding="utf-8")

    merged = merge_fragments(tree, fragments)

    menu_dir = merged.adds_dir / "nm"
    assert (menu_dir / "reader").read_text(encoding="utf-8") == "menu_item"
    assert (menu_dir / "doc").read_text(encoding="utf-8") == "our doc"
    assert not (menu_dir / "nested").exists()


def test_merge_fragments_missing_directory_is_a_warning(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    tree = _staged_tree(tmp_path)

    with caplog.at_level("WARNING"):
        merged = merge_fragments(tree, tmp_path / "missing")

    assert merged == tree
    assert "not found" in caplog.text
