from __future__ import annotations

import json
from pathlib import Path

import pytest

from kobo_release.cli import main


def _write_config(tmp_path: Path, project: Path) -> Path:
    config = tmp_path / "bundle.json"
    config.write_text(
        json.dumps({"app_name": "reader", "project_root": str(project), "cargo_command": []}),
        encoding="utf-8",
    )
    return config


def test_missing_archive_prints_usage(capsys: pytest.CaptureFixture[str]) -> None:
    assert main([]) == 1

    captured = capsys.readouterr()
    assert "usage: kobo-bundle" in captured.err
    assert captured.out == ""


def test_unknown_option_is_usage_error(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--frobnicate", "archive.zip"]) == 1
    assert "unrecognized arguments" in capsys.readouterr().err


def test_successful_run(
    nickel_zip: Path, project: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    out = tmp_path / "releases"
    report_path = tmp_path / "reports" / "run.json"

    exit_code = main(
        [
            str(nickel_zip),
            "--config",
            str(_write_config(tmp_path, project)),
            "--output-dir",
            str(out),
            "--report",
            str(report_path),
            "--log-level",
            "WARNING",
        ]
    )

    assert exit_code == 0
    assert (out / "reader-1.2.0.zip").is_file()
    assert (out / "reader-bundle-1.2.0.zip").is_file()
    printed = capsys.readouterr().out.split()
    assert printed == [str(out / "reader-1.2.0.zip"), str(out / "reader-bundle-1.2.0.zip")]

    report = json.loads(report_path.read_text(encoding="utf-8"))
    assert report["app_name"] == "reader"
    assert report["run"]["states"][-1] == "cleaned-up"
    assert report["run"]["version"] == "1.2.0"


def test_version_flag_overrides_manifest(nickel_tgz: Path, project: Path, tmp_path: Path) -> None:
    out = tmp_path / "releases"

    exit_code = main(
        [
            str(nickel_tgz),
            "--config",
            str(_write_config(tmp_path, project)),
            "--output-dir",
            str(out),
            "--version",
            "9.9.9",
            "--app-name",
            "shelf",
            "--discard-extra",
            "--no-verify",
        ]
    )

    assert exit_code == 0
    assert sorted(path.name for path in out.iterdir()) == ["shelf-9.9.9.zip", "shelf-bundle-9.9.9.zip"]


def test_pipeline_failure_exits_with_diagnostic(
    tmp_path: Path, project: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    garbage = tmp_path / "release.bin"
    garbage.write_bytes(b"not an archive at all")
    report_path = tmp_path / "run.json"

    exit_code = main(
        [
            str(garbage),
            "--config",
            str(_write_config(tmp_path, project)),
            "--output-dir",
            str(tmp_path / "releases"),
            "--report",
            str(report_path),
        ]
    )

    assert exit_code == 1
    err = capsys.readouterr().err
    assert "kobo-bundle: error: [classify]" in err
    assert json.loads(report_path.read_text(encoding="utf-8"))["run"]["states"] == ["start", "aborted"]


def test_clean_stale_removes_leftovers(nickel_tgz: Path, project: Path, tmp_path: Path) -> None:
    out = tmp_path / "releases"
    stale = out / ".bundle-leftover"
    (stale / ".adds").mkdir(parents=True)

    exit_code = main(
        [
            str(nickel_tgz),
            "--config",
            str(_write_config(tmp_path, project)),
            "--output-dir",
            str(out),
            "--clean-stale",
        ]
    )

    assert exit_code == 0
    assert not stale.exists()


def test_unwritable_report_keeps_original_diagnostic(
    tmp_path: Path, project: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    garbage = tmp_path / "release.bin"
    garbage.write_bytes(b"not an archive at all")
    blocker = tmp_path / "reports"
    blocker.write_text("a file, not a directory", encoding="utf-8")

    exit_code = main(
        [
            str(garbage),
            "--config",
            str(_write_config(tmp_path, project)),
            "--output-dir",
            str(tmp_path / "releases"),
            "--report",
            str(blocker / "run.json"),
        ]
    )

    assert exit_code == 1
    assert "kobo-bundle: error: [classify]" in capsys.readouterr().err
