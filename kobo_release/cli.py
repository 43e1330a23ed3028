"""Command line entry point: ``kobo-bundle NICKEL_MENU_ARCHIVE``."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .config import BundleSettings, load_settings
from .errors import BundleError, UsageError
from .models import BundleReport, ExtraContentPolicy
from .pipeline import BundlePipeline
from .staging import TerminationRequested, purge_stale_staging, terminate_gracefully

_LOGGER = logging.getLogger(__name__)

PROG = "kobo-bundle"


class _ArgumentParser(argparse.ArgumentParser):
    """Parser that reports usage problems as :class:`UsageError` instead of exiting."""

    def error(self, message: str) -> None:  # type: ignore[override]
        raise UsageError(message)


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog=PROG,
        description="Bundle the application build with a NickelMenu release into installable zip archives",
    )
    parser.add_argument(
        "archive",
        nargs="?",
        metavar="NICKEL_MENU_ARCHIVE",
        help="NickelMenu release: KoboRoot.tgz or a zip containing it",
    )
    parser.add_argument("--config", default=None, help="JSON/YAML settings file")
    parser.add_argument("--output-dir", default=None, help="Directory receiving the release archives")
    parser.add_argument("--dist-dir", default=None, help="Application distribution directory")
    parser.add_argument("--app-name", default=None, help="Application name used for paths and archive names")
    parser.add_argument("--version", dest="version", default=None, help="Version override (skips Cargo lookup)")
    parser.add_argument(
        "--discard-extra",
        action="store_true",
        help="Drop payload content outside mnt/onboard/.adds and usr instead of keeping it",
    )
    parser.add_argument("--no-verify", action="store_true", help="Skip the artifact layout verification")
    parser.add_argument(
        "--clean-stale",
        action="store_true",
        help="Remove staging directories left behind by interrupted runs before starting",
    )
    parser.add_argument("--report", default=None, help="Optional path of a JSON report of the run")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser


def _settings_from_args(args: argparse.Namespace) -> BundleSettings:
    overrides: dict[str, object] = {
        "output_dir": args.output_dir,
        "dist_dir": args.dist_dir,
        "app_name": args.app_name,
        "version": args.version,
    }
    if args.discard_extra:
        overrides["extra_content"] = ExtraContentPolicy.DISCARD
    if args.no_verify:
        overrides["verify"] = False
    config_path = Path(args.config) if args.config else None
    return load_settings(config_path, overrides=overrides)


def _write_report(report: BundleReport, *, report_path: Path, settings: BundleSettings) -> None:
    """Store the run summary as JSON."""

    payload: dict[str, object] = {
        "app_name": settings.app_name,
        "output_dir": str(settings.output_path),
        "run": report.to_mapping(),
    }
    try:
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    except OSError as exc:
        _LOGGER.warning("Cannot write run report %s: %s", report_path, exc)
        return
    _LOGGER.info("Run report written to %s", report_path)


def run_from_cli(argv: Optional[List[str]] = None) -> BundleReport:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    if not args.archive:
        raise UsageError(f"missing NICKEL_MENU_ARCHIVE argument\n{parser.format_usage().rstrip()}")

    settings = _settings_from_args(args)
    if args.clean_stale:
        purge_stale_staging(settings.output_path)

    pipeline = BundlePipeline(settings)
    try:
        with terminate_gracefully():
            report = pipeline.run(Path(args.archive))
    finally:
        if args.report and pipeline.last_report is not None:
            _write_report(pipeline.last_report, report_path=Path(args.report).expanduser(), settings=settings)
    return report


def main(argv: Optional[List[str]] = None) -> int:
    try:
        report = run_from_cli(argv)
    except BundleError as exc:
        print(f"{PROG}: error: {exc}", file=sys.stderr)
        return 1
    except TerminationRequested as exc:
        print(f"{PROG}: {exc}", file=sys.stderr)
        return 1
    for artifact in report.artifacts:
        print(artifact.path)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
