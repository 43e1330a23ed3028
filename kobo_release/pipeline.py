"""Orchestration of a complete bundling run."""
from __future__ import annotations

import contextlib
import logging
import subprocess
from pathlib import Path

from .archive import classify_archive, locate_payload
from .assemble import build_app_only, build_bundle, verify_artifacts
from .config import BundleSettings
from .errors import BundleError
from .extract import extract_payload
from .merge import Runner, ensure_application_dist, merge_application_dist, merge_fragments
from .models import BundleReport, OutputArtifact, PipelineState, StagingTree
from .staging import TerminationRequested, staging_tree
from .version import resolve_version

_LOGGER = logging.getLogger(__name__)


class BundlePipeline:
    """Runs the bundling stages in order and records the state trail.

    Every stage runs at most once. The first failure aborts the run; the
    staging directory is removed on every exit path.
    """

    def __init__(
        self,
        settings: BundleSettings,
        *,
        runner: Runner = subprocess.run,
        logger: logging.Logger | None = None,
    ) -> None:
        self._settings = settings
        self._runner = runner
        self._logger = logger or _LOGGER
        self.last_report: BundleReport | None = None

    @property
    def settings(self) -> BundleSettings:
        return self._settings

    def run(self, archive_path: Path) -> BundleReport:
        report = BundleReport()
        self.last_report = report
        step = "classify"
        try:
            report.archive = classify_archive(Path(archive_path))
            step = "staging"
            with staging_tree(self._settings.output_path) as tree:
                report.staging_root = tree.root

                step = "locate"
                payload = locate_payload(report.archive, tree)
                report.advance(PipelineState.LOCATED)

                step = "extract"
                extraction = extract_payload(payload, tree, extra_content=self._settings.extra_content)
                tree = extraction.tree
                report.preserved_extra = list(extraction.preserved_extra)
                report.advance(PipelineState.EXTRACTED)

                step = "merge"
                report.build_invoked = ensure_application_dist(self._settings, self._runner)
                tree = merge_application_dist(tree, self._settings.dist_path, self._settings.app_name)
                tree = merge_fragments(tree, self._settings.fragments_path)
                report.advance(PipelineState.MERGED)

                step = "version"
                version = resolve_version(self._settings, self._runner)
                report.version = version
                report.advance(PipelineState.VERSIONED)

                step = "assemble"
                self._assemble(tree, report, version)
                report.advance(PipelineState.ASSEMBLED)
                step = "cleanup"
        except BundleError as exc:
            if exc.step is None:
                exc.step = step
            report.advance(PipelineState.ABORTED)
            self._logger.error("Bundling aborted during %s: %s", step, exc.message)
            raise
        except (TerminationRequested, KeyboardInterrupt):
            report.advance(PipelineState.ABORTED)
            self._logger.error("Bundling interrupted during %s", step)
            raise

        report.advance(PipelineState.CLEANED_UP)
        for artifact in report.artifacts:
            self._logger.info("Release artifact %s: %s (%d bytes)", artifact.kind.value, artifact.path, artifact.size)
        return report

    def _assemble(self, tree: StagingTree, report: BundleReport, version: str) -> None:
        settings = self._settings
        written: list[OutputArtifact] = []
        try:
            app_only = build_app_only(tree, settings.output_path, settings.app_name, version)
            written.append(app_only)
            bundle = build_bundle(tree, settings.output_path, settings.app_name, version)
            written.append(bundle)
            if settings.verify:
                verify_artifacts(app_only, bundle)
            else:
                self._logger.debug("Artifact verification disabled")
        except BundleError:
            # Leave no half-finished release behind.
            for artifact in written:
                with contextlib.suppress(OSError):
                    artifact.path.unlink()
                    self._logger.info("Removed incomplete artifact %s", artifact.path)
            raise
        report.artifacts.extend(written)


def run_pipeline(archive_path: Path, settings: BundleSettings, *, runner: Runner = subprocess.run) -> BundleReport:
    return BundlePipeline(settings, runner=runner).run(archive_path)


__all__ = ["BundlePipeline", "run_pipeline"]
