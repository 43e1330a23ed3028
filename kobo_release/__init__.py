"""Release bundling for an e-reader application and the NickelMenu launcher."""

from .archive import classify_archive, locate_payload, probe_archive_format  # noqa: F401
from .assemble import build_app_only, build_bundle, verify_artifacts  # noqa: F401
from .config import BundleSettings, load_settings  # noqa: F401
from .errors import (  # noqa: F401
    ArchiveFormatError,
    ArtifactIntegrityError,
    BuildStepError,
    BundleError,
    FilesystemError,
    MetadataError,
    UsageError,
)
from .extract import ExtractionResult, extract_payload  # noqa: F401
from .merge import ensure_application_dist, merge_application_dist, merge_fragments  # noqa: F401
from .models import (  # noqa: F401
    ArchiveFormat,
    ArtifactKind,
    BundleReport,
    ExtraContentPolicy,
    OutputArtifact,
    PipelineState,
    SourceArchive,
    StagingTree,
)
from .pipeline import BundlePipeline, run_pipeline  # noqa: F401
from .version import resolve_version  # noqa: F401

__version__ = "0.1.0"

__all__ = [
    "ArchiveFormat",
    "ArchiveFormatError",
    "ArtifactIntegrityError",
    "ArtifactKind",
    "BuildStepError",
    "BundleError",
    "BundlePipeline",
    "BundleReport",
    "BundleSettings",
    "ExtractionResult",
    "ExtraContentPolicy",
    "FilesystemError",
    "MetadataError",
    "OutputArtifact",
    "PipelineState",
    "SourceArchive",
    "StagingTree",
    "UsageError",
    "build_app_only",
    "build_bundle",
    "classify_archive",
    "ensure_application_dist",
    "extract_payload",
    "load_settings",
    "locate_payload",
    "merge_application_dist",
    "merge_fragments",
    "probe_archive_format",
    "resolve_version",
    "run_pipeline",
    "verify_artifacts",
]
