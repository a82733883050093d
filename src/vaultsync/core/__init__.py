"""Core module - Settings, exclusion rules and conflict marker handling."""

from vaultsync.core.artifacts import (
    canonical_path_for_variant,
    is_generated_artifact_path,
    is_text_candidate,
    normalize_path,
    strip_generated_suffixes,
)
from vaultsync.core.config import SelectiveSyncSettings, SyncSettings
from vaultsync.core.exclusions import (
    ExclusionEngine,
    SkipCounts,
    describe_exclusion_reason,
    exclusion_reason,
    file_category,
)
from vaultsync.core.hashing import compute_content_hash
from vaultsync.core.markers import (
    ConflictMarkerAnalysis,
    ConflictMarkerError,
    ConflictMarkerResolution,
    IncompleteConflictMarkersError,
    MalformedConflictBlockError,
    analyze,
    resolve,
)
from vaultsync.core.types import (
    ActivityAction,
    BinaryStrategy,
    ExclusionReason,
    FileCategory,
    MarkdownStrategy,
    MarkerStrategy,
    PauseReason,
    QueueAction,
    RecordStatus,
    SyncState,
)

__all__ = [
    # Artifacts
    "canonical_path_for_variant",
    "is_generated_artifact_path",
    "is_text_candidate",
    "normalize_path",
    "strip_generated_suffixes",
    # Config
    "SelectiveSyncSettings",
    "SyncSettings",
    # Exclusions
    "ExclusionEngine",
    "SkipCounts",
    "describe_exclusion_reason",
    "exclusion_reason",
    "file_category",
    # Hashing
    "compute_content_hash",
    # Markers
    "ConflictMarkerAnalysis",
    "ConflictMarkerError",
    "ConflictMarkerResolution",
    "IncompleteConflictMarkersError",
    "MalformedConflictBlockError",
    "analyze",
    "resolve",
    # Types
    "ActivityAction",
    "BinaryStrategy",
    "ExclusionReason",
    "FileCategory",
    "MarkdownStrategy",
    "MarkerStrategy",
    "PauseReason",
    "QueueAction",
    "RecordStatus",
    "SyncState",
]
