from .staleness import StalenessDecision, check_staleness, compute_input_hash
from .store import (
    ArtifactStore,
    BaseArtifactStore,
    FileSystemArtifactStore,
    LogicalClock,
    MemoryArtifactStore,
    NullArtifactStore,
    create_store,
    new_artifact,
)

__all__ = [
    "ArtifactStore",
    "BaseArtifactStore",
    "FileSystemArtifactStore",
    "LogicalClock",
    "MemoryArtifactStore",
    "NullArtifactStore",
    "StalenessDecision",
    "check_staleness",
    "compute_input_hash",
    "create_store",
    "new_artifact",
]
