"""Artifact records owned by the upload layer and updated by analysis jobs."""

from analysis_queue.artifacts.repository import (
    ArtifactCreate,
    ArtifactRepository,
    ArtifactStore,
    ArtifactView,
    ProcessingStats,
)

__all__ = [
    "ArtifactCreate",
    "ArtifactRepository",
    "ArtifactStore",
    "ArtifactView",
    "ProcessingStats",
]
