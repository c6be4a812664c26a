from foreman.state.artifacts import ArtifactStore, AttemptRecord, PhaseArtifact
from foreman.state.store import JsonFileStore

__all__ = ["ArtifactStore", "AttemptRecord", "JsonFileStore", "PhaseArtifact"]
