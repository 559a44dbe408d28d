"""Build verification: determinism checks across build configurations."""

from ci_orchestrator.verification.determinism import (
    ArtifactDiff,
    BuildArtifact,
    BuildConfiguration,
    DeterminismVerifier,
    compare_artifacts,
    normalize,
    verify_artifacts,
)

__all__ = [
    "ArtifactDiff",
    "BuildArtifact",
    "BuildConfiguration",
    "DeterminismVerifier",
    "compare_artifacts",
    "normalize",
    "verify_artifacts",
]
