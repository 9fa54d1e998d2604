"""Duplicate detection and disposition for generated GIFs."""

from .artifact_analyzer import ArtifactAnalyzer, ArtifactInfo  # noqa: F401
from .duplicate_classifier import (  # noqa: F401
    ClassifierThresholds, DuplicateCandidate, DuplicateClassifier, DuplicateTier
)
from .disposition_resolver import (  # noqa: F401
    Disposition, DispositionAction, DispositionResolver, DuplicatePropertyMismatch,
    ResolverPolicy, SourceLocator
)
