"""Automatic repair of partitions that fail validation locally or remotely."""

from .failures import ArtifactKey, FailureClassification, FailureKind, classify_failure, classify_output
from .index import ArtifactIndex, Candidate, SearchOrigin
from .local import FixAttempt, LocalAutoFixer
from .propagation import PartitionSnapshot, PropagationOutcome, forward_merge
from .remote import RemoteAutoFixer, RemoteFixResult

__all__ = [
    "ArtifactIndex",
    "ArtifactKey",
    "Candidate",
    "FailureClassification",
    "FailureKind",
    "FixAttempt",
    "LocalAutoFixer",
    "PartitionSnapshot",
    "PropagationOutcome",
    "RemoteAutoFixer",
    "RemoteFixResult",
    "SearchOrigin",
    "classify_failure",
    "classify_output",
    "forward_merge",
]
