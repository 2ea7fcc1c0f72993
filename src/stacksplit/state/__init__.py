"""Session records and plan document persistence."""

from .schema import (
    BackupRef,
    ChangeKind,
    ChangedFile,
    CheckOutcome,
    FileTag,
    FixRecord,
    Partition,
    PartitionStatus,
    PlanMetadata,
    QualityFinding,
    RemoteFailure,
    Session,
    Stage,
    StackAudit,
    StackPlan,
    ValidationResult,
)
from .store import PlanStore

__all__ = [
    "BackupRef",
    "ChangeKind",
    "ChangedFile",
    "CheckOutcome",
    "FileTag",
    "FixRecord",
    "Partition",
    "PartitionStatus",
    "PlanMetadata",
    "PlanStore",
    "QualityFinding",
    "RemoteFailure",
    "Session",
    "Stage",
    "StackAudit",
    "StackPlan",
    "ValidationResult",
]
