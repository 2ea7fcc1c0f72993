"""Typed records shared by the stack splitting stages."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Literal, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..errors import ConfigError


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model; records are immutable snapshots."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class FileTag(str, Enum):
    """Logical classification of a changed file."""

    FOUNDATION_DATA = "foundation-data"
    DATA_ACCESS = "data-access"
    BUSINESS_LOGIC = "business-logic"
    INTERFACE = "interface"
    TEST = "test"
    FIXTURE = "fixture"
    OTHER = "other"

    @property
    def floating(self) -> bool:
        """Tests and fixtures follow the code they exercise."""
        return self in {FileTag.TEST, FileTag.FIXTURE}

    @property
    def rank(self) -> int:
        return _TAG_RANKS[self]


_TAG_RANKS: Dict[FileTag, int] = {
    FileTag.FOUNDATION_DATA: 0,
    FileTag.DATA_ACCESS: 1,
    FileTag.BUSINESS_LOGIC: 2,
    FileTag.INTERFACE: 3,
    FileTag.OTHER: 4,
    FileTag.FIXTURE: 5,
    FileTag.TEST: 6,
}


class ChangeKind(str, Enum):
    """How a file differs between the base and source refs."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class ChangedFile(RecordModel):
    """Single file of the changeset, created by the analyzer."""

    path: str
    tag: FileTag = FileTag.OTHER
    change: ChangeKind = ChangeKind.MODIFIED
    size_lines: int = 0
    imports: Tuple[str, ...] = ()


class PartitionStatus(str, Enum):
    """Lifecycle states for a partition."""

    PLANNED = "planned"
    MATERIALIZED = "materialized"
    VALIDATED = "validated"
    PUSHED = "pushed"
    FAILED = "failed"


_STATUS_TRANSITIONS: Dict[PartitionStatus, frozenset[PartitionStatus]] = {
    PartitionStatus.PLANNED: frozenset({PartitionStatus.MATERIALIZED}),
    PartitionStatus.MATERIALIZED: frozenset({PartitionStatus.VALIDATED, PartitionStatus.FAILED}),
    PartitionStatus.VALIDATED: frozenset({PartitionStatus.PUSHED, PartitionStatus.FAILED}),
    PartitionStatus.PUSHED: frozenset(),
    PartitionStatus.FAILED: frozenset(),
}

CheckStatus = Literal["passed", "failed", "skipped"]


class CheckOutcome(RecordModel):
    """Outcome of a single validation check."""

    name: str
    command: Tuple[str, ...] = ()
    status: CheckStatus = "passed"
    exit_code: Optional[int] = None
    log_path: Optional[str] = None
    output: str = Field(default="", exclude=True, repr=False)

    @property
    def failed(self) -> bool:
        return self.status == "failed"


class ValidationResult(RecordModel):
    """Per-partition validation outcome; valid only if no check failed."""

    partition: str
    outcomes: Tuple[CheckOutcome, ...] = ()
    validated_at: datetime = Field(default_factory=utc_now)

    @property
    def passed(self) -> bool:
        return not any(outcome.failed for outcome in self.outcomes)

    @property
    def failed_checks(self) -> List[CheckOutcome]:
        return [outcome for outcome in self.outcomes if outcome.failed]

    def log_paths(self) -> List[str]:
        return [outcome.log_path for outcome in self.failed_checks if outcome.log_path]


class FixRecord(RecordModel):
    """Outcome of an automatic fix attempt."""

    mode: Literal["local", "remote"]
    failure_kind: str
    artifact: Optional[str] = None
    scope: Tuple[str, ...] = ()
    origin: Optional[str] = None
    location: Optional[str] = None
    moved_files: Tuple[str, ...] = ()
    resolved: bool = False
    propagation_required: bool = False
    propagation: Optional[str] = None
    detail: str = ""
    recorded_at: datetime = Field(default_factory=utc_now)


class Partition(RecordModel):
    """One unit of the stack, materialized as a branch."""

    name: str
    branch: str
    base: str
    commit_message: str
    files: Tuple[str, ...] = ()
    status: PartitionStatus = PartitionStatus.PLANNED
    size_lines: Optional[int] = None
    flags: Tuple[str, ...] = ()
    validation: Optional[ValidationResult] = None
    fixes: Tuple[FixRecord, ...] = ()
    pull_request: Optional[str] = None
    head: Optional[str] = None
    needs_revalidation: bool = False

    @property
    def summary(self) -> str:
        lines = self.commit_message.strip().splitlines()
        return lines[0].strip() if lines else ""

    @property
    def pushed(self) -> bool:
        return self.status == PartitionStatus.PUSHED

    def transition(self, status: PartitionStatus, **updates: Any) -> "Partition":
        """Return a copy moved to ``status``; illegal moves raise ``ConfigError``."""
        if status != PartitionStatus.PLANNED and status not in _STATUS_TRANSITIONS[self.status]:
            raise ConfigError(
                f"Partition {self.name} cannot move from {self.status.value} to {status.value}.",
                partition=self.name,
            )
        return self.model_copy(update={"status": status, **updates})

    def reset(self, **updates: Any) -> "Partition":
        """Return the partition back in the planned state, ready to rebuild."""
        payload: Dict[str, Any] = {
            "validation": None,
            "head": None,
            "size_lines": None,
            "flags": tuple(flag for flag in self.flags if flag != "too-small"),
        }
        payload.update(updates)
        return self.transition(PartitionStatus.PLANNED, **payload)

    def with_fix(self, record: FixRecord) -> "Partition":
        return self.model_copy(update={"fixes": (*self.fixes, record)})


class PlanMetadata(RecordModel):
    """Provenance of a stack plan."""

    source: str
    base: str
    source_commit: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class StackPlan(RecordModel):
    """Ordered partitions plus the changeset they cover."""

    metadata: PlanMetadata
    files: Tuple[ChangedFile, ...] = ()
    partitions: Tuple[Partition, ...] = ()

    def file_map(self) -> Dict[str, ChangedFile]:
        return {entry.path: entry for entry in self.files}

    def owners(self) -> Dict[str, int]:
        """Map each assigned path to the index of its partition."""
        owners: Dict[str, int] = {}
        for index, partition in enumerate(self.partitions):
            for path in partition.files:
                owners.setdefault(path, index)
        return owners

    def index_of(self, name: str) -> int:
        for index, partition in enumerate(self.partitions):
            if partition.name == name:
                return index
        raise ConfigError(f"Unknown partition: {name}")

    def parent_ref(self, index: int) -> str:
        """Return the ref partition ``index`` is built on."""
        if index <= 0:
            return self.metadata.base
        return self.partitions[index - 1].branch

    def estimated_size(self, partition: Partition) -> int:
        sizes = self.file_map()
        return sum(sizes[path].size_lines for path in partition.files if path in sizes)

    def size_of(self, partition: Partition) -> int:
        """Measured size when materialized, otherwise the changeset estimate."""
        if partition.size_lines is not None:
            return partition.size_lines
        return self.estimated_size(partition)

    def with_partitions(self, partitions: Iterable[Partition]) -> "StackPlan":
        return self.model_copy(update={"partitions": tuple(partitions)})

    def replace_partition(self, index: int, partition: Partition) -> "StackPlan":
        partitions = list(self.partitions)
        partitions[index] = partition
        return self.with_partitions(partitions)

    def repoint_bases(self) -> "StackPlan":
        """Point every partition at its predecessor (or the base ref)."""
        partitions: List[Partition] = []
        for index, partition in enumerate(self.partitions):
            expected = self.metadata.base if index == 0 else self.partitions[index - 1].name
            if partition.base != expected:
                partition = partition.model_copy(update={"base": expected})
            partitions.append(partition)
        return self.with_partitions(partitions)

    def reassign(self, paths: Sequence[str], to_index: int) -> "StackPlan":
        """Move ownership of ``paths`` into partition ``to_index``.

        Unpushed partitions emptied by the move are dropped and the remaining
        partitions are re-pointed at their new predecessors.
        """
        moving = set(paths)
        partitions: List[Partition] = []
        for index, partition in enumerate(self.partitions):
            files = set(partition.files)
            if index == to_index:
                files |= moving
            else:
                files -= moving
            if index != to_index and not files and partition.files and not partition.pushed:
                continue
            if files != set(partition.files):
                partition = partition.model_copy(update={"files": tuple(sorted(files))})
            partitions.append(partition)
        return self.with_partitions(partitions).repoint_bases()


class BackupRef(RecordModel):
    """Immutable reference to the pre-pipeline state of the checkout."""

    ref: str
    commit: str
    original_branch: Optional[str] = None
    baseline_untracked: Tuple[str, ...] = ()
    created_at: datetime = Field(default_factory=utc_now)


class QualityFinding(RecordModel):
    """Audit flags for a single partition."""

    partition: str
    size_lines: int
    size_class: Literal["too-small", "ideal", "large", "too-large"]
    flags: Tuple[str, ...] = ()
    unpaired_files: Tuple[str, ...] = ()
    non_adjacent: Tuple[str, ...] = ()
    score: int = 100


class StackAudit(RecordModel):
    """Findings for the whole stack plus an aggregate score."""

    findings: Tuple[QualityFinding, ...] = ()
    score: float = 100.0
    audited_at: datetime = Field(default_factory=utc_now)

    def flagged(self, flag: str) -> List[str]:
        return [finding.partition for finding in self.findings if flag in finding.flags]


class RemoteFailure(RecordModel):
    """External check failure reported for a pushed partition."""

    partition: str
    check: str
    log: str = ""


class Stage(str, Enum):
    """Orchestrator stages."""

    ANALYZE = "analyze"
    PLAN = "plan"
    MATERIALIZE = "materialize"
    REPLAN = "replan"
    QUALITY_AUDIT = "quality-audit"
    REMOTE_MONITOR = "remote-monitor"
    REMOTE_FIX = "remote-fix"
    CONSOLIDATE = "consolidate"
    REPORT = "report"
    DONE = "done"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in {Stage.DONE, Stage.ABORTED}


class StageRecord(RecordModel):
    """History entry written at every stage boundary."""

    stage: Stage
    version: int
    at: datetime = Field(default_factory=utc_now)
    note: str = ""


class Session(RecordModel):
    """Process-wide pipeline state, one immutable snapshot per stage boundary."""

    version: int = 1
    stage: Stage = Stage.ANALYZE
    plan: StackPlan
    backup: Optional[BackupRef] = None
    audit: Optional[StackAudit] = None
    remote_failures: Tuple[RemoteFailure, ...] = ()
    history: Tuple[StageRecord, ...] = ()
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def advance(self, stage: Stage, *, note: str = "", **updates: Any) -> "Session":
        """Return the next snapshot at ``stage`` with ``updates`` applied."""
        if "backup" in updates and self.backup is not None and updates["backup"] != self.backup:
            raise ConfigError("The backup reference cannot be replaced once recorded.")
        version = self.version + 1
        now = utc_now()
        record = StageRecord(stage=stage, version=version, at=now, note=note)
        payload: Dict[str, Any] = {
            "stage": stage,
            "version": version,
            "updated_at": now,
            "history": (*self.history, record),
        }
        payload.update(updates)
        return self.model_copy(update=payload)


__all__ = [
    "BackupRef",
    "ChangeKind",
    "ChangedFile",
    "CheckOutcome",
    "CheckStatus",
    "FileTag",
    "FixRecord",
    "Partition",
    "PartitionStatus",
    "PlanMetadata",
    "QualityFinding",
    "RemoteFailure",
    "Session",
    "Stage",
    "StageRecord",
    "StackAudit",
    "StackPlan",
    "ValidationResult",
    "utc_now",
]
