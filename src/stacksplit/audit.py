"""Quality scoring for a materialized stack."""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence, Set

from .state.schema import ChangeKind, FileTag, Partition, QualityFinding, StackAudit, StackPlan

LOGGER = logging.getLogger(__name__)

GENERIC_SUMMARIES = frozenset(
    {"update", "updates", "changes", "misc", "wip", "fix", "fixes", "stuff", "cleanup", "refactor", "tmp"}
)
MIN_SUMMARY_CHARS = 10


@dataclass(frozen=True, slots=True)
class AuditWeights:
    """Points deducted from a partition's score of 100."""

    too_small: int = 15
    too_large: int = 25
    large: int = 5
    missing_tests: int = 15
    non_adjacent: int = 10
    non_adjacent_cap: int = 30
    weak_description: int = 10


def size_class(size: int, *, min_lines: int = 40, ideal_max: int = 300, large_max: int = 500) -> str:
    if size < min_lines:
        return "too-small"
    if size <= ideal_max:
        return "ideal"
    if size <= large_max:
        return "large"
    return "too-large"


def _stem(path: str) -> str:
    name = posixpath.basename(path)
    return name.split(".", 1)[0]


def tested_stem(path: str) -> str | None:
    """Return the stem of the code file a test file exercises, if recognisable."""
    name = posixpath.basename(path)
    stem = _stem(path)
    if stem.startswith("test_"):
        return stem[len("test_") :]
    if stem.endswith("_test"):
        return stem[: -len("_test")]
    parts = name.split(".")
    if len(parts) >= 3 and parts[-2] in {"test", "spec"}:
        return ".".join(parts[:-2])
    return None


def is_weak_description(summary: str) -> bool:
    text = summary.strip()
    if len(text) < MIN_SUMMARY_CHARS:
        return True
    return text.lower().rstrip(".") in GENERIC_SUMMARIES


class QualityAuditor:
    """Flags size problems, unpaired code, non-adjacent dependencies and weak descriptions."""

    def __init__(
        self,
        *,
        min_lines: int = 40,
        ideal_max: int = 300,
        large_max: int = 500,
        weights: AuditWeights | None = None,
    ) -> None:
        self.min_lines = min_lines
        self.ideal_max = ideal_max
        self.large_max = large_max
        self.weights = weights or AuditWeights()

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "QualityAuditor":
        audit_cfg = config.get("audit") or {}
        return cls(
            min_lines=int(audit_cfg.get("min_lines", 40)),
            ideal_max=int(audit_cfg.get("ideal_max", 300)),
            large_max=int(audit_cfg.get("large_max", 500)),
        )

    def audit(self, plan: StackPlan) -> StackAudit:
        owners = plan.owners()
        records = plan.file_map()
        findings = [self._audit_partition(plan, index, partition, owners, records) for index, partition in enumerate(plan.partitions)]
        score = round(sum(finding.score for finding in findings) / len(findings), 1) if findings else 100.0
        LOGGER.info("Audited %d partition(s); aggregate score %.1f", len(findings), score)
        return StackAudit(findings=tuple(findings), score=score)

    def _audit_partition(
        self,
        plan: StackPlan,
        index: int,
        partition: Partition,
        owners: Mapping[str, int],
        records: Mapping[str, Any],
    ) -> QualityFinding:
        size = plan.size_of(partition)
        klass = size_class(size, min_lines=self.min_lines, ideal_max=self.ideal_max, large_max=self.large_max)
        flags: List[str] = []
        score = 100
        if klass == "too-small":
            flags.append("too-small")
            score -= self.weights.too_small
        elif klass == "too-large":
            flags.append("too-large")
            score -= self.weights.too_large
        elif klass == "large":
            flags.append("large")
            score -= self.weights.large

        unpaired = self._unpaired(partition, records)
        if unpaired:
            flags.append("missing-paired-tests")
            score -= self.weights.missing_tests

        non_adjacent = self._non_adjacent(plan, index, partition, owners, records)
        if non_adjacent:
            flags.append("non-adjacent-dependency")
            score -= min(self.weights.non_adjacent * len(non_adjacent), self.weights.non_adjacent_cap)

        if is_weak_description(partition.summary):
            flags.append("weak-description")
            score -= self.weights.weak_description

        return QualityFinding(
            partition=partition.name,
            size_lines=size,
            size_class=klass,
            flags=tuple(flags),
            unpaired_files=tuple(unpaired),
            non_adjacent=tuple(non_adjacent),
            score=max(score, 0),
        )

    @staticmethod
    def _unpaired(partition: Partition, records: Mapping[str, Any]) -> List[str]:
        subjects: Set[str] = set()
        code: List[str] = []
        for path in partition.files:
            record = records.get(path)
            tag = record.tag if record is not None else FileTag.OTHER
            if tag == FileTag.TEST:
                subject = tested_stem(path)
                if subject:
                    subjects.add(subject)
            elif tag not in {FileTag.FIXTURE, FileTag.OTHER} and record is not None and record.change != ChangeKind.DELETED:
                code.append(path)
        return sorted(path for path in code if _stem(path) not in subjects and _stem(path) != "__init__")

    @staticmethod
    def _non_adjacent(
        plan: StackPlan,
        index: int,
        partition: Partition,
        owners: Mapping[str, int],
        records: Mapping[str, Any],
    ) -> List[str]:
        depends_on: Dict[int, None] = {}
        for path in partition.files:
            record = records.get(path)
            for target in record.imports if record is not None else ():
                owner = owners.get(target)
                if owner is not None and owner < index - 1:
                    depends_on.setdefault(owner, None)
        return [plan.partitions[owner].name for owner in sorted(depends_on)]


def format_audit(audit: StackAudit) -> Sequence[str]:
    lines = [f"Aggregate score: {audit.score:.1f}"]
    for finding in audit.findings:
        flags = ", ".join(finding.flags) or "clean"
        lines.append(f"- {finding.partition}: {finding.score} ({finding.size_lines} lines, {finding.size_class}) {flags}")
        if finding.unpaired_files:
            lines.append(f"  untested: {', '.join(finding.unpaired_files)}")
        if finding.non_adjacent:
            lines.append(f"  depends on: {', '.join(finding.non_adjacent)}")
    return lines


__all__ = [
    "AuditWeights",
    "QualityAuditor",
    "format_audit",
    "is_weak_description",
    "size_class",
    "tested_stem",
]
