"""Structured end-of-run summary of a session."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

import yaml
from pydantic import Field

from .state.schema import RecordModel, Session, utc_now


class PartitionSummary(RecordModel):
    name: str
    branch: str
    base: str
    status: str
    files: int
    size_lines: int
    flags: Tuple[str, ...] = ()
    fixes: int = 0
    unresolved_fixes: int = 0
    pull_request: Optional[str] = None
    score: Optional[int] = None


class StackReport(RecordModel):
    """Snapshot handed to reporting collaborators (announcements, dashboards)."""

    source: str
    base: str
    stage: str
    version: int
    partitions: Tuple[PartitionSummary, ...] = ()
    audit_score: Optional[float] = None
    remote_failures: Tuple[str, ...] = ()
    backup_ref: Optional[str] = None
    generated_at: datetime = Field(default_factory=utc_now)

    @property
    def pushed(self) -> int:
        return sum(1 for partition in self.partitions if partition.status == "pushed")


def build_report(session: Session) -> StackReport:
    plan = session.plan
    scores = {finding.partition: finding.score for finding in session.audit.findings} if session.audit else {}
    summaries: List[PartitionSummary] = []
    for partition in plan.partitions:
        summaries.append(
            PartitionSummary(
                name=partition.name,
                branch=partition.branch,
                base=partition.base,
                status=partition.status.value,
                files=len(partition.files),
                size_lines=plan.size_of(partition),
                flags=partition.flags,
                fixes=len(partition.fixes),
                unresolved_fixes=sum(1 for fix in partition.fixes if not fix.resolved),
                pull_request=partition.pull_request,
                score=scores.get(partition.name),
            )
        )
    return StackReport(
        source=plan.metadata.source,
        base=plan.metadata.base,
        stage=session.stage.value,
        version=session.version,
        partitions=tuple(summaries),
        audit_score=session.audit.score if session.audit else None,
        remote_failures=tuple(f"{item.partition}: {item.check}" for item in session.remote_failures),
        backup_ref=session.backup.ref if session.backup else None,
    )


def write_report(report: StackReport, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(report.model_dump(mode="json"), handle, sort_keys=False)
    return path


def render_report(report: StackReport) -> List[str]:
    lines = [
        f"Stack for {report.source} on {report.base} [{report.stage}, v{report.version}]",
        f"Partitions: {len(report.partitions)} | pushed {report.pushed}",
    ]
    for summary in report.partitions:
        extras = []
        if summary.flags:
            extras.append(", ".join(summary.flags))
        if summary.fixes:
            extras.append(f"{summary.fixes} fix(es)")
        if summary.pull_request:
            extras.append(summary.pull_request)
        suffix = f" ({'; '.join(extras)})" if extras else ""
        lines.append(
            f"- {summary.name} [{summary.status}] {summary.files} file(s), {summary.size_lines} lines -> {summary.branch}{suffix}"
        )
    if report.audit_score is not None:
        lines.append(f"Audit score: {report.audit_score:.1f}")
    for failure in report.remote_failures:
        lines.append(f"Remote failure: {failure}")
    if report.backup_ref:
        lines.append(f"Backup: {report.backup_ref}")
    return lines


__all__ = ["PartitionSummary", "StackReport", "build_report", "render_report", "write_report"]
