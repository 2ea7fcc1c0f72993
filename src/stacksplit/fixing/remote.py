"""Repair of a pushed partition from an external CI failure log."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence

from ..errors import PropagationConflict
from ..planning.planner import verify_plan
from ..state.schema import FixRecord, PartitionStatus, StackPlan, ValidationResult
from ..tools.gates import Validator
from ..tools.vcs import GitRepository
from .failures import ArtifactKey, FailureClassification, classify_output
from .index import ArtifactIndex, Candidate, SearchOrigin
from .local import pending_closure
from .propagation import PartitionSnapshot, PropagationOutcome, forward_merge

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class RemoteFixResult:
    """Updated plan, the fix record, and the conflict to surface, if any."""

    plan: StackPlan
    record: FixRecord
    propagation: PropagationOutcome | None = None
    conflict: PropagationConflict | None = None
    pushed: List[str] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return self.record.resolved


def remote_origins(plan: StackPlan, index: int) -> List[SearchOrigin]:
    """Downstream partitions only, nearest first."""
    return [
        SearchOrigin(label=partition.name, ref=partition.branch, paths=partition.files)
        for partition in plan.partitions[index + 1 :]
    ]


class RemoteAutoFixer:
    """Pulls a missing artifact back from a later partition, then propagates forward."""

    def __init__(
        self,
        repo: GitRepository,
        validator: Validator,
        *,
        remote: str = "origin",
        source_roots: Sequence[str] = ("src", "lib"),
        push: bool = True,
    ) -> None:
        self.repo = repo
        self.validator = validator
        self.remote = remote
        self.source_roots = tuple(source_roots)
        self.push = push

    @classmethod
    def from_config(cls, repo: GitRepository, validator: Validator, config: Mapping[str, Any]) -> "RemoteAutoFixer":
        stack_cfg = config.get("stack") or {}
        analysis_cfg = config.get("analysis") or {}
        return cls(
            repo,
            validator,
            remote=str(stack_cfg.get("remote") or "origin"),
            source_roots=analysis_cfg.get("source_roots") or ("src", "lib"),
            push=bool(stack_cfg.get("push", True)),
        )

    def fix(self, plan: StackPlan, index: int, failure_log: str, *, check: str | None = None) -> RemoteFixResult:
        partition = plan.partitions[index]
        classification = classify_output(failure_log, check=check)
        if not classification.classifiable:
            return self._unresolved(plan, classification, (), "failure is outside the auto-fixable taxonomy")

        artifacts = ArtifactIndex.build(remote_origins(plan, index), self.repo, source_roots=self.source_roots)
        owners = plan.owners()
        skipped: List[str] = []
        self.repo.checkout(partition.branch)
        for key, candidate in artifacts.walk(classification.keys):
            moved = pending_closure(plan, candidate.path, index)
            if not moved:
                skipped.append(f"{candidate.location} (already part of {partition.name} or earlier)")
                continue
            by_owner: Dict[int, List[str]] = {}
            for path in moved:
                by_owner.setdefault(owners.get(path, plan.index_of(candidate.origin)), []).append(path)
            for owner in sorted(by_owner):
                self.repo.checkout_paths(plan.partitions[owner].branch, by_owner[owner])
            head = self.repo.commit_staged(f"Pull {candidate.path} back into {partition.name} to resolve {key}")
            if head is None:
                skipped.append(f"{candidate.location} from {candidate.origin} (identical to the checked-out copy)")
                continue
            return self._apply(plan, index, classification, artifacts.scope, key, candidate, moved, head)

        keys = ", ".join(str(key) for key in classification.keys)
        detail = f"no usable downstream artifact for {keys}"
        if skipped:
            detail += "; skipped " + ", ".join(skipped)
        return self._unresolved(plan, classification, artifacts.scope, detail)

    def _apply(
        self,
        plan: StackPlan,
        index: int,
        classification: FailureClassification,
        scope: Sequence[str],
        key: ArtifactKey,
        candidate: Candidate,
        moved: Sequence[str],
        head: str,
    ) -> RemoteFixResult:
        partition = plan.partitions[index]
        plan = plan.reassign(moved, index)
        verify_plan(plan)
        validation = self.validator.validate(partition.name, self.repo.root)
        base_record = FixRecord(
            mode="remote",
            failure_kind=classification.kind.value,
            artifact=str(key),
            scope=tuple(scope),
            origin=candidate.origin,
            location=candidate.location,
            moved_files=tuple(moved),
            propagation_required=index + 1 < len(plan.partitions),
            detail=classification.evidence,
        )
        if not validation.passed:
            LOGGER.warning("%s: re-validation failed after pulling %s", partition.name, candidate.location)
            record = base_record.model_copy(update={"detail": f"re-validation failed: {classification.evidence}"})
            plan = plan.replace_partition(index, plan.partitions[index].model_copy(update={"validation": validation}))
            return RemoteFixResult(plan=plan, record=record)

        pushed: List[str] = []
        validations: Dict[str, ValidationResult] = {}
        plan = self._publish(plan, index, head, validation, pushed)
        outcome = self._propagate(plan, index, validations)
        plan = self._apply_outcome(plan, outcome, validations, pushed)

        record = base_record.model_copy(update={"resolved": True, "propagation": outcome.describe()})
        conflict = None
        if not outcome.complete:
            stopped = outcome.stopped_at or ""
            conflict = PropagationConflict(
                f"Propagating the fix of {partition.name} stopped at {stopped}: {outcome.describe()}.",
                partition=stopped,
                checks=_failed_checks(validations.get(stopped)),
                action=(
                    f"Merge {plan.partitions[plan.index_of(stopped) - 1].branch} into "
                    f"{plan.partitions[plan.index_of(stopped)].branch} by hand, push it, then resume the pipeline."
                ),
            )
        LOGGER.info("%s: remote fix for %s; %s", partition.name, key, outcome.describe())
        return RemoteFixResult(plan=plan, record=record, propagation=outcome, conflict=conflict, pushed=pushed)

    # ------------------------------------------------------------ internals
    def _publish(
        self,
        plan: StackPlan,
        index: int,
        head: str | None,
        validation: ValidationResult,
        pushed: List[str],
    ) -> StackPlan:
        partition = plan.partitions[index]
        if self.push:
            self.repo.push(self.remote, partition.branch)
            pushed.append(partition.branch)
        updated = partition.model_copy(
            update={
                "head": head,
                "validation": validation,
                "size_lines": self.repo.diff_size(plan.parent_ref(index), partition.branch),
            }
        )
        return plan.replace_partition(index, updated)

    def _propagate(
        self,
        plan: StackPlan,
        index: int,
        validations: Dict[str, ValidationResult],
    ) -> PropagationOutcome:
        chain = [PartitionSnapshot(p.name, p.branch, p.head) for p in plan.partitions]
        previous_heads: Dict[str, str | None] = {}

        def merge(target: PartitionSnapshot, upstream: PartitionSnapshot) -> str | None:
            previous_heads[target.name] = self.repo.rev_parse(target.branch)
            self.repo.checkout(target.branch)
            if not self.repo.merge(upstream.branch, message=f"Merge {upstream.name} into {target.name}"):
                return None
            return self.repo.head()

        def validate(snapshot: PartitionSnapshot) -> bool:
            result = self.validator.validate(snapshot.name, self.repo.root)
            validations[snapshot.name] = result
            previous = previous_heads.get(snapshot.name)
            if not result.passed and previous:
                # The stopped partition keeps its previous head.
                self.repo.create_branch(snapshot.branch, previous)
            return result.passed

        return forward_merge(chain, index, merge=merge, validate=validate)

    def _apply_outcome(
        self,
        plan: StackPlan,
        outcome: PropagationOutcome,
        validations: Mapping[str, ValidationResult],
        pushed: List[str],
    ) -> StackPlan:
        for snapshot in outcome.snapshots:
            position = plan.index_of(snapshot.name)
            partition = plan.partitions[position]
            updates: Dict[str, Any] = {}
            if snapshot.name in outcome.updated:
                if self.push and partition.status == PartitionStatus.PUSHED:
                    self.repo.push(self.remote, partition.branch)
                    pushed.append(partition.branch)
                updates = {
                    "head": snapshot.head,
                    "validation": validations.get(snapshot.name),
                    "size_lines": self.repo.diff_size(plan.parent_ref(position), partition.branch),
                }
            elif snapshot.name == outcome.stopped_at and snapshot.name in validations:
                updates = {"validation": validations[snapshot.name]}
            if updates:
                plan = plan.replace_partition(position, partition.model_copy(update=updates))
        return plan

    @staticmethod
    def _unresolved(
        plan: StackPlan,
        classification: FailureClassification,
        scope: Sequence[str],
        detail: str,
    ) -> RemoteFixResult:
        LOGGER.info("Remote fix unresolved: %s", detail)
        record = FixRecord(
            mode="remote",
            failure_kind=classification.kind.value,
            scope=tuple(scope),
            detail=detail,
        )
        return RemoteFixResult(plan=plan, record=record)


def _failed_checks(result: ValidationResult | None) -> List[str]:
    return [outcome.name for outcome in result.failed_checks] if result else []


__all__ = ["RemoteAutoFixer", "RemoteFixResult", "remote_origins"]
