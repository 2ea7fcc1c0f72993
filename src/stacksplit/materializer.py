"""Build, validate and publish the partitions of a plan one at a time."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Sequence

from .errors import ValidationFailure
from .fixing.local import LocalAutoFixer, source_ref
from .planning.planner import verify_plan
from .state.schema import ChangeKind, Partition, PartitionStatus, StackPlan, ValidationResult
from .tools.gates import Validator
from .tools.hosting import CodeHost, HostingError
from .tools.vcs import GitRepository

LOGGER = logging.getLogger(__name__)

# Keeps `git checkout <ref> -- <paths>` well under argument length limits.
_PATH_BATCH = 200


@dataclass(slots=True)
class MaterializationOutcome:
    """Plan after the run plus the failure that halted it, if any."""

    plan: StackPlan
    materialized: List[str] = field(default_factory=list)
    failure: ValidationFailure | None = None

    @property
    def halted(self) -> bool:
        return self.failure is not None


class SequentialMaterializer:
    """Turns each planned partition into a validated branch on its predecessor.

    Partitions are processed strictly in order and the run halts at the first
    partition that stays invalid after the one-shot auto-fix, so no partition
    is ever built on top of an unvalidated predecessor.
    """

    def __init__(
        self,
        repo: GitRepository,
        validator: Validator,
        *,
        fixer: LocalAutoFixer | None = None,
        remote: str = "origin",
        push: bool = True,
        min_lines: int = 40,
        host: CodeHost | None = None,
        open_pull_requests: bool = False,
    ) -> None:
        self.repo = repo
        self.validator = validator
        self.fixer = fixer
        self.remote = remote
        self.push = push
        self.min_lines = min_lines
        self.host = host
        self.open_pull_requests = open_pull_requests

    @classmethod
    def from_config(
        cls,
        repo: GitRepository,
        validator: Validator,
        config: Mapping[str, Any],
        *,
        fixer: LocalAutoFixer | None = None,
        host: CodeHost | None = None,
    ) -> "SequentialMaterializer":
        stack_cfg = config.get("stack") or {}
        audit_cfg = config.get("audit") or {}
        hosting_cfg = config.get("hosting") or {}
        return cls(
            repo,
            validator,
            fixer=fixer,
            remote=str(stack_cfg.get("remote") or "origin"),
            push=bool(stack_cfg.get("push", True)),
            min_lines=int(audit_cfg.get("min_lines", 40)),
            host=host,
            open_pull_requests=bool(hosting_cfg.get("create_pull_requests", False)),
        )

    def run(self, plan: StackPlan) -> MaterializationOutcome:
        verify_plan(plan)
        outcome = MaterializationOutcome(plan=plan)
        index = 0
        while index < len(outcome.plan.partitions):
            partition = outcome.plan.partitions[index]
            if partition.pushed:
                index += 1
                continue
            if partition.status != PartitionStatus.PLANNED:
                partition = partition.reset()
                outcome.plan = outcome.plan.replace_partition(index, partition)

            failure = self._materialize(outcome, index)
            if failure is not None:
                outcome.failure = failure
                return outcome
            outcome.materialized.append(outcome.plan.partitions[index].name)
            index += 1
        LOGGER.info("Materialized %d partition(s)", len(outcome.materialized))
        return outcome

    # ------------------------------------------------------------ internals
    def _materialize(self, outcome: MaterializationOutcome, index: int) -> ValidationFailure | None:
        plan = outcome.plan
        partition = plan.partitions[index]
        parent = plan.parent_ref(index)
        LOGGER.info("Materializing %s on %s (%d file(s))", partition.name, parent, len(partition.files))

        self.repo.create_branch(partition.branch, parent)
        self._apply_files(plan, partition.files)
        head = self.repo.commit_staged(partition.commit_message, allow_empty=True)
        partition = partition.transition(PartitionStatus.MATERIALIZED, head=head)
        plan = plan.replace_partition(index, partition)

        validation = self.validator.validate(partition.name, self.repo.root)
        if not validation.passed and self.fixer is not None:
            attempt = self.fixer.attempt(plan, index, validation)
            plan = attempt.plan
            partition = plan.partitions[index].with_fix(attempt.record)
            if attempt.validation is not None:
                validation = attempt.validation

        if not validation.passed:
            partition = partition.transition(PartitionStatus.FAILED, validation=validation, head=self.repo.head())
            outcome.plan = plan.replace_partition(index, partition)
            return _failure(partition, validation)

        size = self.repo.diff_size(parent, partition.branch)
        flags = [flag for flag in partition.flags if flag != "too-small"]
        if size < self.min_lines:
            flags.append("too-small")
        partition = partition.transition(
            PartitionStatus.VALIDATED,
            validation=validation,
            size_lines=size,
            flags=tuple(flags),
            head=self.repo.head(),
            needs_revalidation=False,
        )
        if self.push:
            partition = self._publish(plan, index, partition)
        outcome.plan = plan.replace_partition(index, partition)
        return None

    def _apply_files(self, plan: StackPlan, paths: Sequence[str]) -> None:
        files = plan.file_map()
        deleted = [path for path in paths if files[path].change == ChangeKind.DELETED]
        present = [path for path in paths if files[path].change != ChangeKind.DELETED]
        for start in range(0, len(deleted), _PATH_BATCH):
            self.repo.remove_paths(deleted[start : start + _PATH_BATCH])
        ref = source_ref(plan)
        for start in range(0, len(present), _PATH_BATCH):
            self.repo.checkout_paths(ref, present[start : start + _PATH_BATCH])

    def _publish(self, plan: StackPlan, index: int, partition: Partition) -> Partition:
        # Rebuilt partitions replace a branch the remote already knows.
        force = self.repo.remote_branch_exists(self.remote, partition.branch)
        self.repo.push(self.remote, partition.branch, set_upstream=True, force=force)
        LOGGER.info("Pushed %s to %s%s", partition.branch, self.remote, " (forced)" if force else "")
        partition = partition.transition(PartitionStatus.PUSHED)

        if self.host is None or not self.open_pull_requests or partition.pull_request:
            return partition
        base = plan.partitions[index - 1].branch if index > 0 else plan.metadata.base
        try:
            url = self.host.create_pull_request(partition.branch, base, partition.summary, pull_request_body(partition))
        except HostingError as error:
            LOGGER.warning("Could not open a pull request for %s: %s", partition.branch, error)
            return partition
        return partition.model_copy(update={"pull_request": url or None})


def pull_request_body(partition: Partition) -> str:
    """Commit message body below the summary line, or the summary when there is none."""
    lines = partition.commit_message.strip().splitlines()
    return "\n".join(lines[2:]) if len(lines) > 2 else partition.summary


def _failure(partition: Partition, validation: ValidationResult) -> ValidationFailure:
    checks = [outcome.name for outcome in validation.failed_checks]
    logs = validation.log_paths()
    detail = f" Logs: {', '.join(logs)}." if logs else ""
    return ValidationFailure(
        f"Partition {partition.name} failed validation ({', '.join(checks) or 'unknown check'}).{detail}",
        partition=partition.name,
        checks=checks,
        action=(
            f"Inspect branch {partition.branch}, then either fix the source and run `stacksplit analyze` again, "
            "or move files between partitions in the plan document and run `stacksplit replan`."
        ),
    )


__all__ = ["MaterializationOutcome", "SequentialMaterializer", "pull_request_body"]
