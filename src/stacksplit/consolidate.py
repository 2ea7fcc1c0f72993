"""Merge undersized partitions into a neighbour."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Literal, Mapping, Sequence

from .errors import ConfigError
from .planning.planner import verify_plan
from .state.schema import Partition, StackAudit, StackPlan

LOGGER = logging.getLogger(__name__)

Neighbour = Literal["predecessor", "successor"]


@dataclass(frozen=True, slots=True)
class MergeStep:
    removed: str
    removed_branch: str
    target: str
    direction: Neighbour


@dataclass(slots=True)
class ConsolidationResult:
    """Plan after consolidation and the merges that produced it."""

    plan: StackPlan
    steps: List[MergeStep] = field(default_factory=list)

    @property
    def removed_branches(self) -> List[str]:
        return [step.removed_branch for step in self.steps]

    @property
    def earliest_affected(self) -> int | None:
        """Index of the first partition that has to be rebuilt."""
        for index, partition in enumerate(self.plan.partitions):
            if partition.needs_revalidation:
                return index
        return None


def _merged_message(target: Partition, files: Sequence[str]) -> str:
    lines = target.commit_message.strip().splitlines()
    if "Files:" in lines:
        lines = lines[: lines.index("Files:")]
    else:
        lines.append("")
    if lines and lines[0]:
        head = lines[0]
        if head.endswith(")") and " (" in head:
            head = head.rsplit(" (", 1)[0]
        noun = "file" if len(files) == 1 else "files"
        lines[0] = f"{head} ({len(files)} {noun})"
    lines.append("Files:")
    lines.extend(f"- {path}" for path in files)
    return "\n".join(lines)


class Consolidator:
    """Folds too-small partitions into the preferred neighbour."""

    def __init__(self, *, prefer: Neighbour = "predecessor", min_lines: int = 40) -> None:
        if prefer not in ("predecessor", "successor"):
            raise ConfigError(f"consolidation.prefer must be 'predecessor' or 'successor', not {prefer!r}.")
        self.prefer = prefer
        self.min_lines = min_lines

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "Consolidator":
        consolidation_cfg = config.get("consolidation") or {}
        audit_cfg = config.get("audit") or {}
        return cls(
            prefer=str(consolidation_cfg.get("prefer") or "predecessor"),  # type: ignore[arg-type]
            min_lines=int(audit_cfg.get("min_lines", 40)),
        )

    def candidates(self, plan: StackPlan, audit: StackAudit | None = None) -> List[str]:
        """Names of the partitions flagged ``too-small``, in stack order."""
        flagged = set(audit.flagged("too-small")) if audit is not None else set()
        names: List[str] = []
        for partition in plan.partitions:
            if partition.name in flagged or "too-small" in partition.flags or plan.size_of(partition) < self.min_lines:
                names.append(partition.name)
        return names

    def consolidate(
        self,
        plan: StackPlan,
        names: Iterable[str] | None = None,
        *,
        audit: StackAudit | None = None,
    ) -> ConsolidationResult:
        """Merge each named (or flagged) partition into a neighbour.

        Automatically selected partitions that grew past the threshold through
        an earlier merge are left alone; explicitly named ones are always merged.
        """
        explicit = names is not None
        targets = list(names) if names is not None else self.candidates(plan, audit)
        result = ConsolidationResult(plan=plan)
        for name in targets:
            if len(result.plan.partitions) < 2:
                break
            present = {partition.name for partition in result.plan.partitions}
            if name not in present:
                if explicit:
                    raise ConfigError(f"Unknown partition: {name}")
                continue
            partition = result.plan.partitions[result.plan.index_of(name)]
            if not explicit and result.plan.size_of(partition) >= self.min_lines:
                continue
            result.plan, step = self.merge(result.plan, name)
            result.steps.append(step)
        if result.steps:
            verify_plan(result.plan)
        return result

    def merge(self, plan: StackPlan, name: str) -> tuple[StackPlan, MergeStep]:
        """Merge partition ``name`` into its neighbour; the stack shrinks by one."""
        index = plan.index_of(name)
        count = len(plan.partitions)
        if count < 2:
            raise ConfigError(f"Partition {name} has no neighbour to merge into.", partition=name)

        direction: Neighbour = self.prefer
        if direction == "predecessor" and index == 0:
            direction = "successor"
        elif direction == "successor" and index == count - 1:
            direction = "predecessor"
        target_index = index - 1 if direction == "predecessor" else index + 1

        removed = plan.partitions[index]
        target = plan.partitions[target_index]
        files = tuple(sorted(set(target.files) | set(removed.files)))
        merged = target.reset(
            files=files,
            commit_message=_merged_message(target, files),
            needs_revalidation=True,
            pull_request=target.pull_request,
        )

        before = {partition.name: partition.base for partition in plan.partitions}
        partitions = list(plan.partitions)
        partitions[target_index] = merged
        del partitions[index]
        repointed = plan.with_partitions(partitions).repoint_bases()

        rebuilt: List[Partition] = []
        for partition in repointed.partitions:
            if partition.name != merged.name and partition.base != before.get(partition.name):
                partition = partition.reset(needs_revalidation=True)
            rebuilt.append(partition)
        new_plan = repointed.with_partitions(rebuilt)

        LOGGER.info("Merged %s into its %s %s", name, direction, target.name)
        return new_plan, MergeStep(removed=name, removed_branch=removed.branch, target=target.name, direction=direction)


__all__ = ["ConsolidationResult", "Consolidator", "MergeStep"]
