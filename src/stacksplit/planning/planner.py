"""Turn classified changed files into an ordered, dependency-respecting stack."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..analysis.graph import DependencyGraph
from ..errors import ConfigError
from ..state.schema import ChangedFile, FileTag, Partition, PlanMetadata, StackPlan
from ..utils.slug import branch_name, partition_name

LOGGER = logging.getLogger(__name__)

TAG_TITLES: Dict[FileTag, str] = {
    FileTag.FOUNDATION_DATA: "Foundation data models and schema",
    FileTag.DATA_ACCESS: "Data access layer",
    FileTag.BUSINESS_LOGIC: "Business logic",
    FileTag.INTERFACE: "Interface layer",
    FileTag.OTHER: "Supporting changes",
    FileTag.FIXTURE: "Test fixtures",
    FileTag.TEST: "Tests",
}


@dataclass(slots=True)
class ReplanResult:
    """Outcome of recomputing the unpushed suffix of a stack."""

    plan: StackPlan
    kept: int
    obsolete_branches: List[str] = field(default_factory=list)


def verify_plan(plan: StackPlan) -> None:
    """Check file coverage and foundation-first ordering.

    Raises :class:`ConfigError` when a changed file is missing, assigned more
    than once, unknown to the changeset, or placed after a file importing it.
    """
    changeset = {entry.path for entry in plan.files}
    seen: Counter[str] = Counter(path for partition in plan.partitions for path in partition.files)
    duplicated = sorted(path for path, count in seen.items() if count > 1)
    missing = sorted(changeset - set(seen))
    extraneous = sorted(set(seen) - changeset)
    problems: List[str] = []
    if missing:
        problems.append(f"missing: {', '.join(missing)}")
    if duplicated:
        problems.append(f"assigned more than once: {', '.join(duplicated)}")
    if extraneous:
        problems.append(f"not in the changeset: {', '.join(extraneous)}")
    if problems:
        raise ConfigError(
            "Plan does not cover the changeset exactly (" + "; ".join(problems) + ").",
            action="Edit the partitions in the plan document or run `stacksplit plan` again.",
        )

    names = [partition.name for partition in plan.partitions]
    branches = [partition.branch for partition in plan.partitions]
    if len(set(names)) != len(names) or len(set(branches)) != len(branches):
        raise ConfigError("Partition names and branches must be unique.")

    owners = plan.owners()
    for entry in plan.files:
        for target in entry.imports:
            if target in owners and owners[target] > owners[entry.path]:
                raise ConfigError(
                    f"{entry.path} (partition {plan.partitions[owners[entry.path]].name}) imports "
                    f"{target}, which is placed later in {plan.partitions[owners[target]].name}.",
                    partition=plan.partitions[owners[entry.path]].name,
                    action="Move the imported file into the same or an earlier partition.",
                )


class PartitionPlanner:
    """Groups changed files by tag in a valid topological order."""

    def __init__(
        self,
        *,
        branch_prefix: str = "stack",
        max_partition_lines: int = 500,
        min_partition_lines: int = 40,
    ) -> None:
        self.branch_prefix = branch_prefix
        self.max_partition_lines = max_partition_lines
        self.min_partition_lines = min_partition_lines

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "PartitionPlanner":
        stack_cfg = config.get("stack") or {}
        planning_cfg = config.get("planning") or {}
        audit_cfg = config.get("audit") or {}
        return cls(
            branch_prefix=str(stack_cfg.get("branch_prefix") or "stack"),
            max_partition_lines=int(planning_cfg.get("max_partition_lines", 500)),
            min_partition_lines=int(audit_cfg.get("min_lines", 40)),
        )

    # ------------------------------------------------------------------ plan
    def plan(self, files: Sequence[ChangedFile], metadata: PlanMetadata) -> StackPlan:
        """Produce a verified plan covering every file exactly once."""
        groups = self._group(files)
        partitions = self._build_partitions(groups, files, metadata, offset=0, previous=None)
        plan = StackPlan(metadata=metadata, files=tuple(files), partitions=tuple(partitions))
        verify_plan(plan)
        LOGGER.info("Planned %d partition(s) for %d file(s)", len(partitions), len(files))
        return plan

    def replan(self, plan: StackPlan) -> ReplanResult:
        """Recompute the partitions after the pushed prefix.

        Pushed partitions keep their files, names and bases. Residual groups
        below the minimum size are folded into an adjacent residual group.
        """
        kept = 0
        for partition in plan.partitions:
            if not partition.pushed:
                break
            kept += 1
        stray = [partition.name for partition in plan.partitions[kept:] if partition.pushed]
        if stray:
            raise ConfigError(
                f"Pushed partitions must form a prefix of the stack; found {', '.join(stray)} after unpushed ones."
            )

        prefix = list(plan.partitions[:kept])
        fixed = {path for partition in prefix for path in partition.files}
        residual = [entry for entry in plan.files if entry.path not in fixed]
        groups = self._group(residual)
        groups = self._fold_small(groups, {entry.path: entry.size_lines for entry in residual})

        previous = prefix[-1] if prefix else None
        rebuilt = self._build_partitions(groups, plan.files, plan.metadata, offset=kept, previous=previous)
        new_plan = plan.with_partitions([*prefix, *rebuilt])
        verify_plan(new_plan)

        active = {partition.branch for partition in new_plan.partitions}
        obsolete = [partition.branch for partition in plan.partitions[kept:] if partition.branch not in active]
        LOGGER.info(
            "Re-planned %d residual file(s) into %d partition(s) after %d pushed partition(s)",
            len(residual),
            len(rebuilt),
            kept,
        )
        return ReplanResult(plan=new_plan, kept=kept, obsolete_branches=obsolete)

    # -------------------------------------------------------------- grouping
    def _group(self, files: Sequence[ChangedFile]) -> List[List[str]]:
        if not files:
            return []
        tags = {entry.path: entry.tag for entry in files}
        sizes = {entry.path: entry.size_lines for entry in files}
        graph = DependencyGraph.from_files(files)
        components = graph.components()
        owner: Dict[str, int] = {}
        for index, component in enumerate(components):
            for path in component:
                owner[path] = index

        deps: List[set[int]] = [set() for _ in components]
        dependents: List[set[int]] = [set() for _ in components]
        for source, target in graph.edges():
            a, b = owner[source], owner[target]
            if a != b:
                deps[a].add(b)
                dependents[b].add(a)

        levels: List[Optional[int]] = [None] * len(components)
        for index, component in enumerate(components):
            placed = [levels[dep] for dep in deps[index] if levels[dep] is not None]
            anchored = [tags[path].rank for path in component if not tags[path].floating]
            if anchored:
                levels[index] = max([max(anchored), *placed])
            elif placed:
                levels[index] = max(placed)

        last = max((level for level in levels if level is not None), default=FileTag.OTHER.rank)
        for index in reversed(range(len(components))):
            if levels[index] is None:
                following = [levels[dep] for dep in dependents[index] if levels[dep] is not None]
                levels[index] = min(following) if following else last

        by_level: Dict[int, List[int]] = {}
        for index, level in enumerate(levels):
            by_level.setdefault(int(level), []).append(index)

        groups: List[List[str]] = []
        for level in sorted(by_level):
            members = by_level[level]
            for chunk in self._split_oversized(members, components, deps, sizes):
                groups.append(sorted(path for index in chunk for path in components[index]))
        return groups

    def _split_oversized(
        self,
        members: List[int],
        components: List[Tuple[str, ...]],
        deps: List[set[int]],
        sizes: Mapping[str, int],
    ) -> List[List[int]]:
        def weight(index: int) -> int:
            return sum(sizes.get(path, 0) for path in components[index])

        total = sum(weight(index) for index in members)
        if total <= self.max_partition_lines or len(members) < 2:
            return [members]

        # Depth inside the level keeps every intra-level import in an earlier chunk.
        member_set = set(members)
        depth: Dict[int, int] = {}
        for index in members:
            inner = [depth[dep] for dep in deps[index] if dep in member_set]
            depth[index] = 1 + max(inner) if inner else 0
        ordered = sorted(members, key=lambda index: (depth[index], index))

        chunks: List[List[int]] = []
        current: List[int] = []
        current_size = 0
        for index in ordered:
            size = weight(index)
            if current and current_size + size > self.max_partition_lines:
                chunks.append(current)
                current, current_size = [], 0
            current.append(index)
            current_size += size
        if current:
            chunks.append(current)
        return chunks

    def _fold_small(self, groups: List[List[str]], sizes: Mapping[str, int]) -> List[List[str]]:
        groups = [list(group) for group in groups]
        index = 0
        while index < len(groups) and len(groups) > 1:
            size = sum(sizes.get(path, 0) for path in groups[index])
            if size >= self.min_partition_lines:
                index += 1
                continue
            if index + 1 < len(groups):
                groups[index + 1] = sorted(groups[index] + groups[index + 1])
                del groups[index]
            else:
                groups[index - 1] = sorted(groups[index - 1] + groups[index])
                del groups[index]
        return groups

    # ------------------------------------------------------------ partitions
    def _build_partitions(
        self,
        groups: List[List[str]],
        files: Iterable[ChangedFile],
        metadata: PlanMetadata,
        *,
        offset: int,
        previous: Partition | None,
    ) -> List[Partition]:
        records = {entry.path: entry for entry in files}
        total = offset + len(groups)
        partitions: List[Partition] = []
        for position, group in enumerate(groups):
            index = offset + position
            tag = _dominant_tag([records[path] for path in group])
            name = partition_name(index, tag.value)
            base = previous.name if previous is not None else metadata.base
            partition = Partition(
                name=name,
                branch=branch_name(self.branch_prefix, name),
                base=base,
                commit_message=_commit_message(tag, group, index, total, metadata),
                files=tuple(group),
            )
            partitions.append(partition)
            previous = partition
        return partitions


def _dominant_tag(records: Sequence[ChangedFile]) -> FileTag:
    anchored = [record.tag for record in records if not record.tag.floating]
    pool = anchored or [record.tag for record in records]
    tally = Counter(pool)
    return sorted(tally, key=lambda tag: (-tally[tag], tag.rank))[0]


def _commit_message(
    tag: FileTag,
    paths: Sequence[str],
    index: int,
    total: int,
    metadata: PlanMetadata,
) -> str:
    count = len(paths)
    noun = "file" if count == 1 else "files"
    lines = [
        f"{TAG_TITLES[tag]} ({count} {noun})",
        "",
        f"Part {index + 1} of {total} split from {metadata.source}.",
        "",
        "Files:",
    ]
    lines.extend(f"- {path}" for path in paths)
    return "\n".join(lines)


__all__ = ["PartitionPlanner", "ReplanResult", "TAG_TITLES", "verify_plan"]
