"""Forward propagation of a fix through the rest of the stack.

The walk itself is pure: it operates on immutable snapshots and delegates
the merge and the validation to callables, so the stopping rules can be
exercised without a repository.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, Literal, Sequence, Tuple


@dataclass(frozen=True, slots=True)
class PartitionSnapshot:
    name: str
    branch: str
    head: str | None = None


@dataclass(frozen=True, slots=True)
class PropagationOutcome:
    """Chain after propagation plus where and why it stopped, if it did."""

    snapshots: Tuple[PartitionSnapshot, ...]
    updated: Tuple[str, ...] = ()
    stopped_at: str | None = None
    reason: Literal["conflict", "validation"] | None = None

    @property
    def complete(self) -> bool:
        return self.stopped_at is None

    def describe(self) -> str:
        if self.complete:
            if not self.updated:
                return "nothing to propagate"
            return "propagated to " + ", ".join(self.updated)
        done = ", ".join(self.updated) or "no partition"
        problem = "merge conflict" if self.reason == "conflict" else "validation failure"
        return f"{problem} in {self.stopped_at} (propagated to {done})"


MergeFn = Callable[[PartitionSnapshot, PartitionSnapshot], "str | None"]
ValidateFn = Callable[[PartitionSnapshot], bool]


def forward_merge(
    chain: Sequence[PartitionSnapshot],
    start: int,
    *,
    merge: MergeFn,
    validate: ValidateFn,
) -> PropagationOutcome:
    """Merge each partition after ``start`` with its updated predecessor.

    ``merge(target, upstream)`` returns the new head of ``target`` or ``None``
    on a conflict. The walk stops at the first conflict or failed validation;
    that partition and everything after it keep their previous snapshot.
    """
    snapshots = list(chain)
    updated: list[str] = []
    for position in range(start + 1, len(snapshots)):
        upstream = snapshots[position - 1]
        target = snapshots[position]
        head = merge(target, upstream)
        if head is None:
            return PropagationOutcome(tuple(snapshots), tuple(updated), target.name, "conflict")
        merged = replace(target, head=head)
        if not validate(merged):
            return PropagationOutcome(tuple(snapshots), tuple(updated), target.name, "validation")
        snapshots[position] = merged
        updated.append(target.name)
    return PropagationOutcome(tuple(snapshots), tuple(updated))


__all__ = ["PartitionSnapshot", "PropagationOutcome", "forward_merge"]
