"""Directed import graph among the files of a changeset."""

from __future__ import annotations

import heapq
from typing import Dict, Iterable, Iterator, List, Set, Tuple

from ..state.schema import ChangedFile


class DependencyGraph:
    """Edges ``a -> b`` meaning *a imports b*; nodes are changed paths only."""

    def __init__(self, nodes: Iterable[str], edges: Iterable[Tuple[str, str]] = ()) -> None:
        self._nodes: Set[str] = set(nodes)
        self._deps: Dict[str, Set[str]] = {node: set() for node in self._nodes}
        self._rdeps: Dict[str, Set[str]] = {node: set() for node in self._nodes}
        for source, target in edges:
            if source == target or source not in self._nodes or target not in self._nodes:
                continue
            self._deps[source].add(target)
            self._rdeps[target].add(source)

    @classmethod
    def from_files(cls, files: Iterable[ChangedFile]) -> "DependencyGraph":
        records = list(files)
        return cls(
            (record.path for record in records),
            ((record.path, target) for record in records for target in record.imports),
        )

    def __contains__(self, path: object) -> bool:
        return path in self._nodes

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._nodes))

    def __len__(self) -> int:
        return len(self._nodes)

    def dependencies(self, path: str) -> frozenset[str]:
        return frozenset(self._deps.get(path, ()))

    def dependents(self, path: str) -> frozenset[str]:
        return frozenset(self._rdeps.get(path, ()))

    def edges(self) -> List[Tuple[str, str]]:
        return sorted((source, target) for source, targets in self._deps.items() for target in targets)

    def closure(self, paths: Iterable[str]) -> Set[str]:
        """Return ``paths`` plus everything they transitively import."""
        seen: Set[str] = set()
        pending = [path for path in paths if path in self._nodes]
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            pending.extend(self._deps[current] - seen)
        return seen

    def components(self) -> List[Tuple[str, ...]]:
        """Strongly connected components in dependency-first topological order.

        Ties between independent components are broken by their smallest path
        so the result is deterministic.
        """
        sccs = self._tarjan()
        owner: Dict[str, int] = {}
        for index, component in enumerate(sccs):
            for path in component:
                owner[path] = index

        pending_deps: Dict[int, Set[int]] = {index: set() for index in range(len(sccs))}
        dependents: Dict[int, Set[int]] = {index: set() for index in range(len(sccs))}
        for source, target in self.edges():
            a, b = owner[source], owner[target]
            if a != b:
                pending_deps[a].add(b)
                dependents[b].add(a)

        ready = [(sccs[index][0], index) for index, deps in pending_deps.items() if not deps]
        heapq.heapify(ready)
        ordered: List[Tuple[str, ...]] = []
        while ready:
            _, index = heapq.heappop(ready)
            ordered.append(sccs[index])
            for dependent in sorted(dependents[index]):
                pending_deps[dependent].discard(index)
                if not pending_deps[dependent]:
                    heapq.heappush(ready, (sccs[dependent][0], dependent))
        return ordered

    def _tarjan(self) -> List[Tuple[str, ...]]:
        index_of: Dict[str, int] = {}
        low: Dict[str, int] = {}
        on_stack: Set[str] = set()
        stack: List[str] = []
        result: List[Tuple[str, ...]] = []
        counter = 0

        for root in sorted(self._nodes):
            if root in index_of:
                continue
            index_of[root] = low[root] = counter
            counter += 1
            stack.append(root)
            on_stack.add(root)
            work: List[Tuple[str, Iterator[str]]] = [(root, iter(sorted(self._deps[root])))]
            while work:
                node, children = work[-1]
                descended = False
                for child in children:
                    if child not in index_of:
                        index_of[child] = low[child] = counter
                        counter += 1
                        stack.append(child)
                        on_stack.add(child)
                        work.append((child, iter(sorted(self._deps[child]))))
                        descended = True
                        break
                    if child in on_stack:
                        low[node] = min(low[node], index_of[child])
                if descended:
                    continue
                work.pop()
                if work:
                    parent = work[-1][0]
                    low[parent] = min(low[parent], low[node])
                if low[node] == index_of[node]:
                    component: List[str] = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    result.append(tuple(sorted(component)))
        return result


__all__ = ["DependencyGraph"]
