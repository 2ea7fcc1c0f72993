"""One-shot repair of a partition that failed local validation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Mapping, Sequence

from ..analysis.graph import DependencyGraph
from ..planning.planner import verify_plan
from ..state.schema import ChangeKind, FixRecord, StackPlan, ValidationResult
from ..tools.gates import Validator
from ..tools.vcs import GitRepository
from .failures import FailureClassification, classify_failure
from .index import ArtifactIndex, Candidate, SearchOrigin

LOGGER = logging.getLogger(__name__)

SOURCE_ORIGIN = "source"


@dataclass(slots=True)
class FixAttempt:
    """Result of :meth:`LocalAutoFixer.attempt`."""

    plan: StackPlan
    record: FixRecord
    validation: ValidationResult | None = None

    @property
    def resolved(self) -> bool:
        return self.record.resolved


def source_ref(plan: StackPlan) -> str:
    return plan.metadata.source_commit or plan.metadata.source


def local_origins(plan: StackPlan, index: int) -> List[SearchOrigin]:
    """Source changeset first, then upstream partitions nearest first."""
    present = tuple(entry.path for entry in plan.files if entry.change != ChangeKind.DELETED)
    origins = [SearchOrigin(label=SOURCE_ORIGIN, ref=source_ref(plan), paths=present)]
    for upstream in range(index - 1, -1, -1):
        partition = plan.partitions[upstream]
        origins.append(SearchOrigin(label=partition.name, ref=partition.branch, paths=partition.files))
    return origins


def pending_closure(plan: StackPlan, path: str, index: int) -> List[str]:
    """``path`` and its transitive changed imports not yet present at ``index``."""
    graph = DependencyGraph.from_files(plan.files)
    owners = plan.owners()
    closure = graph.closure([path]) if path in graph else {path}
    return sorted(item for item in closure if owners.get(item, -1) > index)


class LocalAutoFixer:
    """Pulls the artifact a failing partition is missing, then re-validates once."""

    def __init__(
        self,
        repo: GitRepository,
        validator: Validator,
        *,
        source_roots: Sequence[str] = ("src", "lib"),
        enabled: bool = True,
    ) -> None:
        self.repo = repo
        self.validator = validator
        self.source_roots = tuple(source_roots)
        self.enabled = enabled

    @classmethod
    def from_config(cls, repo: GitRepository, validator: Validator, config: Mapping[str, Any]) -> "LocalAutoFixer":
        analysis_cfg = config.get("analysis") or {}
        autofix_cfg = config.get("autofix") or {}
        return cls(
            repo,
            validator,
            source_roots=analysis_cfg.get("source_roots") or ("src", "lib"),
            enabled=bool(autofix_cfg.get("enabled", True)),
        )

    def attempt(self, plan: StackPlan, index: int, validation: ValidationResult) -> FixAttempt:
        partition = plan.partitions[index]
        classification = classify_failure(validation)
        if not self.enabled:
            return self._unresolved(plan, classification, (), "auto-fix disabled")
        if not classification.classifiable:
            LOGGER.info("%s: failure is not auto-fixable", partition.name)
            return self._unresolved(plan, classification, (), "failure is outside the auto-fixable taxonomy")

        origins = local_origins(plan, index)
        artifacts = ArtifactIndex.build(origins, self.repo, source_roots=self.source_roots)
        skipped: List[str] = []
        for key, candidate in artifacts.walk(classification.keys):
            moved: List[str] = []
            if candidate.origin == SOURCE_ORIGIN:
                moved = pending_closure(plan, candidate.path, index)
                if not moved:
                    skipped.append(f"{candidate.location} (already part of {partition.name} or earlier)")
                    continue
                self._apply_from_source(plan, moved)
            else:
                self.repo.checkout_paths(candidate.ref, [candidate.path])
            commit = self.repo.commit_staged(f"Pull {candidate.path} into {partition.name} to resolve {key}")
            if commit is None:
                skipped.append(f"{candidate.location} from {candidate.origin} (identical to the checked-out copy)")
                continue
            return self._revalidate(plan, index, classification, artifacts.scope, str(key), candidate, moved)

        keys = ", ".join(str(key) for key in classification.keys)
        detail = f"no usable artifact for {keys}"
        if skipped:
            detail += "; skipped " + ", ".join(skipped)
        LOGGER.info("%s: %s", partition.name, detail)
        return self._unresolved(plan, classification, artifacts.scope, detail)

    def _revalidate(
        self,
        plan: StackPlan,
        index: int,
        classification: FailureClassification,
        scope: Sequence[str],
        artifact: str,
        candidate: Candidate,
        moved: Sequence[str],
    ) -> FixAttempt:
        name = plan.partitions[index].name
        if moved:
            plan = plan.reassign(moved, index)
            verify_plan(plan)
        revalidation = self.validator.validate(name, self.repo.root)
        LOGGER.info(
            "%s: pulled %s from %s; re-validation %s",
            name,
            candidate.location,
            candidate.origin,
            "passed" if revalidation.passed else "failed",
        )
        record = FixRecord(
            mode="local",
            failure_kind=classification.kind.value,
            artifact=artifact,
            scope=tuple(scope),
            origin=candidate.origin,
            location=candidate.location,
            moved_files=tuple(moved),
            resolved=revalidation.passed,
            detail=classification.evidence,
        )
        return FixAttempt(plan=plan, record=record, validation=revalidation)

    def _apply_from_source(self, plan: StackPlan, paths: Sequence[str]) -> None:
        files = plan.file_map()
        deleted = [path for path in paths if files[path].change == ChangeKind.DELETED]
        present = [path for path in paths if files[path].change != ChangeKind.DELETED]
        self.repo.remove_paths(deleted)
        self.repo.checkout_paths(source_ref(plan), present)

    @staticmethod
    def _unresolved(
        plan: StackPlan,
        classification: FailureClassification,
        scope: Sequence[str],
        detail: str,
    ) -> FixAttempt:
        record = FixRecord(
            mode="local",
            failure_kind=classification.kind.value,
            scope=tuple(scope),
            detail=detail,
        )
        return FixAttempt(plan=plan, record=record)


__all__ = ["FixAttempt", "LocalAutoFixer", "local_origins", "pending_closure", "source_ref"]
