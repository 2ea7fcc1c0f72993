"""Enumerate, classify and link the files of a changeset."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping

from ..errors import ConfigError
from ..state.schema import ChangeKind, ChangedFile, FileTag
from ..tools.vcs import GitError, GitRepository
from .graph import DependencyGraph
from .imports import ImportExtractor
from .rules import ClassificationRules

LOGGER = logging.getLogger(__name__)

_CHANGE_KINDS: Dict[str, ChangeKind] = {
    "A": ChangeKind.ADDED,
    "C": ChangeKind.ADDED,
    "D": ChangeKind.DELETED,
}


@dataclass(slots=True)
class ChangeAnalysis:
    """Analyzer output: the changed files and the import graph among them."""

    source: str
    base: str
    source_commit: str
    files: tuple[ChangedFile, ...]
    graph: DependencyGraph = field(repr=False)

    def counts(self) -> Dict[str, int]:
        return tag_counts(self.files)


def tag_counts(files: Iterable[ChangedFile]) -> Dict[str, int]:
    """Number of files per tag, every tag present."""
    tally = Counter(entry.tag.value for entry in files)
    return {tag.value: tally.get(tag.value, 0) for tag in FileTag}


class ChangeAnalyzer:
    """Builds :class:`ChangedFile` records between a base and a source ref."""

    def __init__(
        self,
        repo: GitRepository,
        *,
        rules: ClassificationRules | None = None,
        config: Mapping[str, Any] | None = None,
    ) -> None:
        self.repo = repo
        self.rules = rules or ClassificationRules.default()
        self._config: Mapping[str, Any] = config or {}

    @classmethod
    def from_config(cls, repo: GitRepository, config: Mapping[str, Any]) -> "ChangeAnalyzer":
        return cls(repo, rules=ClassificationRules.from_config(config), config=config)

    def analyze(self, source: str, base: str) -> ChangeAnalysis:
        """Analyze the changes on ``source`` relative to ``base``.

        Raises :class:`ConfigError` when a ref is unknown or nothing changed.
        """
        source_commit = self.repo.rev_parse(source)
        if source_commit is None:
            raise ConfigError(f"Unknown source ref: {source}")
        if self.repo.rev_parse(base) is None:
            raise ConfigError(f"Unknown base ref: {base}")

        try:
            entries = self.repo.diff_name_status(base, source)
            sizes = self.repo.diff_numstat(base, source)
        except GitError as error:
            raise ConfigError(f"Unable to diff {base}...{source}: {error}") from error

        changes: Dict[str, ChangeKind] = {}
        for status, path in entries:
            # Paths are reported once each with --no-renames; keep the first.
            changes.setdefault(path, _CHANGE_KINDS.get(status, ChangeKind.MODIFIED))
        if not changes:
            raise ConfigError(
                f"No changes detected between {base} and {source}; nothing to plan.",
                action="Check the --source/--base refs.",
            )

        extractor = ImportExtractor.from_config(changes, self._config)
        files = []
        for path in sorted(changes):
            change = changes[path]
            content = None if change == ChangeKind.DELETED else self.repo.show_file(source_commit, path)
            record = ChangedFile(
                path=path,
                tag=self.rules.classify(path),
                change=change,
                size_lines=sizes.get(path, 0),
                imports=extractor.imports_for(path, content),
            )
            LOGGER.debug("Classified %s as %s (%d import edge(s))", path, record.tag.value, len(record.imports))
            files.append(record)

        analysis = ChangeAnalysis(
            source=source,
            base=base,
            source_commit=source_commit,
            files=tuple(files),
            graph=DependencyGraph.from_files(files),
        )
        LOGGER.info(
            "Analyzed %d changed file(s) with %d dependency edge(s) between %s and %s",
            len(files),
            len(analysis.graph.edges()),
            base,
            source,
        )
        return analysis


__all__ = ["ChangeAnalysis", "ChangeAnalyzer", "tag_counts"]
