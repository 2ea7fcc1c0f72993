"""Read-only artifact index queried by the auto-fixers.

The index is built once per fix invocation from an ordered list of origins
(for example the original source, then upstream partitions). Every artifact
key maps to its candidates in origin order, so the first candidate is always
the highest-priority one and the search itself needs no version control.
"""

from __future__ import annotations

import ast
import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Mapping, Protocol, Sequence, Set, Tuple

from ..analysis.imports import PYTHON_SUFFIXES, module_variants, suffix_of
from .failures import ArtifactKey

LOGGER = logging.getLogger(__name__)

_SCRIPT_DEFINITION = re.compile(
    r"^\s*(?:export\s+)?(?:default\s+)?(?:declare\s+)?(?:async\s+)?"
    r"(?:function\*?|class|const|let|var|interface|type|enum)\s+([A-Za-z_$][\w$]*)",
    re.MULTILINE,
)


class ContentReader(Protocol):
    """Anything able to return a file's content at a ref (``GitRepository`` does)."""

    def show_file(self, ref: str, path: str) -> str | None: ...


@dataclass(frozen=True, slots=True)
class SearchOrigin:
    """One place to search: a label, the ref to read from, and the paths it covers."""

    label: str
    ref: str
    paths: Tuple[str, ...]


@dataclass(frozen=True, slots=True)
class Candidate:
    """Location of an artifact inside one origin."""

    origin: str
    ref: str
    path: str
    line: int | None = None

    @property
    def location(self) -> str:
        return f"{self.path}:{self.line}" if self.line else self.path


class ArtifactIndex:
    """Mapping from artifact identity to candidates in priority order."""

    def __init__(self, entries: Mapping[ArtifactKey, Sequence[Candidate]], scope: Sequence[str]) -> None:
        self._entries: Dict[ArtifactKey, Tuple[Candidate, ...]] = {
            key: tuple(candidates) for key, candidates in entries.items()
        }
        self._scope = tuple(scope)

    @classmethod
    def build(
        cls,
        origins: Sequence[SearchOrigin],
        reader: ContentReader,
        *,
        source_roots: Sequence[str] = ("src", "lib"),
    ) -> "ArtifactIndex":
        entries: Dict[ArtifactKey, List[Candidate]] = {}
        for origin in origins:
            for path in sorted(origin.paths):
                content = reader.show_file(origin.ref, path)
                if content is None:
                    continue
                for key, line in _definitions(path, content, source_roots):
                    bucket = entries.setdefault(key, [])
                    if any(existing.origin == origin.label and existing.path == path for existing in bucket):
                        continue
                    bucket.append(Candidate(origin=origin.label, ref=origin.ref, path=path, line=line))
        LOGGER.debug("Built artifact index with %d key(s) over %d origin(s)", len(entries), len(origins))
        return cls(entries, [origin.label for origin in origins])

    @property
    def scope(self) -> Tuple[str, ...]:
        return self._scope

    def candidates(self, key: ArtifactKey) -> Tuple[Candidate, ...]:
        return self._entries.get(key, ())

    def walk(self, keys: Iterable[ArtifactKey]) -> Iterator[Tuple[ArtifactKey, Candidate]]:
        """Yield every candidate of every key, keys in the order given, each in origin order."""
        for key in keys:
            for candidate in self._entries.get(key, ()):
                yield key, candidate


def _definitions(path: str, content: str, source_roots: Sequence[str]) -> List[Tuple[ArtifactKey, int | None]]:
    found: List[Tuple[ArtifactKey, int | None]] = []
    for variant in _path_variants(path):
        found.append((ArtifactKey("path", variant), None))

    suffix = suffix_of(path)
    if suffix in PYTHON_SUFFIXES:
        for variant in module_variants(path, source_roots):
            found.append((ArtifactKey("module", variant), None))
        found.extend(_python_symbols(path, content))
    else:
        for match in _SCRIPT_DEFINITION.finditer(content):
            line = content.count("\n", 0, match.start()) + 1
            found.append((ArtifactKey("symbol", match.group(1)), line))
    return found


def _path_variants(path: str) -> Set[str]:
    parts = path.split("/")
    variants: Set[str] = set()
    for start in range(len(parts)):
        tail = "/".join(parts[start:])
        variants.add(tail)
        if "." in parts[-1]:
            variants.add(tail.rsplit(".", 1)[0])
    return variants


def _python_symbols(path: str, content: str) -> List[Tuple[ArtifactKey, int | None]]:
    try:
        tree = ast.parse(content)
    except SyntaxError as error:
        LOGGER.debug("Skipping symbols of %s: %s", path, error)
        return []

    found: List[Tuple[ArtifactKey, int | None]] = []
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            found.append((ArtifactKey("symbol", node.name), node.lineno))
            fixture_name = _fixture_name(node)
            if fixture_name:
                found.append((ArtifactKey("fixture", fixture_name), node.lineno))
        elif isinstance(node, ast.ClassDef):
            found.append((ArtifactKey("symbol", node.name), node.lineno))
        elif isinstance(node, ast.Assign):
            for target in node.targets:
                if isinstance(target, ast.Name):
                    found.append((ArtifactKey("symbol", target.id), node.lineno))
        elif isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name):
            found.append((ArtifactKey("symbol", node.target.id), node.lineno))
    return found


def _fixture_name(node: ast.FunctionDef | ast.AsyncFunctionDef) -> str | None:
    for decorator in node.decorator_list:
        call = decorator if isinstance(decorator, ast.Call) else None
        target = call.func if call is not None else decorator
        is_fixture = (isinstance(target, ast.Name) and target.id == "fixture") or (
            isinstance(target, ast.Attribute) and target.attr == "fixture"
        )
        if not is_fixture:
            continue
        if call is not None:
            for keyword in call.keywords:
                if keyword.arg == "name" and isinstance(keyword.value, ast.Constant) and isinstance(keyword.value.value, str):
                    return keyword.value.value
        return node.name
    return None


__all__ = ["ArtifactIndex", "Candidate", "ContentReader", "SearchOrigin"]
