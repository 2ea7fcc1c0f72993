"""Import edge extraction restricted to the files of a changeset."""

from __future__ import annotations

import ast
import logging
import posixpath
import re
from importlib.util import resolve_name
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence, Set

LOGGER = logging.getLogger(__name__)

PYTHON_SUFFIXES: frozenset[str] = frozenset({".py", ".pyi"})
SCRIPT_SUFFIXES: tuple[str, ...] = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")

_SCRIPT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"""\bimport\s+(?:type\s+)?(?:[\w*{}\s,$]+?\s+from\s+)?['"]([^'"\n]+)['"]"""),
    re.compile(r"""\bexport\s+(?:type\s+)?[\w*{}\s,$]+?\s+from\s+['"]([^'"\n]+)['"]"""),
    re.compile(r"""\brequire\(\s*['"]([^'"\n]+)['"]\s*\)"""),
    re.compile(r"""\bimport\(\s*['"]([^'"\n]+)['"]\s*\)"""),
)


def suffix_of(path: str) -> str:
    name = path.rsplit("/", 1)[-1]
    if "." not in name:
        return ""
    return "." + name.rsplit(".", 1)[-1].lower()


def module_name(path: str) -> str:
    """Return the dotted module name of a Python ``path``."""
    stem = path.rsplit(".", 1)[0] if suffix_of(path) in PYTHON_SUFFIXES else path
    parts = [part for part in stem.split("/") if part]
    if parts and parts[-1] == "__init__":
        parts = parts[:-1]
    return ".".join(parts)


def module_variants(path: str, source_roots: Sequence[str] = ("src", "lib")) -> List[str]:
    """Module names under which ``path`` can be imported."""
    full = module_name(path)
    if not full:
        return []
    variants = [full]
    head, _, rest = full.partition(".")
    if head in source_roots and rest:
        variants.append(rest)
    return variants


class ImportExtractor:
    """Resolves the imports of one file to other changed files."""

    def __init__(
        self,
        changed_paths: Iterable[str],
        *,
        source_roots: Sequence[str] = ("src", "lib"),
        aliases: Mapping[str, str] | None = None,
    ) -> None:
        self._paths: Set[str] = set(changed_paths)
        self._source_roots = tuple(source_roots)
        self._aliases = dict(aliases or {})
        self._modules: Dict[str, str] = {}
        for path in sorted(self._paths):
            if suffix_of(path) not in PYTHON_SUFFIXES:
                continue
            for variant in module_variants(path, self._source_roots):
                self._modules.setdefault(variant, path)
        self._parsers: Dict[str, Callable[[str, str], Set[str]]] = {}
        for suffix in PYTHON_SUFFIXES:
            self._parsers[suffix] = self._python_imports
        for suffix in SCRIPT_SUFFIXES:
            self._parsers[suffix] = self._script_imports

    @classmethod
    def from_config(cls, changed_paths: Iterable[str], config: Mapping[str, Any]) -> "ImportExtractor":
        analysis_cfg = config.get("analysis") or {}
        roots = analysis_cfg.get("source_roots") or ("src", "lib")
        aliases = analysis_cfg.get("path_aliases") or {}
        return cls(changed_paths, source_roots=[str(root) for root in roots], aliases=aliases)

    def register(self, suffix: str, parser: Callable[[str, str], Set[str]]) -> None:
        """Plug in an extractor for another language."""
        self._parsers[suffix.lower()] = parser

    def imports_for(self, path: str, content: str | None) -> tuple[str, ...]:
        """Return the sorted changed-file paths imported by ``path``."""
        if not content:
            return ()
        parser = self._parsers.get(suffix_of(path))
        if parser is None:
            return ()
        targets = parser(path, content)
        targets.discard(path)
        return tuple(sorted(target for target in targets if target in self._paths))

    # ---------------------------------------------------------------- python
    def _python_imports(self, path: str, content: str) -> Set[str]:
        try:
            tree = ast.parse(content)
        except SyntaxError as error:
            LOGGER.debug("Skipping imports of %s: %s", path, error)
            return set()

        current = module_name(path)
        package = current if path.endswith("__init__.py") else current.rpartition(".")[0]
        candidates: Set[str] = set()
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                for alias in node.names:
                    candidates.add(alias.name)
            elif isinstance(node, ast.ImportFrom):
                base = self._resolve_from(node, package)
                if not base:
                    continue
                candidates.add(base)
                for alias in node.names:
                    if alias.name != "*":
                        candidates.add(f"{base}.{alias.name}")

        # Importing a.b.c first executes the a and a.b package initialisers.
        for candidate in list(candidates):
            parts = candidate.split(".")
            candidates.update(".".join(parts[:end]) for end in range(1, len(parts)))

        targets: Set[str] = set()
        for candidate in candidates:
            target = self._modules.get(candidate)
            if target is not None:
                targets.add(target)
        return targets

    @staticmethod
    def _resolve_from(node: ast.ImportFrom, package: str) -> str:
        level = node.level or 0
        fragment = node.module or ""
        if level == 0:
            return fragment
        dotted = "." * level + fragment
        if not package:
            return fragment
        try:
            return resolve_name(dotted, package)
        except (ImportError, ValueError):
            return fragment

    # ---------------------------------------------------------------- scripts
    def _script_imports(self, path: str, content: str) -> Set[str]:
        directory = posixpath.dirname(path)
        targets: Set[str] = set()
        for pattern in _SCRIPT_PATTERNS:
            for match in pattern.finditer(content):
                resolved = self._resolve_specifier(directory, match.group(1))
                if resolved is not None:
                    targets.add(resolved)
        return targets

    def _resolve_specifier(self, directory: str, specifier: str) -> str | None:
        for alias, replacement in self._aliases.items():
            if specifier.startswith(alias):
                specifier = replacement + specifier[len(alias):]
                base = posixpath.normpath(specifier)
                break
        else:
            if not specifier.startswith("."):
                return None
            base = posixpath.normpath(posixpath.join(directory, specifier))

        candidates = [base]
        stem, suffix = posixpath.splitext(base)
        if suffix in {".js", ".jsx", ".mjs", ".cjs"}:
            candidates.extend([f"{stem}.ts", f"{stem}.tsx"])
        candidates.extend(f"{base}{ext}" for ext in SCRIPT_SUFFIXES)
        candidates.extend(f"{base}/index{ext}" for ext in SCRIPT_SUFFIXES)
        for candidate in candidates:
            if candidate in self._paths:
                return candidate
        return None


__all__ = ["ImportExtractor", "module_name", "module_variants", "suffix_of"]
