"""Ordered rule table mapping changed paths to logical tags."""

from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any, Iterable, List, Mapping, Sequence

from ..errors import ConfigError
from ..state.schema import FileTag


@dataclass(frozen=True, slots=True)
class ClassificationRule:
    """Single ``pattern -> tag`` entry.

    Patterns containing ``/`` are matched against the full repository path;
    bare patterns are matched against the file name only.
    """

    pattern: str
    tag: FileTag

    def matches(self, path: str) -> bool:
        if "/" in self.pattern:
            return fnmatchcase(path, self.pattern)
        return fnmatchcase(path.rsplit("/", 1)[-1], self.pattern)


def _rules(tag: FileTag, patterns: Iterable[str]) -> List[ClassificationRule]:
    return [ClassificationRule(pattern=pattern, tag=tag) for pattern in patterns]


# Fixtures come before tests so that conftest modules and fixture data under
# tests/ are not swallowed by the broader test patterns.
DEFAULT_RULES: tuple[ClassificationRule, ...] = (
    *_rules(
        FileTag.FIXTURE,
        (
            "conftest.py",
            "fixtures/*",
            "*/fixtures/*",
            "*/__fixtures__/*",
            "testdata/*",
            "*/testdata/*",
        ),
    ),
    *_rules(
        FileTag.TEST,
        (
            "tests/*",
            "*/tests/*",
            "test/*",
            "*/test/*",
            "*/__tests__/*",
            "test_*.py",
            "*_test.py",
            "*_test.go",
            "*.test.*",
            "*.spec.*",
        ),
    ),
    *_rules(
        FileTag.FOUNDATION_DATA,
        (
            "migrations/*",
            "*/migrations/*",
            "*.sql",
            "*.proto",
            "models/*",
            "*/models/*",
            "models.py",
            "schemas/*",
            "*/schemas/*",
            "schema.py",
            "*/entities/*",
            "*/types/*",
            "types.py",
        ),
    ),
    *_rules(
        FileTag.DATA_ACCESS,
        (
            "repositories/*",
            "*/repositories/*",
            "*repository*",
            "*/dao/*",
            "db/*",
            "*/db/*",
            "*/persistence/*",
            "*/stores/*",
            "store.py",
            "*/queries/*",
        ),
    ),
    *_rules(
        FileTag.BUSINESS_LOGIC,
        (
            "services/*",
            "*/services/*",
            "*service.*",
            "*/domain/*",
            "core/*",
            "*/core/*",
            "*/usecases/*",
            "*/logic/*",
        ),
    ),
    *_rules(
        FileTag.INTERFACE,
        (
            "api/*",
            "*/api/*",
            "*/routes/*",
            "*/views/*",
            "*/controllers/*",
            "*/handlers/*",
            "*/endpoints/*",
            "ui/*",
            "*/ui/*",
            "*/components/*",
            "*/pages/*",
            "*/cli/*",
            "cli.py",
        ),
    ),
)


class ClassificationRules:
    """Evaluates rules in order; the first match wins, ``other`` otherwise."""

    def __init__(self, rules: Sequence[ClassificationRule]) -> None:
        self._rules = tuple(rules)

    @classmethod
    def default(cls) -> "ClassificationRules":
        return cls(DEFAULT_RULES)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ClassificationRules":
        """Build the table from ``analysis.rules``, placed ahead of the defaults."""
        analysis_cfg = config.get("analysis") or {}
        raw = analysis_cfg.get("rules") or []
        custom: List[ClassificationRule] = []
        for entry in raw:
            if not isinstance(entry, Mapping):
                raise ConfigError(f"Classification rule must be a mapping: {entry!r}")
            pattern = str(entry.get("pattern") or "").strip()
            tag_value = str(entry.get("tag") or "").strip()
            if not pattern:
                raise ConfigError(f"Classification rule is missing a pattern: {entry!r}")
            try:
                tag = FileTag(tag_value)
            except ValueError as error:
                known = ", ".join(item.value for item in FileTag)
                raise ConfigError(f"Unknown tag {tag_value!r} for pattern {pattern!r} (known: {known})") from error
            custom.append(ClassificationRule(pattern=pattern, tag=tag))
        if analysis_cfg.get("replace_default_rules"):
            return cls(custom)
        return cls([*custom, *DEFAULT_RULES])

    @property
    def rules(self) -> tuple[ClassificationRule, ...]:
        return self._rules

    def classify(self, path: str) -> FileTag:
        for rule in self._rules:
            if rule.matches(path):
                return rule.tag
        return FileTag.OTHER


__all__ = ["ClassificationRule", "ClassificationRules", "DEFAULT_RULES"]
