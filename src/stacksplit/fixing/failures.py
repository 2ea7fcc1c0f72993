"""Closed taxonomy of validation failures the auto-fixers know how to repair."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Literal, Tuple

from ..state.schema import ValidationResult

ArtifactKind = Literal["module", "path", "fixture", "symbol"]


class FailureKind(str, Enum):
    MISSING_REFERENCE = "missing-reference"
    MISSING_FIXTURE = "missing-fixture"
    UNDEFINED_SYMBOL = "undefined-symbol"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class ArtifactKey:
    """Identity of the artifact that would resolve a failure."""

    kind: ArtifactKind
    name: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.name}"


@dataclass(frozen=True, slots=True)
class FailureClassification:
    """Failure kind plus the artifact keys to search, most specific first."""

    kind: FailureKind
    keys: Tuple[ArtifactKey, ...] = ()
    check: str | None = None
    evidence: str = ""

    @property
    def classifiable(self) -> bool:
        return self.kind != FailureKind.OTHER and bool(self.keys)


def _relative_path(value: str) -> str:
    parts = [part for part in value.replace("\\", "/").split("/") if part not in {"", ".", ".."}]
    return "/".join(parts)


_Builder = Callable[[re.Match[str]], Tuple[ArtifactKey, ...]]

# Evaluated in order; the first pattern found in the output wins.
_PATTERNS: List[Tuple[re.Pattern[str], FailureKind, _Builder]] = [
    (
        re.compile(r"fixture '(\w+)' not found"),
        FailureKind.MISSING_FIXTURE,
        lambda match: (ArtifactKey("fixture", match.group(1)),),
    ),
    (
        re.compile(r"cannot import name '(\w+)' from '([\w.]+)'"),
        FailureKind.MISSING_REFERENCE,
        lambda match: (ArtifactKey("module", match.group(2)), ArtifactKey("symbol", match.group(1))),
    ),
    (
        re.compile(r"No module named '([\w.]+)'"),
        FailureKind.MISSING_REFERENCE,
        lambda match: (ArtifactKey("module", match.group(1)),),
    ),
    (
        re.compile(r'Cannot find implementation or library stub for module named "([\w.]+)"'),
        FailureKind.MISSING_REFERENCE,
        lambda match: (ArtifactKey("module", match.group(1)),),
    ),
    (
        re.compile(r"Cannot find module '([^']+)'"),
        FailureKind.MISSING_REFERENCE,
        lambda match: (ArtifactKey("path", _relative_path(match.group(1))),),
    ),
    (
        re.compile(r"No such file or directory: '([^']+)'"),
        FailureKind.MISSING_REFERENCE,
        lambda match: (ArtifactKey("path", _relative_path(match.group(1))),),
    ),
    (
        re.compile(r"NameError: name '(\w+)' is not defined"),
        FailureKind.UNDEFINED_SYMBOL,
        lambda match: (ArtifactKey("symbol", match.group(1)),),
    ),
    (
        re.compile(r"module '([\w.]+)' has no attribute '(\w+)'"),
        FailureKind.UNDEFINED_SYMBOL,
        lambda match: (ArtifactKey("module", match.group(1)), ArtifactKey("symbol", match.group(2))),
    ),
    (
        re.compile(r'Name "(\w+)" is not defined'),
        FailureKind.UNDEFINED_SYMBOL,
        lambda match: (ArtifactKey("symbol", match.group(1)),),
    ),
    (
        re.compile(r"[Uu]ndefined name [`'](\w+)[`']"),
        FailureKind.UNDEFINED_SYMBOL,
        lambda match: (ArtifactKey("symbol", match.group(1)),),
    ),
    (
        re.compile(r"Cannot find name '(\w+)'"),
        FailureKind.UNDEFINED_SYMBOL,
        lambda match: (ArtifactKey("symbol", match.group(1)),),
    ),
]


def classify_output(text: str, *, check: str | None = None) -> FailureClassification:
    """Classify raw check output."""
    for pattern, kind, build in _PATTERNS:
        match = pattern.search(text or "")
        if match is None:
            continue
        keys = tuple(key for key in build(match) if key.name)
        if keys:
            return FailureClassification(kind=kind, keys=keys, check=check, evidence=match.group(0))
    return FailureClassification(kind=FailureKind.OTHER, check=check)


def classify_failure(result: ValidationResult) -> FailureClassification:
    """Classify the first failing check whose output matches the taxonomy."""
    first: FailureClassification | None = None
    for outcome in result.failed_checks:
        classification = classify_output(outcome.output, check=outcome.name)
        if classification.classifiable:
            return classification
        first = first or classification
    return first or FailureClassification(kind=FailureKind.OTHER)


__all__ = [
    "ArtifactKey",
    "FailureClassification",
    "FailureKind",
    "classify_failure",
    "classify_output",
]
