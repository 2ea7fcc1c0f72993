from __future__ import annotations

import pytest

from stacksplit.fixing.failures import ArtifactKey, FailureKind, classify_failure, classify_output
from stacksplit.state.schema import CheckOutcome, ValidationResult


@pytest.mark.parametrize(
    ("output", "kind", "keys"),
    [
        (
            "ModuleNotFoundError: No module named 'pkg.ui.helpers'",
            FailureKind.MISSING_REFERENCE,
            (ArtifactKey("module", "pkg.ui.helpers"),),
        ),
        (
            "ImportError: cannot import name 'User' from 'app.models' (/repo/app/models.py)",
            FailureKind.MISSING_REFERENCE,
            (ArtifactKey("module", "app.models"), ArtifactKey("symbol", "User")),
        ),
        (
            "E       fixture 'db_session' not found",
            FailureKind.MISSING_FIXTURE,
            (ArtifactKey("fixture", "db_session"),),
        ),
        (
            "NameError: name 'slugify' is not defined",
            FailureKind.UNDEFINED_SYMBOL,
            (ArtifactKey("symbol", "slugify"),),
        ),
        (
            "src/app.ts(3,20): error TS2307: Cannot find module './util' or its corresponding type declarations.",
            FailureKind.MISSING_REFERENCE,
            (ArtifactKey("path", "util"),),
        ),
        (
            "FileNotFoundError: [Errno 2] No such file or directory: 'tests/data/users.json'",
            FailureKind.MISSING_REFERENCE,
            (ArtifactKey("path", "tests/data/users.json"),),
        ),
    ],
)
def test_known_failures_are_classified(output: str, kind: FailureKind, keys: tuple[ArtifactKey, ...]) -> None:
    classification = classify_output(output, check="tests")

    assert classification.kind == kind
    assert classification.keys == keys
    assert classification.check == "tests"
    assert classification.classifiable


def test_unknown_failures_are_not_fixable() -> None:
    classification = classify_output("AssertionError: assert 1 == 2")

    assert classification.kind == FailureKind.OTHER
    assert not classification.classifiable


def test_first_classifiable_failing_check_is_used() -> None:
    result = ValidationResult(
        partition="01-business-logic",
        outcomes=(
            CheckOutcome(name="lint", status="failed", output="E501 line too long"),
            CheckOutcome(name="types", status="passed", output="No module named 'ignored'"),
            CheckOutcome(name="tests", status="failed", output="No module named 'app.clock'"),
        ),
    )

    classification = classify_failure(result)

    assert classification.check == "tests"
    assert classification.keys == (ArtifactKey("module", "app.clock"),)


def test_unclassifiable_failures_report_the_first_failing_check() -> None:
    result = ValidationResult(
        partition="01-business-logic",
        outcomes=(
            CheckOutcome(name="lint", status="failed", output="E501 line too long"),
            CheckOutcome(name="tests", status="failed", output="AssertionError"),
        ),
    )

    classification = classify_failure(result)

    assert classification.kind == FailureKind.OTHER
    assert classification.check == "lint"
