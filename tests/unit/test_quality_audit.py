from __future__ import annotations

from typing import Sequence

import pytest

from stacksplit.audit import QualityAuditor, format_audit, is_weak_description, size_class, tested_stem
from stacksplit.state.schema import ChangeKind, ChangedFile, FileTag, Partition, PlanMetadata, StackPlan


def _partition(name: str, files: Sequence[str], message: str) -> Partition:
    return Partition(name=name, branch=f"stack/{name}", base="main", commit_message=message, files=tuple(files))


def _plan() -> StackPlan:
    files = (
        ChangedFile(path="app/models/user.py", tag=FileTag.FOUNDATION_DATA, size_lines=60),
        ChangedFile(path="tests/test_user.py", tag=FileTag.TEST, size_lines=20, imports=("app/models/user.py",)),
        ChangedFile(
            path="app/repositories/users.py",
            tag=FileTag.DATA_ACCESS,
            size_lines=10,
            imports=("app/models/user.py",),
        ),
        ChangedFile(
            path="app/services/signup.py",
            tag=FileTag.BUSINESS_LOGIC,
            size_lines=400,
            imports=("app/repositories/users.py", "app/models/user.py"),
        ),
    )
    partitions = (
        _partition("01-foundation-data", ["app/models/user.py", "tests/test_user.py"], "Add the user model\n\nBody"),
        _partition("02-data-access", ["app/repositories/users.py"], "wip"),
        _partition("03-business-logic", ["app/services/signup.py"], "Add the signup service"),
    )
    return StackPlan(metadata=PlanMetadata(source="feature", base="main"), files=files, partitions=partitions)


def test_audit_flags_and_scores_each_partition() -> None:
    audit = QualityAuditor().audit(_plan())
    findings = {finding.partition: finding for finding in audit.findings}

    clean = findings["01-foundation-data"]
    assert clean.size_class == "ideal"
    assert clean.flags == ()
    assert clean.score == 100

    small = findings["02-data-access"]
    assert small.size_class == "too-small"
    assert small.flags == ("too-small", "missing-paired-tests", "weak-description")
    assert small.unpaired_files == ("app/repositories/users.py",)
    assert small.score == 60

    large = findings["03-business-logic"]
    assert large.size_class == "large"
    assert large.flags == ("large", "missing-paired-tests", "non-adjacent-dependency")
    assert large.non_adjacent == ("01-foundation-data",)
    assert large.score == 70

    assert audit.score == pytest.approx(76.7)
    assert audit.flagged("too-small") == ["02-data-access"]


def test_measured_size_wins_over_the_estimate() -> None:
    plan = _plan()
    plan = plan.replace_partition(1, plan.partitions[1].model_copy(update={"size_lines": 120}))

    finding = QualityAuditor().audit(plan).findings[1]

    assert finding.size_lines == 120
    assert "too-small" not in finding.flags


def test_deleted_and_package_files_need_no_tests() -> None:
    files = (
        ChangedFile(path="app/models/legacy.py", tag=FileTag.FOUNDATION_DATA, change=ChangeKind.DELETED, size_lines=50),
        ChangedFile(path="app/models/__init__.py", tag=FileTag.FOUNDATION_DATA, size_lines=5),
    )
    plan = StackPlan(
        metadata=PlanMetadata(source="feature", base="main"),
        files=files,
        partitions=(_partition("01-foundation-data", [entry.path for entry in files], "Remove the legacy model"),),
    )

    finding = QualityAuditor().audit(plan).findings[0]

    assert "missing-paired-tests" not in finding.flags


def test_thresholds_come_from_config() -> None:
    auditor = QualityAuditor.from_config({"audit": {"min_lines": 5, "ideal_max": 50, "large_max": 100}})

    findings = {finding.partition: finding.size_class for finding in auditor.audit(_plan()).findings}

    assert findings == {"01-foundation-data": "large", "02-data-access": "ideal", "03-business-logic": "too-large"}


@pytest.mark.parametrize(
    ("size", "expected"),
    [(0, "too-small"), (39, "too-small"), (40, "ideal"), (300, "ideal"), (301, "large"), (500, "large"), (501, "too-large")],
)
def test_size_classes(size: int, expected: str) -> None:
    assert size_class(size) == expected


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("tests/test_billing.py", "billing"),
        ("pkg/billing_test.go", "billing"),
        ("web/src/billing.spec.ts", "billing"),
        ("web/src/Button.test.tsx", "Button"),
        ("tests/conftest.py", None),
    ],
)
def test_tested_stem(path: str, expected: str | None) -> None:
    assert tested_stem(path) == expected


def test_weak_descriptions() -> None:
    assert is_weak_description("")
    assert is_weak_description("Update.")
    assert is_weak_description("refactor")
    assert not is_weak_description("Add the billing service")


def test_format_audit_lists_details() -> None:
    lines = format_audit(QualityAuditor().audit(_plan()))

    assert lines[0] == "Aggregate score: 76.7"
    assert "  untested: app/repositories/users.py" in lines
    assert "  depends on: 01-foundation-data" in lines
