from __future__ import annotations

import sys
from pathlib import Path

from conftest import CHECK_SCRIPT, RecordingHost, import_check, layered_change, lines, make_config
from stacksplit.analysis.analyzer import ChangeAnalyzer
from stacksplit.fixing.local import LocalAutoFixer
from stacksplit.materializer import SequentialMaterializer
from stacksplit.planning.planner import PartitionPlanner
from stacksplit.state.schema import PartitionStatus, PlanMetadata, StackPlan
from stacksplit.tools.gates import Validator


def _plan(stack_repo, config) -> StackPlan:
    analysis = ChangeAnalyzer.from_config(stack_repo.repo, config).analyze("feature", "main")
    metadata = PlanMetadata(source="feature", base="main", source_commit=analysis.source_commit)
    return PartitionPlanner.from_config(config).plan(analysis.files, metadata)


def _materializer(stack_repo, config, logs: Path, **kwargs) -> SequentialMaterializer:
    validator = Validator.from_config(config, stack_repo.root)
    validator.logs_dir = logs
    fixer = LocalAutoFixer.from_config(stack_repo.repo, validator, config)
    return SequentialMaterializer.from_config(stack_repo.repo, validator, config, fixer=fixer, **kwargs)


def test_every_partition_is_built_on_its_predecessor_and_pushed(stack_repo, tmp_path: Path) -> None:
    layered_change(stack_repo)
    config = make_config({"validation": {"checks": [import_check("app")]}})
    plan = _plan(stack_repo, config)

    outcome = _materializer(stack_repo, config, tmp_path / "logs").run(plan)

    repo = stack_repo.repo
    assert not outcome.halted
    assert outcome.materialized == ["01-foundation-data", "02-data-access", "03-business-logic"]
    assert all(partition.status == PartitionStatus.PUSHED for partition in outcome.plan.partitions)
    assert repo.rev_parse("stack/02-data-access^") == repo.rev_parse("stack/01-foundation-data")
    assert repo.rev_parse("stack/01-foundation-data^") == repo.rev_parse("main")
    heads = stack_repo.remote_heads()
    for partition in outcome.plan.partitions:
        assert heads[partition.branch] == partition.head == repo.rev_parse(partition.branch)
        assert partition.validation is not None and partition.validation.passed
    first = outcome.plan.partitions[0]
    assert first.size_lines == 30
    assert first.flags == ("too-small",)
    # The top of the stack carries exactly the source tree.
    assert repo.git("diff", "--quiet", "feature", "stack/03-business-logic", check=False).returncode == 0


def test_unfixable_failure_halts_the_stack(stack_repo, tmp_path: Path) -> None:
    layered_change(stack_repo, failing="app/repositories/users.py")
    config = make_config({"validation": {"checks": [import_check("app")]}})
    plan = _plan(stack_repo, config)

    outcome = _materializer(stack_repo, config, tmp_path / "logs").run(plan)

    assert outcome.halted
    assert outcome.failure.partition == "02-data-access"
    assert outcome.failure.checks == ("imports",)
    statuses = [partition.status for partition in outcome.plan.partitions]
    assert statuses == [PartitionStatus.PUSHED, PartitionStatus.FAILED, PartitionStatus.PLANNED]
    failed = outcome.plan.partitions[1]
    assert failed.fixes[0].resolved is False
    assert "broken on import" in Path(failed.validation.log_paths()[0]).read_text(encoding="utf-8")
    assert not stack_repo.repo.branch_exists("stack/03-business-logic")
    assert "stack/02-data-access" not in stack_repo.remote_heads()


def test_missing_module_is_pulled_forward_from_the_source(stack_repo, tmp_path: Path) -> None:
    stack_repo.commit(
        {
            "check.py": CHECK_SCRIPT,
            "pkg/__init__.py": "",
            "pkg/services/__init__.py": "",
            "pkg/ui/__init__.py": "",
        },
        "Add package skeleton",
    )
    stack_repo.feature(
        "feature",
        {
            "pkg/services/core.py": 'import importlib\n\nhelpers = importlib.import_module("pkg.ui.helpers")\n'
            + lines(50, "CORE"),
            "pkg/ui/helpers.py": lines(50, "HELPER"),
        },
    )
    config = make_config({"validation": {"checks": [import_check("pkg")]}, "stack": {"push": False}})
    plan = _plan(stack_repo, config)
    assert [partition.files for partition in plan.partitions] == [("pkg/services/core.py",), ("pkg/ui/helpers.py",)]

    outcome = _materializer(stack_repo, config, tmp_path / "logs").run(plan)

    assert not outcome.halted
    assert [partition.name for partition in outcome.plan.partitions] == ["01-business-logic"]
    partition = outcome.plan.partitions[0]
    assert partition.files == ("pkg/services/core.py", "pkg/ui/helpers.py")
    assert partition.status == PartitionStatus.VALIDATED
    fix = partition.fixes[0]
    assert fix.resolved
    assert fix.origin == "source"
    assert fix.artifact == "module:pkg.ui.helpers"
    assert fix.moved_files == ("pkg/ui/helpers.py",)
    assert stack_repo.repo.show_file("stack/01-business-logic", "pkg/ui/helpers.py") == lines(50, "HELPER")


def test_pull_requests_target_the_previous_partition(stack_repo, tmp_path: Path) -> None:
    layered_change(stack_repo)
    config = make_config({"hosting": {"create_pull_requests": True}})
    plan = _plan(stack_repo, config)
    host = RecordingHost()

    outcome = _materializer(stack_repo, config, tmp_path / "logs", host=host).run(plan)

    assert [(head, base) for head, base, _ in host.created] == [
        ("stack/01-foundation-data", "main"),
        ("stack/02-data-access", "stack/01-foundation-data"),
        ("stack/03-business-logic", "stack/02-data-access"),
    ]
    assert host.created[1][2] == "Data access layer (1 file)"
    assert outcome.plan.partitions[2].pull_request == "https://example.test/pr/3"


def test_hosting_errors_do_not_stop_the_stack(stack_repo, tmp_path: Path) -> None:
    layered_change(stack_repo)
    config = make_config({"hosting": {"create_pull_requests": True}})

    outcome = _materializer(stack_repo, config, tmp_path / "logs", host=RecordingHost(fail=True)).run(
        _plan(stack_repo, config)
    )

    assert not outcome.halted
    assert all(partition.pushed and partition.pull_request is None for partition in outcome.plan.partitions)


FLAG_CHECK = (
    "import pathlib, sys\n"
    "if not pathlib.Path('pkg/ui/b.py').exists():\n"
    "    print(\"NameError: name 'FLAG' is not defined\")\n"
    "    sys.exit(1)\n"
)


def test_fixer_skips_candidates_the_partition_already_owns(stack_repo, tmp_path: Path) -> None:
    stack_repo.feature("feature", {"pkg/models/a.py": "FLAG = 1\n", "pkg/ui/b.py": "FLAG = 2\n"})
    config = make_config(
        {
            "validation": {"checks": [{"name": "flag", "command": [sys.executable, "-c", FLAG_CHECK]}]},
            "stack": {"push": False},
        }
    )
    plan = _plan(stack_repo, config)
    assert [partition.files for partition in plan.partitions] == [("pkg/models/a.py",), ("pkg/ui/b.py",)]

    outcome = _materializer(stack_repo, config, tmp_path / "logs").run(plan)

    assert not outcome.halted
    assert [partition.name for partition in outcome.plan.partitions] == ["01-foundation-data"]
    partition = outcome.plan.partitions[0]
    assert partition.files == ("pkg/models/a.py", "pkg/ui/b.py")
    fix = partition.fixes[0]
    assert fix.resolved
    assert fix.artifact == "symbol:FLAG"
    assert fix.origin == "source"
    assert fix.location == "pkg/ui/b.py:1"
    assert fix.moved_files == ("pkg/ui/b.py",)
