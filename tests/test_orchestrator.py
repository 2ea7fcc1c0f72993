from __future__ import annotations

from typing import Dict, List

import pytest
import yaml

from conftest import RecordingHost, import_check, layered_change, make_config
from stacksplit.errors import ConfigError, ValidationFailure
from stacksplit.orchestrator import Orchestrator
from stacksplit.state.schema import PartitionStatus, Stage
from stacksplit.tools.hosting import RemoteCheck


def _approve(current, target) -> bool:
    return True


def _orchestrator(stack_repo, overrides=None, checkpoint=_approve) -> Orchestrator:
    return Orchestrator.from_config(make_config(overrides), stack_repo.root, checkpoint=checkpoint)


class FakeHost:
    """Reports a failing ``ci`` check on one branch and pending checks elsewhere."""

    def __init__(self, failing_branch: str, log: str) -> None:
        self.failing_branch = failing_branch
        self.log = log
        self.queried: List[str] = []

    def check_status(self, branch: str) -> List[RemoteCheck]:
        self.queried.append(branch)
        if branch == self.failing_branch:
            return [
                RemoteCheck(name="ci", state="COMPLETED", conclusion="FAILURE", run_id="42"),
                RemoteCheck(name="lint", state="COMPLETED", conclusion="SUCCESS"),
            ]
        return [RemoteCheck(name="ci", state="IN_PROGRESS")]

    def failure_log(self, check: RemoteCheck) -> str:
        return self.log


def test_full_run_consolidates_and_reports(stack_repo) -> None:
    layered_change(stack_repo, repository_lines=4)
    orchestrator = _orchestrator(stack_repo, {"audit": {"min_lines": 20}})

    session = orchestrator.run("feature", "main")

    assert session.stage == Stage.DONE
    assert [record.stage for record in session.history] == [
        Stage.ANALYZE,
        Stage.PLAN,
        Stage.MATERIALIZE,
        Stage.QUALITY_AUDIT,
        Stage.REMOTE_MONITOR,
        Stage.CONSOLIDATE,
        Stage.REPORT,
        Stage.DONE,
    ]
    assert [record.version for record in session.history] == list(range(1, 9))
    plan = session.plan
    assert [partition.name for partition in plan.partitions] == ["01-foundation-data", "03-business-logic"]
    assert plan.partitions[0].files == ("app/models/user.py", "app/repositories/users.py")
    assert plan.partitions[1].base == "01-foundation-data"
    assert all(partition.status == PartitionStatus.PUSHED for partition in plan.partitions)
    assert not any(partition.needs_revalidation for partition in plan.partitions)

    repo = stack_repo.repo
    assert not repo.branch_exists("stack/02-data-access")
    assert repo.rev_parse("stack/03-business-logic^") == repo.rev_parse("stack/01-foundation-data")
    assert stack_repo.remote_heads()["stack/03-business-logic"] == repo.rev_parse("stack/03-business-logic")
    assert repo.current_branch() == "main"
    assert repo.branch_exists(session.backup.ref)
    assert not orchestrator.store.exists()

    report = yaml.safe_load((stack_repo.root / ".stacksplit" / "report.yaml").read_text(encoding="utf-8"))
    assert report["stage"] == "report"
    assert [entry["name"] for entry in report["partitions"]] == ["01-foundation-data", "03-business-logic"]
    assert report["backup_ref"] == session.backup.ref
    assert "/.stacksplit/" in (stack_repo.root / ".git" / "info" / "exclude").read_text(encoding="utf-8")


def test_consolidation_closes_merged_pull_requests_and_rewrites_the_target_description(stack_repo) -> None:
    layered_change(stack_repo, repository_lines=4)
    orchestrator = _orchestrator(stack_repo, {"audit": {"min_lines": 20}})
    host = RecordingHost()
    orchestrator.host = host
    orchestrator.materializer.host = host
    orchestrator.materializer.open_pull_requests = True
    orchestrator.analyze("feature", "main")
    orchestrator.plan()
    orchestrator.materialize()
    orchestrator.audit()
    orchestrator.monitor()

    session = orchestrator.consolidate()

    assert [partition.pull_request for partition in session.plan.partitions] == [
        "https://example.test/pr/1",
        "https://example.test/pr/3",
    ]
    assert len(host.created) == 3
    assert host.closed == [("https://example.test/pr/2", "Consolidated into 01-foundation-data.")]
    assert [url for url, _ in host.descriptions] == ["https://example.test/pr/1"]
    assert "- app/models/user.py\n- app/repositories/users.py" in host.descriptions[0][1]


def test_declined_checkpoint_pauses_with_the_session_saved(stack_repo) -> None:
    layered_change(stack_repo)
    approved: List[tuple] = []

    def checkpoint(current, target) -> bool:
        approved.append((current, target))
        return target in {Stage.ANALYZE, Stage.PLAN}

    orchestrator = _orchestrator(stack_repo, checkpoint=checkpoint)
    session = orchestrator.run("feature", "main")

    assert session.stage == Stage.PLAN
    assert approved == [(None, Stage.ANALYZE), (Stage.ANALYZE, Stage.PLAN), (Stage.PLAN, Stage.MATERIALIZE)]
    assert orchestrator.load().version == session.version == 2
    assert orchestrator.next_stage(session) == Stage.MATERIALIZE
    assert not stack_repo.repo.branch_exists("stack/01-foundation-data")


def test_default_checkpoint_declines_before_touching_anything(stack_repo) -> None:
    layered_change(stack_repo)
    orchestrator = Orchestrator.from_config(make_config(), stack_repo.root)

    with pytest.raises(ConfigError, match="not confirmed"):
        orchestrator.run("feature", "main")
    assert not orchestrator.store.exists()
    with pytest.raises(ConfigError, match="source and a base"):
        orchestrator.run()


def test_stages_cannot_be_skipped_or_repeated(stack_repo) -> None:
    layered_change(stack_repo)
    orchestrator = _orchestrator(stack_repo)
    orchestrator.analyze("feature", "main")

    with pytest.raises(ConfigError, match="Cannot move from stage analyze to materialize"):
        orchestrator.materialize()
    with pytest.raises(ConfigError, match="already in progress"):
        orchestrator.analyze("feature", "main")
    with pytest.raises(ConfigError, match="Cannot move"):
        orchestrator.report()


def test_analyze_refuses_a_dirty_checkout(stack_repo) -> None:
    layered_change(stack_repo)
    (stack_repo.root / "README.md").write_text("# dirty\n", encoding="utf-8")
    orchestrator = _orchestrator(stack_repo)

    with pytest.raises(ConfigError, match="uncommitted changes"):
        orchestrator.analyze("feature", "main")
    assert not orchestrator.store.exists()


def test_abort_restores_the_checkout_and_keeps_pushed_partitions(stack_repo) -> None:
    layered_change(stack_repo, include_api=True, failing="app/services/signup.py")
    root = stack_repo.root
    (root / "notes.txt").write_text("operator notes\n", encoding="utf-8")
    orchestrator = _orchestrator(stack_repo, {"validation": {"checks": [import_check("app")]}, "audit": {"min_lines": 1}})
    analyzed = orchestrator.analyze("feature", "main")
    backup = analyzed.backup
    orchestrator.plan()
    (root / "scratch.txt").write_text("created mid-run\n", encoding="utf-8")

    with pytest.raises(ValidationFailure) as excinfo:
        orchestrator.materialize()
    assert excinfo.value.partition == "03-business-logic"
    halted = orchestrator.load()
    assert halted.stage == Stage.MATERIALIZE
    assert [partition.status for partition in halted.plan.partitions] == [
        PartitionStatus.PUSHED,
        PartitionStatus.PUSHED,
        PartitionStatus.FAILED,
        PartitionStatus.PLANNED,
    ]

    session = orchestrator.abort()

    repo = stack_repo.repo
    assert session.stage == Stage.ABORTED
    assert repo.current_branch() == "main"
    assert not repo.branch_exists("stack/03-business-logic")
    assert repo.branch_exists("stack/01-foundation-data")
    assert repo.branch_exists("stack/02-data-access")
    heads = stack_repo.remote_heads()
    assert "stack/01-foundation-data" in heads and "stack/02-data-access" in heads
    assert repo.rev_parse(backup.ref) == backup.commit
    assert not (root / "scratch.txt").exists()
    assert (root / "notes.txt").exists()
    assert not orchestrator.store.exists()
    assert list(orchestrator.store.archive_dir.glob("plan-*.yaml"))


def test_materialize_resumes_after_the_operator_fixes_the_plan(stack_repo) -> None:
    layered_change(stack_repo, failing="app/services/signup.py")
    orchestrator = _orchestrator(stack_repo, {"validation": {"checks": [import_check("app")]}})
    orchestrator.analyze("feature", "main")
    orchestrator.plan()
    with pytest.raises(ValidationFailure):
        orchestrator.materialize()
    session = orchestrator.load()

    assert orchestrator.next_stage(session) == Stage.MATERIALIZE
    replanned = orchestrator.replan()
    assert replanned.stage == Stage.REPLAN
    assert [partition.status for partition in replanned.plan.partitions[:2]] == [PartitionStatus.PUSHED] * 2
    assert replanned.plan.partitions[2].status == PartitionStatus.PLANNED


def test_monitor_collects_failures_from_the_host(stack_repo) -> None:
    layered_change(stack_repo)
    orchestrator = _orchestrator(stack_repo)
    orchestrator.analyze("feature", "main")
    orchestrator.plan()
    orchestrator.materialize()
    orchestrator.audit()
    host = FakeHost("stack/02-data-access", "E   fixture 'db_session' not found")
    orchestrator.host = host

    session = orchestrator.monitor()

    assert host.queried == ["stack/01-foundation-data", "stack/02-data-access", "stack/03-business-logic"]
    assert [(item.partition, item.check, item.log) for item in session.remote_failures] == [
        ("02-data-access", "ci", "E   fixture 'db_session' not found")
    ]
    assert session.history[-1].note == "1 failing check(s), 2 pending"
    assert orchestrator.next_stage(session) == Stage.REMOTE_FIX


def test_monitor_without_a_host_moves_on(stack_repo) -> None:
    layered_change(stack_repo)
    orchestrator = _orchestrator(stack_repo)
    orchestrator.analyze("feature", "main")
    orchestrator.plan()
    orchestrator.materialize()
    orchestrator.audit()

    session = orchestrator.monitor()

    assert session.remote_failures == ()
    assert orchestrator.next_stage(session) == Stage.CONSOLIDATE


def test_remote_fix_requires_failures(stack_repo) -> None:
    layered_change(stack_repo)
    orchestrator = _orchestrator(stack_repo)
    orchestrator.analyze("feature", "main")
    orchestrator.plan()
    orchestrator.materialize()
    orchestrator.audit()
    orchestrator.monitor()

    with pytest.raises(ConfigError, match="No remote failures"):
        orchestrator.remote_fix()
    with pytest.raises(ConfigError, match="Unknown partition"):
        orchestrator.remote_fix("09-missing", "No module named 'x'")


def test_unfixable_remote_failure_stays_recorded(stack_repo) -> None:
    layered_change(stack_repo)
    orchestrator = _orchestrator(stack_repo)
    orchestrator.analyze("feature", "main")
    orchestrator.plan()
    orchestrator.materialize()
    orchestrator.audit()
    orchestrator.monitor()

    with pytest.raises(ValidationFailure, match="could not be fixed"):
        orchestrator.remote_fix("02-data-access", "AssertionError: assert 1 == 2", check="ci")

    session = orchestrator.load()
    assert session.stage == Stage.REMOTE_FIX
    assert [(item.partition, item.check) for item in session.remote_failures] == [("02-data-access", "ci")]
    fixes: Dict[str, int] = {partition.name: len(partition.fixes) for partition in session.plan.partitions}
    assert fixes == {"01-foundation-data": 0, "02-data-access": 1, "03-business-logic": 0}
    assert orchestrator.next_stage(session) == Stage.REMOTE_MONITOR
