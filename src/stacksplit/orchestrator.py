"""Stage machine driving a stack from analysis to a finished report.

Each stage reads the persisted session, performs its work and writes back a
new snapshot one version higher. ``run`` chains the stages and asks the
checkpoint callback before every forward transition; declining pauses the
pipeline with the session on disk, so it can be resumed stage by stage.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional

from .analysis.analyzer import ChangeAnalyzer
from .audit import QualityAuditor
from .config import DATA_DIR, resolve_path
from .consolidate import Consolidator
from .errors import ConfigError, RollbackError, StackError, ValidationFailure
from .fixing.local import LocalAutoFixer
from .fixing.remote import RemoteAutoFixer
from .materializer import SequentialMaterializer, pull_request_body
from .planning.planner import PartitionPlanner
from .report import build_report, write_report
from .state.schema import (
    BackupRef,
    FixRecord,
    Partition,
    PartitionStatus,
    PlanMetadata,
    RemoteFailure,
    Session,
    Stage,
    StackPlan,
    StageRecord,
    utc_now,
)
from .state.store import PlanStore
from .tools.gates import MAX_OUTPUT_CHARS, Validator
from .tools.hosting import CodeHost, GitHubHost, HostingError
from .tools.vcs import GitCheckpoint, GitError, GitRepository

LOGGER = logging.getLogger(__name__)

Checkpoint = Callable[[Optional[Stage], Stage], bool]

_FORWARD: Dict[Stage, frozenset[Stage]] = {
    Stage.ANALYZE: frozenset({Stage.PLAN}),
    Stage.PLAN: frozenset({Stage.MATERIALIZE}),
    Stage.MATERIALIZE: frozenset({Stage.MATERIALIZE, Stage.REPLAN, Stage.QUALITY_AUDIT}),
    Stage.REPLAN: frozenset({Stage.MATERIALIZE, Stage.REPLAN, Stage.QUALITY_AUDIT}),
    Stage.QUALITY_AUDIT: frozenset({Stage.REMOTE_MONITOR}),
    Stage.REMOTE_MONITOR: frozenset({Stage.REMOTE_MONITOR, Stage.REMOTE_FIX, Stage.CONSOLIDATE, Stage.REPORT}),
    Stage.REMOTE_FIX: frozenset({Stage.REMOTE_FIX, Stage.REMOTE_MONITOR, Stage.CONSOLIDATE, Stage.REPORT}),
    Stage.CONSOLIDATE: frozenset({Stage.MATERIALIZE, Stage.REPORT}),
    Stage.REPORT: frozenset({Stage.DONE}),
    Stage.DONE: frozenset(),
    Stage.ABORTED: frozenset(),
}

ALLOWED_TRANSITIONS: Dict[Stage, frozenset[Stage]] = {
    stage: targets if stage.terminal else targets | {Stage.ABORTED} for stage, targets in _FORWARD.items()
}


def check_transition(current: Stage, target: Stage) -> None:
    """Raise :class:`ConfigError` unless ``current -> target`` is allowed."""
    if target not in ALLOWED_TRANSITIONS[current]:
        allowed = ", ".join(sorted(stage.value for stage in ALLOWED_TRANSITIONS[current])) or "none"
        raise ConfigError(
            f"Cannot move from stage {current.value} to {target.value} (allowed: {allowed}).",
            action="Run `stacksplit status` to see where the session stands.",
        )


def _decline(current: Optional[Stage], target: Stage) -> bool:
    return False


@contextmanager
def _collaborator_errors(stage: Stage) -> Iterator[None]:
    try:
        yield
    except (GitError, HostingError) as error:
        raise StackError(
            f"Stage {stage.value} failed: {error}",
            action="Inspect the repository; `stacksplit abort` restores the backup reference.",
        ) from error


def stack_complete(plan: StackPlan, *, push: bool = True) -> bool:
    done = PartitionStatus.PUSHED if push else PartitionStatus.VALIDATED
    return bool(plan.partitions) and all(partition.status == done for partition in plan.partitions)


class Orchestrator:
    """Runs the stack pipeline stages against one repository."""

    def __init__(
        self,
        repo: GitRepository,
        store: PlanStore,
        *,
        analyzer: ChangeAnalyzer,
        planner: PartitionPlanner,
        materializer: SequentialMaterializer,
        auditor: QualityAuditor,
        consolidator: Consolidator,
        remote_fixer: RemoteAutoFixer,
        host: CodeHost | None = None,
        checkpoint: Checkpoint | None = None,
        data_dir: Path | None = None,
        branch_prefix: str = "stack",
        consolidation_enabled: bool = True,
    ) -> None:
        self.repo = repo
        self.store = store
        self.analyzer = analyzer
        self.planner = planner
        self.materializer = materializer
        self.auditor = auditor
        self.consolidator = consolidator
        self.remote_fixer = remote_fixer
        self.host = host
        self.checkpoint = checkpoint or _decline
        self.data_dir = data_dir or repo.root / DATA_DIR
        self.branch_prefix = branch_prefix
        self.consolidation_enabled = consolidation_enabled

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        repo_root: Path,
        *,
        checkpoint: Checkpoint | None = None,
        plan_path: Path | None = None,
    ) -> "Orchestrator":
        try:
            repo = GitRepository(repo_root)
        except GitError as error:
            raise ConfigError(str(error)) from error
        store = PlanStore.from_config(config, repo.root)
        if plan_path is not None:
            store = PlanStore(plan_path, archive_dir=store.archive_dir)
        try:
            host = GitHubHost.from_config(config, repo.root)
        except HostingError as error:
            raise ConfigError(str(error)) from error

        validator = Validator.from_config(config, repo.root)
        fixer = LocalAutoFixer.from_config(repo, validator, config)
        stack_cfg = config.get("stack") or {}
        consolidation_cfg = config.get("consolidation") or {}
        return cls(
            repo,
            store,
            analyzer=ChangeAnalyzer.from_config(repo, config),
            planner=PartitionPlanner.from_config(config),
            materializer=SequentialMaterializer.from_config(repo, validator, config, fixer=fixer, host=host),
            auditor=QualityAuditor.from_config(config),
            consolidator=Consolidator.from_config(config),
            remote_fixer=RemoteAutoFixer.from_config(repo, validator, config),
            host=host,
            checkpoint=checkpoint,
            data_dir=resolve_path(repo.root, (config.get("paths") or {}).get("data"), DATA_DIR),
            branch_prefix=str(stack_cfg.get("branch_prefix") or "stack"),
            consolidation_enabled=bool(consolidation_cfg.get("enabled", True)),
        )

    # ------------------------------------------------------------- session
    def load(self) -> Session:
        return self.store.load()

    def _advance(self, session: Session, stage: Stage, *, note: str = "", **updates: Any) -> Session:
        check_transition(session.stage, stage)
        updated = session.advance(stage, note=note, **updates)
        self.store.save(updated)
        LOGGER.info("Stage %s complete (v%d)%s", stage.value, updated.version, f": {note}" if note else "")
        return updated

    # -------------------------------------------------------------- stages
    def analyze(self, source: str, base: str) -> Session:
        """Analyze ``source`` against ``base`` and record the backup reference."""
        if self.store.exists():
            current = self.store.load()
            raise ConfigError(
                f"A session is already in progress (stage {current.stage.value}).",
                action="Finish it, or run `stacksplit abort` before analyzing again.",
            )
        with _collaborator_errors(Stage.ANALYZE):
            if not self.repo.is_clean(include_untracked=False):
                raise ConfigError(
                    "The working tree has uncommitted changes to tracked files.",
                    action="Commit or stash them before splitting a stack.",
                )
            self._exclude_data_paths()
            analysis = self.analyzer.analyze(source, base)
            backup = self._create_backup()

        plan = StackPlan(
            metadata=PlanMetadata(source=source, base=base, source_commit=analysis.source_commit),
            files=analysis.files,
        )
        note = f"{len(analysis.files)} changed file(s); backup {backup.ref}"
        session = Session(
            stage=Stage.ANALYZE,
            plan=plan,
            backup=backup,
            history=(StageRecord(stage=Stage.ANALYZE, version=1, note=note),),
        )
        self.store.save(session)
        LOGGER.info("Stage analyze complete (v1): %s", note)
        return session

    def plan(self) -> Session:
        session = self.load()
        check_transition(session.stage, Stage.PLAN)
        plan = self.planner.plan(session.plan.files, session.plan.metadata)
        return self._advance(session, Stage.PLAN, plan=plan, note=f"{len(plan.partitions)} partition(s)")

    def materialize(self) -> Session:
        session = self.load()
        check_transition(session.stage, Stage.MATERIALIZE)
        with _collaborator_errors(Stage.MATERIALIZE):
            outcome = self.materializer.run(session.plan)
        note = f"materialized {', '.join(outcome.materialized) or 'nothing'}"
        if outcome.failure is not None:
            note += f"; halted at {outcome.failure.partition}"
        session = self._advance(session, Stage.MATERIALIZE, plan=outcome.plan, note=note)
        if outcome.failure is not None:
            raise outcome.failure
        return session

    def replan(self) -> Session:
        session = self.load()
        check_transition(session.stage, Stage.REPLAN)
        result = self.planner.replan(session.plan)
        with _collaborator_errors(Stage.REPLAN):
            if result.obsolete_branches:
                self.repo.checkout(result.plan.parent_ref(result.kept))
            removed = [branch for branch in result.obsolete_branches if self.repo.delete_branch(branch)]
        note = f"kept {result.kept} pushed partition(s); {len(result.plan.partitions) - result.kept} re-planned"
        if removed:
            note += f"; deleted {', '.join(removed)}"
        return self._advance(session, Stage.REPLAN, plan=result.plan, note=note)

    def audit(self) -> Session:
        session = self.load()
        check_transition(session.stage, Stage.QUALITY_AUDIT)
        audit = self.auditor.audit(session.plan)
        return self._advance(session, Stage.QUALITY_AUDIT, audit=audit, note=f"score {audit.score:.1f}")

    def monitor(self) -> Session:
        """Collect external check failures for every pushed partition."""
        session = self.load()
        check_transition(session.stage, Stage.REMOTE_MONITOR)
        if self.host is None:
            return self._advance(
                session, Stage.REMOTE_MONITOR, remote_failures=(), note="no hosting provider configured"
            )

        failures: List[RemoteFailure] = []
        pending = 0
        for partition in session.plan.partitions:
            if not partition.pushed:
                continue
            try:
                checks = self.host.check_status(partition.branch)
            except HostingError as error:
                LOGGER.warning("Could not read checks for %s: %s", partition.branch, error)
                continue
            for check in checks:
                if check.failed:
                    log = self.host.failure_log(check)
                    failures.append(RemoteFailure(partition=partition.name, check=check.name, log=log[-MAX_OUTPUT_CHARS:]))
                elif not check.conclusion:
                    pending += 1
        note = f"{len(failures)} failing check(s), {pending} pending"
        return self._advance(session, Stage.REMOTE_MONITOR, remote_failures=tuple(failures), note=note)

    def remote_fix(
        self,
        partition: str | None = None,
        log: str | None = None,
        *,
        check: str | None = None,
    ) -> Session:
        """Repair pushed partitions from external failure logs."""
        session = self.load()
        check_transition(session.stage, Stage.REMOTE_FIX)
        failures = self._remote_failures(session, partition, log, check)

        plan = session.plan
        remaining: List[RemoteFailure] = []
        conflict: StackError | None = None
        fixed: List[str] = []
        with _collaborator_errors(Stage.REMOTE_FIX):
            for failure in failures:
                if conflict is not None:
                    remaining.append(failure)
                    continue
                result = self.remote_fixer.fix(plan, plan.index_of(failure.partition), failure.log, check=failure.check)
                plan = result.plan
                position = plan.index_of(failure.partition)
                plan = plan.replace_partition(position, plan.partitions[position].with_fix(result.record))
                if result.resolved:
                    self._comment_fix(plan.partitions[position], failure, result.record)
                if result.conflict is not None:
                    conflict = result.conflict
                elif result.resolved:
                    fixed.append(failure.partition)
                else:
                    remaining.append(failure)

        note = f"fixed {', '.join(fixed) or 'nothing'}; {len(remaining)} failure(s) left"
        session = self._advance(session, Stage.REMOTE_FIX, plan=plan, remote_failures=tuple(remaining), note=note)
        if conflict is not None:
            raise conflict
        if remaining:
            first = remaining[0]
            raise ValidationFailure(
                f"Remote check {first.check} on {first.partition} could not be fixed automatically.",
                partition=first.partition,
                checks=[item.check for item in remaining if item.partition == first.partition],
                action="Fix the partition branch by hand and push it, then run `stacksplit monitor` again.",
            )
        return session

    def consolidate(self, names: Iterable[str] | None = None) -> Session:
        """Merge too-small partitions and rebuild the stack from the first affected one."""
        session = self.load()
        check_transition(session.stage, Stage.CONSOLIDATE)
        result = self.consolidator.consolidate(session.plan, names, audit=session.audit)
        earliest = result.earliest_affected
        if not result.steps or earliest is None:
            return self._advance(session, Stage.CONSOLIDATE, note="nothing to consolidate")

        plan = result.plan
        rebuilt = [
            partition if index < earliest or partition.status == PartitionStatus.PLANNED else partition.reset()
            for index, partition in enumerate(plan.partitions)
        ]
        plan = plan.with_partitions(rebuilt)
        removed = {partition.name: partition for partition in session.plan.partitions}

        with _collaborator_errors(Stage.CONSOLIDATE):
            self.repo.checkout(plan.parent_ref(earliest))
            for step in result.steps:
                self.repo.delete_branch(step.removed_branch)
                self._close_pull_request(removed[step.removed].pull_request, step.target)
            outcome = self.materializer.run(plan)
            for step in result.steps:
                self._describe_pull_request(outcome.plan, step.target)

        audit = session.audit if outcome.halted else self.auditor.audit(outcome.plan)
        merges = ", ".join(f"{step.removed}->{step.target}" for step in result.steps)
        session = self._advance(session, Stage.CONSOLIDATE, plan=outcome.plan, audit=audit, note=f"merged {merges}")
        if outcome.failure is not None:
            raise outcome.failure
        return session

    def report(self) -> Session:
        session = self.load()
        check_transition(session.stage, Stage.REPORT)
        session = self._advance(session, Stage.REPORT, note=f"{len(session.plan.partitions)} partition(s)")
        path = write_report(build_report(session), self.data_dir / "report.yaml")
        LOGGER.info("Wrote report to %s", path)
        return session

    def finish(self) -> Session:
        """Close the session, return to the original branch and archive the document."""
        session = self.load()
        check_transition(session.stage, Stage.DONE)
        backup = session.backup
        with _collaborator_errors(Stage.DONE):
            if backup is not None and backup.original_branch and self.repo.branch_exists(backup.original_branch):
                self.repo.checkout(backup.original_branch)
        session = self._advance(session, Stage.DONE, note="stack complete")
        self.store.archive()
        return session

    def abort(self) -> Session:
        """Roll back local state to the backup reference and archive the session.

        Pushed partitions are externally referenced and stay as they are, and so
        does the backup reference. Every rollback step is attempted; failures
        are collected and raised together as :class:`RollbackError`.
        """
        session = self.load()
        check_transition(session.stage, Stage.ABORTED)
        failures: List[str] = []
        backup = session.backup

        if backup is not None:
            checkpoint = GitCheckpoint(
                repo=self.repo,
                label=backup.ref,
                head=backup.commit,
                branch=backup.original_branch,
                baseline_untracked=backup.baseline_untracked,
                created_at=backup.created_at.timestamp(),
            )
            try:
                self.repo.restore_checkpoint(checkpoint)
            except GitError as error:
                failures.append(f"restore {backup.original_branch or backup.commit}: {error}")

        deleted: List[str] = []
        for partition in session.plan.partitions:
            if partition.pushed:
                continue
            try:
                if self.repo.delete_branch(partition.branch):
                    deleted.append(partition.branch)
            except GitError as error:
                failures.append(f"delete {partition.branch}: {error}")

        if backup is not None and self.repo.rev_parse(backup.ref) != backup.commit:
            failures.append(f"backup reference {backup.ref} no longer points at {backup.commit}")

        session = self._advance(
            session,
            Stage.ABORTED,
            note=f"deleted {', '.join(deleted) or 'no branches'}" + (f"; {len(failures)} rollback failure(s)" if failures else ""),
        )
        self.store.archive()
        if failures:
            raise RollbackError(
                "Rollback finished with errors.",
                failures=failures,
                action=f"Restore the checkout by hand from {backup.ref if backup else 'the original branch'}.",
            )
        return session

    # ----------------------------------------------------------------- run
    def next_stage(self, session: Session) -> Stage | None:
        """Stage ``run`` would execute after ``session.stage``."""
        current = session.stage
        if current.terminal:
            return None
        if current == Stage.ANALYZE:
            return Stage.PLAN
        if current in {Stage.PLAN, Stage.REPLAN}:
            return Stage.MATERIALIZE
        if current == Stage.MATERIALIZE:
            push = self.materializer.push
            return Stage.QUALITY_AUDIT if stack_complete(session.plan, push=push) else Stage.MATERIALIZE
        if current == Stage.QUALITY_AUDIT:
            return Stage.REMOTE_MONITOR
        if current == Stage.REMOTE_MONITOR and session.remote_failures:
            return Stage.REMOTE_FIX
        if current == Stage.REMOTE_FIX and session.remote_failures:
            return Stage.REMOTE_MONITOR
        if current in {Stage.REMOTE_MONITOR, Stage.REMOTE_FIX}:
            return Stage.CONSOLIDATE if self._needs_consolidation(session) else Stage.REPORT
        if current == Stage.CONSOLIDATE:
            push = self.materializer.push
            return Stage.REPORT if stack_complete(session.plan, push=push) else Stage.MATERIALIZE
        return Stage.DONE

    def run(self, source: str | None = None, base: str | None = None) -> Session:
        """Drive the pipeline forward, confirming each transition at a checkpoint."""
        if self.store.exists():
            session = self.load()
            if source and source != session.plan.metadata.source:
                LOGGER.warning(
                    "Resuming the session for %s; ignoring --source %s", session.plan.metadata.source, source
                )
        else:
            if not source or not base:
                raise ConfigError("No session in progress; a source and a base ref are required.")
            if not self.checkpoint(None, Stage.ANALYZE):
                raise ConfigError("Analysis was not confirmed; nothing was changed.")
            session = self.analyze(source, base)

        while True:
            target = self.next_stage(session)
            if target is None:
                return session
            if not self.checkpoint(session.stage, target):
                LOGGER.info("Paused before %s; the session is saved at %s", target.value, self.store.path)
                return session
            session = self._execute(target)

    def _execute(self, stage: Stage) -> Session:
        actions: Dict[Stage, Callable[[], Session]] = {
            Stage.PLAN: self.plan,
            Stage.MATERIALIZE: self.materialize,
            Stage.REPLAN: self.replan,
            Stage.QUALITY_AUDIT: self.audit,
            Stage.REMOTE_MONITOR: self.monitor,
            Stage.REMOTE_FIX: self.remote_fix,
            Stage.CONSOLIDATE: self.consolidate,
            Stage.REPORT: self.report,
            Stage.DONE: self.finish,
            Stage.ABORTED: self.abort,
        }
        return actions[stage]()

    # ------------------------------------------------------------ internals
    def _needs_consolidation(self, session: Session) -> bool:
        if not self.consolidation_enabled or len(session.plan.partitions) < 2:
            return False
        return bool(self.consolidator.candidates(session.plan, session.audit))

    def _remote_failures(
        self,
        session: Session,
        partition: str | None,
        log: str | None,
        check: str | None,
    ) -> List[RemoteFailure]:
        if partition is None:
            failures = list(session.remote_failures)
        elif log is not None:
            session.plan.index_of(partition)
            failures = [RemoteFailure(partition=partition, check=check or "manual", log=log)]
        else:
            failures = [item for item in session.remote_failures if item.partition == partition]
        if not failures:
            raise ConfigError(
                "No remote failures to fix.",
                partition=partition,
                action="Run `stacksplit monitor`, or pass --partition together with --log.",
            )
        return failures

    def _create_backup(self) -> BackupRef:
        checkpoint = self.repo.create_checkpoint("backup")
        if checkpoint.head is None:
            raise ConfigError("The repository has no commits to back up.")
        stamp = utc_now().strftime("%Y%m%d-%H%M%S")
        ref = f"{self.branch_prefix}/backup/{stamp}"
        suffix = 1
        while self.repo.branch_exists(ref):
            suffix += 1
            ref = f"{self.branch_prefix}/backup/{stamp}-{suffix}"
        self.repo.create_ref(ref, checkpoint.head)
        LOGGER.info("Created backup reference %s at %s", ref, checkpoint.head[:12])
        return BackupRef(
            ref=ref,
            commit=checkpoint.head,
            original_branch=checkpoint.branch,
            baseline_untracked=checkpoint.baseline_untracked,
        )

    def _exclude_data_paths(self) -> None:
        logs_dir = getattr(self.materializer.validator, "logs_dir", None)
        for path in (self.data_dir, self.store.path.parent, logs_dir):
            if path is None:
                continue
            try:
                relative = path.resolve().relative_to(self.repo.root)
            except ValueError:
                continue
            if relative.parts:
                self.repo.ensure_excluded(f"/{relative.as_posix()}/")

    def _close_pull_request(self, pull_request: str | None, target: str) -> None:
        if self.host is None or not pull_request:
            return
        try:
            self.host.close(pull_request, comment=f"Consolidated into {target}.")
        except HostingError as error:
            LOGGER.warning("Could not close %s: %s", pull_request, error)

    def _comment_fix(self, partition: Partition, failure: RemoteFailure, record: FixRecord) -> None:
        if self.host is None or not partition.pull_request:
            return
        moved = ", ".join(record.moved_files) or "nothing"
        body = f"Automatic fix for failing check {failure.check}: pulled {moved} from {record.origin} ({record.artifact})."
        if record.propagation:
            body += f"\nForward propagation: {record.propagation}."
        try:
            self.host.comment(partition.pull_request, body)
        except HostingError as error:
            LOGGER.warning("Could not comment on %s: %s", partition.pull_request, error)

    def _describe_pull_request(self, plan: StackPlan, name: str) -> None:
        names = [partition.name for partition in plan.partitions]
        if self.host is None or name not in names:
            return
        partition = plan.partitions[names.index(name)]
        if not partition.pull_request:
            return
        try:
            self.host.edit_description(partition.pull_request, pull_request_body(partition))
        except HostingError as error:
            LOGGER.warning("Could not update the description of %s: %s", partition.pull_request, error)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "Checkpoint",
    "Orchestrator",
    "check_transition",
    "stack_complete",
]
