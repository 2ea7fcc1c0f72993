"""CLI commands for splitting a large change into a validated stack of branches."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer

from .analysis.analyzer import tag_counts
from .audit import format_audit
from .config import (
    DEFAULT_CONFIG_NAME,
    configure_logging,
    copy_config_template,
    load_config,
    resolve_repo_root,
    write_config,
)
from .errors import StackError
from .orchestrator import Orchestrator
from .report import build_report, render_report
from .state.schema import Session, Stage
from .tools.gates import format_validation
from .tools.hosting import HostingError
from .tools.vcs import GitError

APP_HELP = "Split a monolithic change into a dependency-ordered stack of validated branches."

app = typer.Typer(help=APP_HELP)

CONFIG_OPTION = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file.")
PLAN_OPTION = typer.Option(None, "--plan", help="Path to the plan document (overrides stack.plan_path).")
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")


@contextmanager
def _guard() -> Iterator[None]:
    """Turn pipeline errors into a message and exit code 1."""
    try:
        yield
    except StackError as error:
        typer.echo(error.describe())
        raise typer.Exit(code=1) from error
    except (GitError, HostingError) as error:
        typer.echo(f"Error: {error}")
        raise typer.Exit(code=1) from error


def _confirm(current: Optional[Stage], target: Stage) -> bool:
    origin = current.value if current else "start"
    return typer.confirm(f"Proceed from {origin} to {target.value}?", default=True)


def _orchestrator(config: str, plan: Optional[str], verbose: bool, *, yes: bool = False) -> Orchestrator:
    config_path = Path(config)
    config_data = load_config(config_path)
    configure_logging(config_data, verbose=verbose)
    repo_root = resolve_repo_root(config_data, config_path.resolve())
    checkpoint = (lambda current, target: True) if yes else _confirm
    return Orchestrator.from_config(
        config_data,
        repo_root,
        checkpoint=checkpoint,
        plan_path=Path(plan).resolve() if plan else None,
    )


def _stack_settings(config: str) -> tuple[str, str]:
    stack_cfg = load_config(Path(config)).get("stack") or {}
    return str(stack_cfg.get("source") or ""), str(stack_cfg.get("base") or "main")


def _render_session(session: Session) -> None:
    plan = session.plan
    typer.echo(f"Session v{session.version} at stage {session.stage.value}")
    typer.echo(f"Source: {plan.metadata.source} | Base: {plan.metadata.base}")
    if session.backup:
        typer.echo(f"Backup: {session.backup.ref} ({session.backup.commit[:12]})")
    if not plan.partitions:
        typer.echo(f"Changed files: {len(plan.files)} (not yet planned)")
        return
    typer.echo("Partitions:")
    for partition in plan.partitions:
        flags = f" [{', '.join(partition.flags)}]" if partition.flags else ""
        typer.echo(
            f"- {partition.name} ({partition.status.value}) {len(partition.files)} file(s), "
            f"{plan.size_of(partition)} lines -> {partition.branch}{flags}"
        )
        for fix in partition.fixes:
            outcome = "resolved" if fix.resolved else "unresolved"
            typer.echo(f"  fix ({fix.mode}, {fix.failure_kind}): {outcome} {fix.artifact or ''} {fix.detail}".rstrip())
        if partition.validation is not None and not partition.validation.passed:
            typer.echo("  " + format_validation(partition.validation).replace("\n", "\n  "))
    for failure in session.remote_failures:
        typer.echo(f"Remote failure: {failure.partition} :: {failure.check}")


@app.command()
def init(
    config: str = CONFIG_OPTION,
    source: Optional[str] = typer.Option(None, "--source", help="Default source ref to split."),
    base: Optional[str] = typer.Option(None, "--base", help="Default base ref."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a configuration file with the default settings."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    config_data = copy_config_template()
    if source:
        config_data["stack"]["source"] = source
    if base:
        config_data["stack"]["base"] = base
    write_config(config_path, config_data)
    typer.echo(f"Wrote configuration to {config_path}")


@app.command()
def analyze(
    source: Optional[str] = typer.Option(None, "--source", help="Ref holding the monolithic change."),
    base: Optional[str] = typer.Option(None, "--base", help="Ref the stack is based on."),
    config: str = CONFIG_OPTION,
    plan: Optional[str] = PLAN_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Classify the changeset and record the backup reference."""
    with _guard():
        default_source, default_base = _stack_settings(config)
        source_ref = source or default_source
        if not source_ref:
            raise typer.BadParameter("A --source ref is required (or set stack.source in the config).")
        session = _orchestrator(config, plan, verbose).analyze(source_ref, base or default_base)
        typer.echo(f"Analyzed {len(session.plan.files)} changed file(s) between {session.plan.metadata.base} and {source_ref}")
        for tag, count in sorted(tag_counts(session.plan.files).items()):
            if count:
                typer.echo(f"- {tag}: {count}")


@app.command("plan")
def plan_command(
    config: str = CONFIG_OPTION,
    plan: Optional[str] = PLAN_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Compute the ordered partitions."""
    with _guard():
        _render_session(_orchestrator(config, plan, verbose).plan())


@app.command()
def materialize(
    config: str = CONFIG_OPTION,
    plan: Optional[str] = PLAN_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Build, validate and push each partition in order."""
    with _guard():
        _render_session(_orchestrator(config, plan, verbose).materialize())


@app.command()
def replan(
    config: str = CONFIG_OPTION,
    plan: Optional[str] = PLAN_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Recompute the partitions after the pushed prefix."""
    with _guard():
        _render_session(_orchestrator(config, plan, verbose).replan())


@app.command()
def audit(
    config: str = CONFIG_OPTION,
    plan: Optional[str] = PLAN_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Score partition size, test pairing, adjacency and descriptions."""
    with _guard():
        session = _orchestrator(config, plan, verbose).audit()
        if session.audit is not None:
            for line in format_audit(session.audit):
                typer.echo(line)


@app.command()
def monitor(
    config: str = CONFIG_OPTION,
    plan: Optional[str] = PLAN_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Collect failing external checks for pushed partitions."""
    with _guard():
        session = _orchestrator(config, plan, verbose).monitor()
        if not session.remote_failures:
            typer.echo("No failing remote checks.")
        for failure in session.remote_failures:
            typer.echo(f"- {failure.partition} :: {failure.check}")


@app.command("remote-fix")
def remote_fix(
    partition: Optional[str] = typer.Option(None, "--partition", help="Partition whose remote check failed."),
    log: Optional[Path] = typer.Option(None, "--log", help="File holding the failed check output."),
    check: Optional[str] = typer.Option(None, "--check", help="Name of the failed check."),
    config: str = CONFIG_OPTION,
    plan: Optional[str] = PLAN_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Pull a missing artifact back from a later partition and propagate it forward."""
    with _guard():
        if log is not None and partition is None:
            raise typer.BadParameter("--log requires --partition.")
        log_text = log.read_text(encoding="utf-8", errors="replace") if log is not None else None
        _render_session(_orchestrator(config, plan, verbose).remote_fix(partition, log_text, check=check))


@app.command()
def consolidate(
    partition: Optional[List[str]] = typer.Option(
        None,
        "--partition",
        help="Partition to merge into its neighbour (repeatable); defaults to every too-small one.",
    ),
    config: str = CONFIG_OPTION,
    plan: Optional[str] = PLAN_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Merge undersized partitions into a neighbour and rebuild the stack."""
    with _guard():
        _render_session(_orchestrator(config, plan, verbose).consolidate(partition or None))


@app.command()
def report(
    config: str = CONFIG_OPTION,
    plan: Optional[str] = PLAN_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Write the end-of-run report."""
    with _guard():
        session = _orchestrator(config, plan, verbose).report()
        for line in render_report(build_report(session)):
            typer.echo(line)


@app.command()
def run(
    source: Optional[str] = typer.Option(None, "--source", help="Ref holding the monolithic change."),
    base: Optional[str] = typer.Option(None, "--base", help="Ref the stack is based on."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm every checkpoint without asking."),
    config: str = CONFIG_OPTION,
    plan: Optional[str] = PLAN_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Run (or resume) the whole pipeline, confirming each stage."""
    with _guard():
        default_source, default_base = _stack_settings(config)
        orchestrator = _orchestrator(config, plan, verbose, yes=yes)
        session = orchestrator.run(source or default_source or None, base or default_base)
        if session.stage == Stage.DONE:
            typer.echo(f"Stack complete: {len(session.plan.partitions)} partition(s).")
            for line in render_report(build_report(session)):
                typer.echo(line)
        else:
            next_stage = orchestrator.next_stage(session)
            typer.echo(f"Paused at {session.stage.value}; next stage: {next_stage.value if next_stage else 'none'}")


@app.command()
def abort(
    config: str = CONFIG_OPTION,
    plan: Optional[str] = PLAN_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Delete unpushed partition branches and restore the original checkout."""
    with _guard():
        session = _orchestrator(config, plan, verbose).abort()
        kept = [partition.branch for partition in session.plan.partitions if partition.pushed]
        typer.echo("Aborted; restored the original checkout.")
        if kept:
            typer.echo(f"Pushed partitions left in place: {', '.join(kept)}")
        if session.backup:
            typer.echo(f"Backup reference: {session.backup.ref}")


@app.command()
def status(
    config: str = CONFIG_OPTION,
    plan: Optional[str] = PLAN_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Show the current session and the next stage."""
    with _guard():
        orchestrator = _orchestrator(config, plan, verbose)
        if not orchestrator.store.exists():
            typer.echo("No session in progress.")
            return
        session = orchestrator.load()
        _render_session(session)
        next_stage = orchestrator.next_stage(session)
        typer.echo(f"Next stage: {next_stage.value if next_stage else 'none'}")


if __name__ == "__main__":
    app()
