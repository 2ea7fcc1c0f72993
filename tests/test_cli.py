from __future__ import annotations

from pathlib import Path

import yaml
from typer.testing import CliRunner

from conftest import layered_change
from stacksplit.cli import app
from stacksplit.config import write_config

runner = CliRunner()


def _config(tmp_path: Path, stack_repo, **stack) -> str:
    path = tmp_path / "stacksplit.yaml"
    write_config(
        path,
        {
            "project": {"repo_root": str(stack_repo.root)},
            "stack": stack,
            "validation": {"ci_definitions": []},
            "audit": {"min_lines": 20},
        },
    )
    return str(path)


def test_init_writes_the_template(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"

    result = runner.invoke(app, ["init", "--config", str(config_path), "--source", "feature"])

    assert result.exit_code == 0, result.output
    data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    assert data["stack"]["source"] == "feature"
    assert data["stack"]["base"] == "main"
    assert data["autofix"]["max_attempts"] == 1


def test_init_refuses_to_overwrite_without_force(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("stack: {base: develop}\n", encoding="utf-8")

    refused = runner.invoke(app, ["init", "--config", str(config_path)])
    forced = runner.invoke(app, ["init", "--config", str(config_path), "--force"])

    assert refused.exit_code == 1
    assert "--force" in refused.output
    assert forced.exit_code == 0
    assert yaml.safe_load(config_path.read_text(encoding="utf-8"))["stack"]["base"] == "main"


def test_status_without_a_session(stack_repo, tmp_path: Path) -> None:
    result = runner.invoke(app, ["status", "--config", _config(tmp_path, stack_repo)])

    assert result.exit_code == 0, result.output
    assert "No session in progress." in result.output


def test_run_with_yes_builds_the_whole_stack(stack_repo, tmp_path: Path) -> None:
    layered_change(stack_repo)

    result = runner.invoke(app, ["run", "--config", _config(tmp_path, stack_repo), "--source", "feature", "--yes"])

    assert result.exit_code == 0, result.output
    assert "Stack complete: 3 partition(s)." in result.output
    assert "- 02-data-access [pushed]" in result.output
    assert set(stack_repo.remote_heads()) >= {
        "stack/01-foundation-data",
        "stack/02-data-access",
        "stack/03-business-logic",
    }


def test_declining_a_checkpoint_pauses_the_run(stack_repo, tmp_path: Path) -> None:
    layered_change(stack_repo)
    config = _config(tmp_path, stack_repo, source="feature")

    paused = runner.invoke(app, ["run", "--config", config], input="y\nn\n")
    status = runner.invoke(app, ["status", "--config", config])

    assert paused.exit_code == 0, paused.output
    assert "Proceed from start to analyze?" in paused.output
    assert "Paused at analyze; next stage: plan" in paused.output
    assert "Session v1 at stage analyze" in status.output
    assert "Changed files: 3 (not yet planned)" in status.output
    assert "Next stage: plan" in status.output


def test_stage_errors_exit_with_code_one(stack_repo, tmp_path: Path) -> None:
    layered_change(stack_repo)
    config = _config(tmp_path, stack_repo)

    early = runner.invoke(app, ["plan", "--config", config])
    unknown = runner.invoke(app, ["analyze", "--config", config, "--source", "missing"])

    assert early.exit_code == 1
    assert "No plan document" in early.output
    assert "Next step: Run `stacksplit analyze`" in early.output
    assert unknown.exit_code == 1
    assert "Unknown source ref: missing" in unknown.output


def test_analyze_requires_a_source(stack_repo, tmp_path: Path) -> None:
    result = runner.invoke(app, ["analyze", "--config", _config(tmp_path, stack_repo)])

    assert result.exit_code == 2


def test_analyze_then_abort(stack_repo, tmp_path: Path) -> None:
    layered_change(stack_repo)
    config = _config(tmp_path, stack_repo)

    analyzed = runner.invoke(app, ["analyze", "--config", config, "--source", "feature"])
    aborted = runner.invoke(app, ["abort", "--config", config])

    assert analyzed.exit_code == 0, analyzed.output
    assert "Analyzed 3 changed file(s) between main and feature" in analyzed.output
    assert "- data-access: 1" in analyzed.output
    assert "- interface:" not in analyzed.output
    assert aborted.exit_code == 0, aborted.output
    assert "Aborted; restored the original checkout." in aborted.output
    assert "Backup reference: stack/backup/" in aborted.output
    assert stack_repo.repo.current_branch() == "main"
