from __future__ import annotations

from pathlib import Path

import pytest

from stacksplit.config import (
    DEFAULT_CONFIG_TEMPLATE,
    copy_config_template,
    load_config,
    merge_config,
    resolve_path,
    resolve_repo_root,
    write_config,
)
from stacksplit.errors import ConfigError


def test_template_copy_is_independent() -> None:
    config = copy_config_template()
    config["stack"]["base"] = "develop"

    assert DEFAULT_CONFIG_TEMPLATE["stack"]["base"] == "main"


def test_merge_overlays_nested_mappings_and_replaces_lists() -> None:
    merged = merge_config(
        {"stack": {"base": "main", "remote": "origin"}, "validation": {"checks": [{"name": "a"}]}},
        {"stack": {"base": "develop"}, "validation": {"checks": []}},
    )

    assert merged == {"stack": {"base": "develop", "remote": "origin"}, "validation": {"checks": []}}


def test_missing_file_yields_the_template(tmp_path: Path) -> None:
    assert load_config(tmp_path / "config.yaml") == DEFAULT_CONFIG_TEMPLATE
    assert load_config(None) == DEFAULT_CONFIG_TEMPLATE


def test_written_config_loads_back(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "config.yaml"
    write_config(path, {"stack": {"source": "feature"}})

    config = load_config(path)

    assert config["stack"]["source"] == "feature"
    assert config["stack"]["branch_prefix"] == "stack"


@pytest.mark.parametrize(
    "content",
    ["- a\n- list\n", "stack: [unclosed\n", "autofix:\n  max_attempts: 3\n"],
)
def test_invalid_config_raises(tmp_path: Path, content: str) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(path)


def test_repo_root_is_relative_to_the_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / "conf" / "config.yaml"

    assert resolve_repo_root({"project": {"repo_root": ".."}}, config_path) == tmp_path.resolve()
    assert resolve_repo_root({"project": {"repo_root": str(tmp_path)}}, config_path) == tmp_path


def test_resolve_path_falls_back_to_default(tmp_path: Path) -> None:
    assert resolve_path(tmp_path, "  ", ".stacksplit/logs") == tmp_path / ".stacksplit" / "logs"
    assert resolve_path(tmp_path, "custom", "unused") == tmp_path / "custom"
    assert resolve_path(tmp_path, str(tmp_path / "abs"), "unused") == tmp_path / "abs"
