"""Configuration template, loading and path resolution."""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from .errors import ConfigError

DEFAULT_CONFIG_NAME = "config.yaml"
DATA_DIR = ".stacksplit"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "repo_root": ".",
    },
    "stack": {
        "source": "",
        "base": "main",
        "branch_prefix": "stack",
        "plan_path": f"{DATA_DIR}/plan.yaml",
        "remote": "origin",
        "push": True,
    },
    "analysis": {
        "rules": [],
        "replace_default_rules": False,
        "source_roots": ["src", "lib"],
        "path_aliases": {},
    },
    "planning": {
        "max_partition_lines": 500,
    },
    "validation": {
        "checks": [],
        "ci_definitions": [".github/workflows/*.yml", ".github/workflows/*.yaml"],
        "skip_patterns": [],
        "max_workers": 4,
        "timeout": 900,
    },
    "autofix": {
        "enabled": True,
        "max_attempts": 1,
    },
    "audit": {
        "min_lines": 40,
        "ideal_max": 300,
        "large_max": 500,
    },
    "consolidation": {
        "enabled": True,
        "prefer": "predecessor",
    },
    "hosting": {
        "provider": "none",
        "create_pull_requests": False,
        "draft": False,
    },
    "paths": {
        "data": DATA_DIR,
        "logs": f"{DATA_DIR}/logs",
        "archive": f"{DATA_DIR}/archive",
    },
    "logging": {
        "level": "INFO",
    },
}


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def merge_config(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively overlay ``override`` onto ``base``; lists are replaced, not merged."""
    merged: Dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(config_path: Path | None) -> Dict[str, Any]:
    """Load the YAML file at ``config_path`` on top of the template.

    A missing file yields the template, so every command works in a repository
    that was never initialised.
    """
    if config_path is None or not config_path.exists():
        return copy_config_template()
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {config_path}: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration {config_path} must be a mapping at the top level.")

    autofix_cfg = data.get("autofix") or {}
    if isinstance(autofix_cfg, Mapping) and int(autofix_cfg.get("max_attempts", 1)) > 1:
        raise ConfigError("autofix.max_attempts cannot exceed 1; only one bounded auto-fix attempt is made.")
    return merge_config(DEFAULT_CONFIG_TEMPLATE, data)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def resolve_repo_root(config: Mapping[str, Any], config_path: Path) -> Path:
    """Resolve the repository root relative to the config file."""
    project_cfg = config.get("project") or {}
    repo_root_path = Path(str(project_cfg.get("repo_root") or "."))
    if not repo_root_path.is_absolute():
        repo_root_path = (config_path.parent / repo_root_path).resolve()
    return repo_root_path


def resolve_path(repo_root: Path, value: Any, default: str) -> Path:
    path = Path(str(value).strip()) if isinstance(value, str) and value.strip() else Path(default)
    return path if path.is_absolute() else repo_root / path


def configure_logging(config: Mapping[str, Any], *, verbose: bool = False) -> None:
    """Configure the root logger once for CLI runs."""
    logging_cfg = config.get("logging") or {}
    level_name = "DEBUG" if verbose else str(logging_cfg.get("level") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger().setLevel(level)


__all__ = [
    "DATA_DIR",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "configure_logging",
    "copy_config_template",
    "load_config",
    "merge_config",
    "resolve_path",
    "resolve_repo_root",
    "write_config",
]
