"""Validation gate for materialized partitions.

The gate wires together the checks listed in the configuration with the
``run`` steps of the repository's CI definitions. Checks only read the
checked-out tree, so they run concurrently; the partition passes only when
none of them failed.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List

import logging
import re
import shlex
import shutil
import subprocess
import yaml

from ..state.schema import CheckOutcome, CheckStatus, ValidationResult
from ..utils.slug import slugify

LOGGER = logging.getLogger(__name__)

# Keep the tail of each check's output in memory for failure classification.
MAX_OUTPUT_CHARS = 20_000

DEFAULT_SKIP_PATTERNS: tuple[str, ...] = (
    r"\bpip\s+install\b",
    r"\bnpm\s+(ci|install)\b",
    r"\byarn\s+install\b",
    r"\bpnpm\s+install\b",
    r"\bapt(-get)?\s+install\b",
    r"\bbrew\s+install\b",
    r"\bpoetry\s+install\b",
    r"\buv\s+sync\b",
)


@dataclass(slots=True)
class Check:
    """Description of a validation command."""

    name: str
    command: Sequence[str]
    optional: bool = False

    def run(self, cwd: Path, *, timeout: float | None = None) -> "CheckRun":
        executable = self.command[0]
        if shutil.which(executable) is None and not (cwd / executable).exists():
            status: CheckStatus = "skipped" if self.optional else "failed"
            return CheckRun(
                check=self,
                status=status,
                exit_code=None,
                stdout="",
                stderr=f"Executable not available: {executable}",
            )

        try:
            process = subprocess.run(  # noqa: S603  # command is sourced from config or CI definitions
                list(self.command),
                cwd=cwd,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as error:
            stdout = error.stdout.decode("utf-8", errors="replace") if isinstance(error.stdout, bytes) else error.stdout or ""
            return CheckRun(
                check=self,
                status="failed",
                exit_code=None,
                stdout=stdout,
                stderr=f"Timed out after {timeout} seconds",
            )
        status = "passed" if process.returncode == 0 else "failed"
        return CheckRun(
            check=self,
            status=status,
            exit_code=process.returncode,
            stdout=process.stdout,
            stderr=process.stderr,
        )


@dataclass(slots=True)
class CheckRun:
    """Raw result produced by :class:`Check`."""

    check: Check
    status: CheckStatus
    exit_code: int | None
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    def short_message(self) -> str:
        if self.status == "passed":
            return f"{self.check.name}: passed"
        if self.status == "skipped":
            return f"{self.check.name}: skipped ({self.stderr.strip()})"
        fallback = self.stderr.strip() or self.stdout.strip()
        snippet = fallback.splitlines()[-1] if fallback else "exit code != 0"
        return f"{self.check.name}: failed ({snippet})"


def _normalise_checks(raw: Iterable[Any]) -> List[Check]:
    """Expand raw configuration entries into :class:`Check` definitions."""
    checks: List[Check] = []
    for entry in raw:
        if isinstance(entry, str):
            parts = shlex.split(entry)
            if not parts:
                continue
            checks.append(Check(name=parts[0], command=parts))
            continue

        if isinstance(entry, Mapping):
            command = entry.get("command") or entry.get("cmd")
            if isinstance(command, str):
                cmd_parts = shlex.split(command)
            else:
                cmd_parts = [str(part) for part in command or []]

            if not cmd_parts:
                continue

            name = str(entry.get("name")) if entry.get("name") else cmd_parts[0]
            optional = bool(entry.get("optional", False))
            checks.append(Check(name=name, command=cmd_parts, optional=optional))
    return checks


def _ci_command(script: str) -> List[str]:
    stripped = script.strip()
    if "\n" not in stripped and not any(token in stripped for token in ("&&", "||", "|", ";", ">", "<", "$")):
        try:
            return shlex.split(stripped)
        except ValueError:
            pass
    return ["sh", "-c", stripped]


def discover_ci_checks(
    repo_root: Path,
    patterns: Sequence[str],
    *,
    skip_patterns: Sequence[str] = DEFAULT_SKIP_PATTERNS,
) -> List[Check]:
    """Extract ``run`` steps from CI workflow files, in file and step order."""
    skip = [re.compile(pattern) for pattern in skip_patterns]
    checks: List[Check] = []
    seen: set[Path] = set()
    for pattern in patterns:
        for path in sorted(repo_root.glob(pattern)):
            if path in seen or not path.is_file():
                continue
            seen.add(path)
            try:
                with path.open("r", encoding="utf-8") as handle:
                    document = yaml.safe_load(handle) or {}
            except yaml.YAMLError as error:
                LOGGER.warning("Ignoring unreadable CI definition %s: %s", path, error)
                continue
            jobs = document.get("jobs") if isinstance(document, Mapping) else None
            if not isinstance(jobs, Mapping):
                continue
            for job_name, job in jobs.items():
                steps = job.get("steps") if isinstance(job, Mapping) else None
                for position, step in enumerate(steps or [], start=1):
                    if not isinstance(step, Mapping) or not isinstance(step.get("run"), str):
                        continue
                    script = step["run"]
                    if any(regex.search(script) for regex in skip):
                        continue
                    label = str(step.get("name") or f"{job_name}-step-{position}")
                    checks.append(Check(name=label, command=_ci_command(script)))
    return checks


def format_validation(result: ValidationResult) -> str:
    """Return a human readable summary of a validation run."""
    if not result.outcomes:
        return f"{result.partition}: no checks configured."
    lines = [f"{result.partition}: {'passed' if result.passed else 'failed'}"]
    for outcome in result.outcomes:
        location = f" -> {outcome.log_path}" if outcome.log_path and outcome.failed else ""
        lines.append(f"- {outcome.name}: {outcome.status}{location}")
    return "\n".join(lines)


class Validator:
    """Runs the discovered check list against the current checkout."""

    def __init__(
        self,
        checks: Sequence[Check],
        *,
        logs_dir: Path | None = None,
        max_workers: int = 4,
        timeout: float | None = None,
    ) -> None:
        self.checks = list(checks)
        self.logs_dir = logs_dir
        self.max_workers = max(1, max_workers)
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: Mapping[str, Any], repo_root: Path) -> "Validator":
        validation_cfg = config.get("validation") or {}
        if not isinstance(validation_cfg, Mapping):
            validation_cfg = {}
        checks = _normalise_checks(validation_cfg.get("checks") or [])
        patterns = validation_cfg.get("ci_definitions")
        if patterns is None:
            patterns = [".github/workflows/*.yml", ".github/workflows/*.yaml"]
        skip_patterns = validation_cfg.get("skip_patterns") or DEFAULT_SKIP_PATTERNS
        checks.extend(discover_ci_checks(repo_root, list(patterns), skip_patterns=list(skip_patterns)))

        paths_cfg = config.get("paths") or {}
        logs_value = Path(str(paths_cfg.get("logs") or ".stacksplit/logs"))
        if not logs_value.is_absolute():
            logs_value = repo_root / logs_value
        timeout = validation_cfg.get("timeout")
        return cls(
            checks,
            logs_dir=logs_value,
            max_workers=int(validation_cfg.get("max_workers", 4)),
            timeout=float(timeout) if isinstance(timeout, (int, float)) and timeout > 0 else None,
        )

    def validate(self, partition: str, cwd: Path) -> ValidationResult:
        """Run every check against ``cwd`` and join the outcomes."""
        if not self.checks:
            LOGGER.info("No validation checks configured for %s", partition)
            return ValidationResult(partition=partition)

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(self.checks))) as pool:
            futures = [pool.submit(check.run, cwd, timeout=self.timeout) for check in self.checks]
            runs = [future.result() for future in futures]

        stems = _log_stems([run.check.name for run in runs])
        outcomes = [self._record(partition, run, stem) for run, stem in zip(runs, stems)]
        result = ValidationResult(partition=partition, outcomes=tuple(outcomes))
        for run in runs:
            LOGGER.info("%s :: %s", partition, run.short_message())
        return result

    def _record(self, partition: str, run: CheckRun, stem: str) -> CheckOutcome:
        log_path: str | None = None
        if self.logs_dir is not None:
            target = self.logs_dir / slugify(partition, fallback="partition") / f"{stem}.log"
            target.parent.mkdir(parents=True, exist_ok=True)
            header = f"$ {shlex.join(run.check.command)}\n# status: {run.status} (exit {run.exit_code})\n\n"
            target.write_text(header + run.output, encoding="utf-8")
            log_path = target.as_posix()
        return CheckOutcome(
            name=run.check.name,
            command=tuple(run.check.command),
            status=run.status,
            exit_code=run.exit_code,
            log_path=log_path,
            output=run.output[-MAX_OUTPUT_CHARS:],
        )


def _log_stems(names: Sequence[str]) -> List[str]:
    """Log file stems per check; repeated names get their 1-based position appended."""
    slugs = [slugify(name, fallback="check") for name in names]
    counts = Counter(slugs)
    return [slug if counts[slug] == 1 else f"{slug}-{position}" for position, slug in enumerate(slugs, start=1)]


__all__ = [
    "Check",
    "CheckRun",
    "Validator",
    "discover_ci_checks",
    "format_validation",
]
