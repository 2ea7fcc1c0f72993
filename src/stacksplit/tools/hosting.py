"""Code-hosting collaborator backed by the GitHub ``gh`` CLI.

Only the remote monitoring and remote fix stages talk to the host: opening
pull requests for pushed partitions, reading CI status, fetching failed logs,
and editing, commenting on or closing pull requests.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Mapping, Protocol, Sequence

LOGGER = logging.getLogger(__name__)

_FAILED_CONCLUSIONS = frozenset({"FAILURE", "CANCELLED", "TIMED_OUT", "ACTION_REQUIRED", "STARTUP_FAILURE", "ERROR"})


class HostingError(RuntimeError):
    """Raised when the hosting CLI is unavailable or a call fails."""


@dataclass(slots=True)
class RemoteCheck:
    """CI check reported by the host for a branch."""

    name: str
    state: str
    conclusion: str | None = None
    details_url: str | None = None
    run_id: str | None = None

    @property
    def failed(self) -> bool:
        value = (self.conclusion or self.state or "").upper()
        return value in _FAILED_CONCLUSIONS


class CodeHost(Protocol):
    """Operations the pipeline consumes from a code-hosting service."""

    def create_pull_request(self, head: str, base: str, title: str, body: str) -> str: ...

    def check_status(self, branch: str) -> List[RemoteCheck]: ...

    def failure_log(self, check: RemoteCheck) -> str: ...

    def edit_description(self, pull_request: str, body: str) -> None: ...

    def comment(self, pull_request: str, body: str) -> None: ...

    def close(self, pull_request: str, *, comment: str | None = None) -> None: ...


class GitHubHost:
    """:class:`CodeHost` implementation driving ``gh`` in the repository root."""

    def __init__(self, root: Path | str, *, executable: str = "gh", draft: bool = False) -> None:
        self.root = Path(root)
        self.executable = executable
        self.draft = draft

    @classmethod
    def from_config(cls, config: Mapping[str, Any], repo_root: Path) -> "GitHubHost | None":
        hosting_cfg = config.get("hosting") or {}
        provider = str(hosting_cfg.get("provider") or "").strip().lower()
        if provider in {"", "none", "disabled"}:
            return None
        if provider != "github":
            raise HostingError(f"Unsupported hosting provider: {provider}")
        return cls(
            repo_root,
            executable=str(hosting_cfg.get("executable") or "gh"),
            draft=bool(hosting_cfg.get("draft", False)),
        )

    def _run(self, args: Sequence[str]) -> str:
        if shutil.which(self.executable) is None:
            raise HostingError(f"Executable not available: {self.executable}")
        process = subprocess.run(  # noqa: S603  # fixed executable with structured arguments
            [self.executable, *args],
            cwd=self.root,
            capture_output=True,
            text=True,
            check=False,
        )
        if process.returncode != 0:
            message = process.stderr.strip() or process.stdout.strip() or "unknown error"
            raise HostingError(f"{self.executable} {' '.join(args[:2])} failed: {message}")
        return process.stdout

    def create_pull_request(self, head: str, base: str, title: str, body: str) -> str:
        args = ["pr", "create", "--head", head, "--base", base, "--title", title, "--body", body]
        if self.draft:
            args.append("--draft")
        output = self._run(args).strip()
        url = output.splitlines()[-1] if output else ""
        LOGGER.info("Opened pull request %s for %s", url or "(unknown)", head)
        return url

    def check_status(self, branch: str) -> List[RemoteCheck]:
        output = self._run(
            ["pr", "view", branch, "--json", "statusCheckRollup"],
        )
        try:
            payload = json.loads(output or "{}")
        except json.JSONDecodeError as error:
            raise HostingError(f"Unexpected status payload for {branch}: {error}") from error
        checks: List[RemoteCheck] = []
        for entry in payload.get("statusCheckRollup") or []:
            if not isinstance(entry, Mapping):
                continue
            details_url = entry.get("detailsUrl") or entry.get("targetUrl")
            checks.append(
                RemoteCheck(
                    name=str(entry.get("name") or entry.get("context") or "check"),
                    state=str(entry.get("status") or entry.get("state") or ""),
                    conclusion=entry.get("conclusion"),
                    details_url=details_url,
                    run_id=_run_id(details_url),
                )
            )
        return checks

    def failure_log(self, check: RemoteCheck) -> str:
        if not check.run_id:
            return ""
        try:
            return self._run(["run", "view", check.run_id, "--log-failed"])
        except HostingError as error:
            LOGGER.warning("Unable to fetch failed log for %s: %s", check.name, error)
            return ""

    def edit_description(self, pull_request: str, body: str) -> None:
        self._run(["pr", "edit", pull_request, "--body", body])

    def comment(self, pull_request: str, body: str) -> None:
        self._run(["pr", "comment", pull_request, "--body", body])

    def close(self, pull_request: str, *, comment: str | None = None) -> None:
        args = ["pr", "close", pull_request]
        if comment:
            args.extend(["--comment", comment])
        self._run(args)


def _run_id(url: Any) -> str | None:
    # Actions URLs look like .../actions/runs/<run id>/job/<job id>.
    if not isinstance(url, str) or "/actions/runs/" not in url:
        return None
    tail = url.split("/actions/runs/", 1)[1]
    run_id = tail.split("/", 1)[0]
    return run_id if run_id.isdigit() else None


__all__ = ["CodeHost", "GitHubHost", "HostingError", "RemoteCheck"]
