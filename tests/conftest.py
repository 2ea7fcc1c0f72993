from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from stacksplit.config import copy_config_template, merge_config  # noqa: E402
from stacksplit.tools.hosting import HostingError  # noqa: E402
from stacksplit.tools.vcs import GitRepository  # noqa: E402


@dataclass(slots=True)
class StackRepo:
    """Fixture payload: a working clone on ``main`` with a bare ``origin``."""

    repo: GitRepository
    origin: Path

    @property
    def root(self) -> Path:
        return self.repo.root

    def commit(self, files: Mapping[str, str | None], message: str) -> str:
        """Write (or delete, for ``None``) ``files`` and commit them."""

        for relative, content in files.items():
            path = self.root / relative
            if content is None:
                path.unlink()
                continue
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        self.repo.git("add", "--all")
        self.repo.git("commit", "--quiet", "-m", message)
        head = self.repo.head()
        assert head is not None
        return head

    def feature(self, name: str, files: Mapping[str, str | None], *, base: str = "main") -> str:
        """Create branch ``name`` from ``base`` with one commit, then return to ``base``."""

        self.repo.create_branch(name, base)
        head = self.commit(files, f"Feature {name}")
        self.repo.checkout(base)
        return head

    def remote_heads(self) -> Dict[str, str]:
        result = subprocess.run(
            ["git", "for-each-ref", "--format=%(refname:short) %(objectname)", "refs/heads"],
            cwd=self.origin,
            check=True,
            capture_output=True,
            text=True,
        )
        heads: Dict[str, str] = {}
        for line in result.stdout.splitlines():
            name, _, sha = line.partition(" ")
            heads[name] = sha
        return heads


def lines(count: int, prefix: str = "VALUE") -> str:
    """Return ``count`` lines of Python assignments."""

    return "".join(f"{prefix}_{index} = {index}\n" for index in range(count))


def make_config(overrides: Mapping[str, Any] | None = None) -> Dict[str, Any]:
    """Default template with ``overrides`` merged on top and no CI discovery."""

    config = merge_config(copy_config_template(), {"validation": {"ci_definitions": []}})
    return merge_config(config, overrides or {})


@pytest.fixture()
def stack_repo(tmp_path: Path) -> StackRepo:
    """Create a repository with a committed ``main`` pushed to a bare remote."""

    origin = tmp_path / "origin.git"
    subprocess.run(["git", "init", "--bare", "--quiet", str(origin)], check=True, capture_output=True)

    work = tmp_path / "work"
    work.mkdir()
    (work / "README.md").write_text("# demo\n", encoding="utf-8")
    repo = GitRepository.initialise(work)
    repo.git("remote", "add", "origin", str(origin))
    repo.push("origin", "main", set_upstream=True)
    return StackRepo(repo=repo, origin=origin)


# Imports every module below the package roots given on the command line.
CHECK_SCRIPT = """\
import importlib
import pathlib
import sys

for root in sys.argv[1:]:
    for path in sorted(pathlib.Path(root).rglob("*.py")):
        parts = list(path.with_suffix("").parts)
        if parts[-1] == "__init__":
            parts.pop()
        importlib.import_module(".".join(parts))
"""

APP_SKELETON: Dict[str, str | None] = {
    "check.py": CHECK_SCRIPT,
    "app/__init__.py": "",
    "app/models/__init__.py": "",
    "app/repositories/__init__.py": "",
    "app/services/__init__.py": "",
    "app/api/__init__.py": "",
}


def import_check(*roots: str) -> Dict[str, Any]:
    return {"name": "imports", "command": [sys.executable, "-B", "check.py", *roots]}


def layered_change(
    stack: StackRepo,
    *,
    repository_lines: int = 30,
    include_api: bool = False,
    failing: str | None = None,
) -> str:
    """Commit the app skeleton on ``main`` and a layered change on ``feature``.

    ``models -> repositories -> services (-> api)`` with each layer importing
    the previous one. ``failing`` names a file that raises when imported.
    """

    stack.commit(APP_SKELETON, "Add application skeleton")
    stack.repo.push("origin", "main")
    files: Dict[str, str | None] = {
        "app/models/user.py": lines(30, "USER"),
        "app/repositories/users.py": "from app.models.user import USER_0\n" + lines(repository_lines, "REPO"),
        "app/services/signup.py": "from app.repositories.users import REPO_0\n" + lines(30, "SIGNUP"),
    }
    if include_api:
        files["app/api/routes.py"] = "from app.services.signup import SIGNUP_0\n" + lines(30, "ROUTE")
    if failing is not None:
        files[failing] = (files[failing] or "") + 'raise RuntimeError("broken on import")\n'
    stack.feature("feature", files)
    return "feature"


class RecordingHost:
    """In-memory code host recording every pull request operation."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.created: List[tuple[str, str, str]] = []
        self.comments: List[tuple[str, str]] = []
        self.descriptions: List[tuple[str, str]] = []
        self.closed: List[tuple[str, str | None]] = []

    def create_pull_request(self, head: str, base: str, title: str, body: str) -> str:
        if self.fail:
            raise HostingError("gh is not authenticated")
        self.created.append((head, base, title))
        return f"https://example.test/pr/{len(self.created)}"

    def check_status(self, branch: str) -> List[Any]:
        return []

    def failure_log(self, check: Any) -> str:
        return ""

    def edit_description(self, pull_request: str, body: str) -> None:
        self.descriptions.append((pull_request, body))

    def comment(self, pull_request: str, body: str) -> None:
        self.comments.append((pull_request, body))

    def close(self, pull_request: str, *, comment: str | None = None) -> None:
        self.closed.append((pull_request, comment))
