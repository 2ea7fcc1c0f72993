"""Minimal git helpers.

The helpers below provide just enough structure to enumerate a changeset,
build one branch per partition, merge and push them, and roll the checkout
back to a known-good checkpoint.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence, Set

import logging
import shutil
import subprocess
import time

LOGGER = logging.getLogger(__name__)


class GitError(RuntimeError):
    """A git invocation exited non-zero or the path is not a repository."""


@dataclass(slots=True)
class GitCheckpoint:
    """Snapshot of the checkout at a point in time.

    The checkpoint records the checked-out branch, ``HEAD`` and the set of
    pre-existing untracked paths.  Rolling back returns to the branch, restores
    tracked files to the recorded commit and removes only the untracked files
    that appeared after the checkpoint was taken.
    """

    repo: "GitRepository"
    label: str
    head: str | None
    branch: str | None
    baseline_untracked: tuple[str, ...]
    created_at: float


class GitRepository:
    """The git operations needed to build, push and unwind a branch stack."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Walk up from ``start`` (default: the cwd) to the enclosing repository."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate)
        raise GitError(f"Unable to locate a git repository from {path}")

    @classmethod
    def initialise(cls, root: Path | str, *, branch: str = "main") -> "GitRepository":
        """Create a repository at ``root`` whose first commit holds its current files."""

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)
        _run(path, ["init"])
        _run(path, ["symbolic-ref", "HEAD", f"refs/heads/{branch}"])
        for key, value in (("user.email", "stack@example.com"), ("user.name", "Stack Splitter")):
            configured = _run(path, ["config", "--get", key], check=False)
            if configured.returncode != 0 or not configured.stdout.strip():
                _run(path, ["config", key, value])
        _run(path, ["add", "."])
        _run(path, ["commit", "--allow-empty", "-m", "Initial commit"])
        return cls(path)

    # ------------------------------------------------------------------ git IO
    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Run ``git <args>`` in the repository root."""

        return _run(self.root, list(args), check=check)

    # -------------------------------------------------------------- refs
    def current_branch(self) -> str | None:
        """Checked-out branch name, ``None`` on a detached ``HEAD``."""

        result = self.git("rev-parse", "--abbrev-ref", "HEAD", check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    def rev_parse(self, ref: str) -> str | None:
        """Resolve ``ref`` to a commit sha, or ``None`` when it does not exist."""

        result = self.git("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def head(self) -> str | None:
        return self.rev_parse("HEAD")

    def branch_exists(self, name: str) -> bool:
        result = self.git("show-ref", "--verify", "--quiet", f"refs/heads/{name}", check=False)
        return result.returncode == 0

    # ------------------------------------------------------------- branches
    def checkout(self, ref: str, *, force: bool = False) -> None:
        args = ["checkout", "--quiet"]
        if force:
            args.append("--force")
        args.append(ref)
        self.git(*args)

    def create_branch(self, name: str, start: str) -> None:
        """Create (or reset) ``name`` at ``start`` and check it out."""

        self.git("checkout", "--quiet", "-B", name, start)

    def create_ref(self, name: str, commit: str) -> None:
        """Create branch ``name`` at ``commit`` without checking it out."""

        if self.branch_exists(name):
            raise GitError(f"Branch already exists: {name}")
        self.git("branch", name, commit)

    def delete_branch(self, name: str) -> bool:
        """Delete a local branch; returns ``False`` when it did not exist."""

        if not self.branch_exists(name):
            return False
        self.git("branch", "-D", name)
        return True

    # ----------------------------------------------------------- file level
    def checkout_paths(self, ref: str, paths: Sequence[str]) -> None:
        """Check out ``paths`` from ``ref`` into the working tree and index."""

        if not paths:
            return
        self.git("checkout", ref, "--", *paths)

    def remove_paths(self, paths: Sequence[str]) -> None:
        """Remove ``paths`` from the working tree and index, ignoring absent ones."""

        if not paths:
            return
        self.git("rm", "-r", "-q", "--ignore-unmatch", "--", *paths)

    def show_file(self, ref: str, path: str) -> str | None:
        """Return the content of ``path`` at ``ref`` or ``None`` when absent."""

        result = self.git("show", f"{ref}:{path}", check=False)
        if result.returncode != 0:
            return None
        return result.stdout

    def list_files(self, ref: str) -> List[str]:
        """Return every tracked path at ``ref``."""

        result = self.git("ls-tree", "-r", "-z", "--name-only", ref)
        return [entry for entry in result.stdout.split("\0") if entry]

    # ----------------------------------------------------------- diff helpers
    def diff_name_status(self, base: str, source: str) -> List[tuple[str, str]]:
        """Return ``(status, path)`` pairs changed on ``source`` since it forked from ``base``."""

        result = self.git("diff", "--name-status", "--no-renames", "-z", f"{base}...{source}")
        tokens = [token for token in result.stdout.split("\0") if token]
        entries: List[tuple[str, str]] = []
        for index in range(0, len(tokens) - 1, 2):
            entries.append((tokens[index][:1], tokens[index + 1]))
        return entries

    def diff_numstat(self, base: str, source: str, *, symmetric: bool = True) -> Dict[str, int]:
        """Return changed line counts (added + deleted) per path."""

        spec = f"{base}...{source}" if symmetric else f"{base}..{source}"
        result = self.git("diff", "--numstat", "--no-renames", "-z", spec)
        sizes: Dict[str, int] = {}
        for entry in result.stdout.split("\0"):
            if not entry:
                continue
            parts = entry.split("\t", 2)
            if len(parts) != 3:
                continue
            added, deleted, path = parts
            sizes[path] = _count(added) + _count(deleted)
        return sizes

    def diff_size(self, base: str, head: str) -> int:
        """Return the number of changed lines between two commits."""

        return sum(self.diff_numstat(base, head, symmetric=False).values())

    # ------------------------------------------------------------ working tree
    def _porcelain(self) -> List[tuple[str, Path]]:
        # -z output is NUL separated and unquoted; renames carry their old path as a trailing entry.
        fields = self.git("status", "--porcelain", "-z").stdout.split("\0")
        entries: List[tuple[str, Path]] = []
        position = 0
        while position < len(fields):
            field = fields[position]
            position += 1
            if len(field) < 4:
                continue
            code = field[:2]
            if code[0] in {"R", "C"}:
                position += 1
            entries.append((code.strip() or code, Path(field[3:])))
        return entries

    def working_tree_changes(self, *, include_untracked: bool = True) -> List[Path]:
        """Paths that differ from ``HEAD``, sorted."""

        changed = {path for code, path in self._porcelain() if include_untracked or code != "??"}
        return sorted(changed, key=lambda item: item.as_posix())

    def untracked_files(self) -> List[Path]:
        return [path for code, path in self._porcelain() if code == "??"]

    def is_clean(self, *, include_untracked: bool = True) -> bool:
        return not self.working_tree_changes(include_untracked=include_untracked)

    def ensure_excluded(self, pattern: str) -> None:
        """Append ``pattern`` to ``.git/info/exclude`` when missing."""

        exclude_path = self.root / ".git" / "info" / "exclude"
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        existing = exclude_path.read_text(encoding="utf-8") if exclude_path.exists() else ""
        if pattern in existing.splitlines():
            return
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        with exclude_path.open("a", encoding="utf-8") as handle:
            handle.write(f"{prefix}{pattern}\n")

    # ------------------------------------------------------------- checkpoints
    def create_checkpoint(self, label: str | None = None) -> GitCheckpoint:
        """Record the current branch, ``HEAD`` and untracked files."""

        head = self.head()
        baseline_untracked = tuple(sorted(path.as_posix() for path in self.untracked_files()))
        return GitCheckpoint(
            repo=self,
            label=label or head or "working-tree",
            head=head,
            branch=self.current_branch(),
            baseline_untracked=baseline_untracked,
            created_at=time.time(),
        )

    def restore_checkpoint(self, checkpoint: GitCheckpoint) -> None:
        """Check out the recorded branch, reset tracked files and drop new untracked paths."""

        if checkpoint.repo is not self:
            raise GitError(f"Checkpoint {checkpoint.label} was taken in another repository.")

        target = checkpoint.branch or checkpoint.head
        if target:
            self.checkout(target, force=True)

        restore_args: List[str] = ["restore", "--worktree", "--staged"]
        if checkpoint.head:
            restore_args.extend(["--source", checkpoint.head])
        restore_args.extend(["--", "."])
        self.git(*restore_args)

        baseline = {Path(entry) for entry in checkpoint.baseline_untracked}
        extra = sorted(
            (path for path in self.untracked_files() if path not in baseline),
            key=lambda item: len(item.parts),
            reverse=True,
        )
        for relative in extra:
            target_path = self.root / relative
            if target_path.is_dir() and not target_path.is_symlink():
                shutil.rmtree(target_path, ignore_errors=True)
            elif target_path.exists() or target_path.is_symlink():
                target_path.unlink(missing_ok=True)

    # -------------------------------------------------------------- commits
    def commit_staged(self, message: str, *, allow_empty: bool = False) -> str | None:
        """Commit whatever is staged.

        Returns the new commit SHA, or ``None`` when nothing was staged and
        ``allow_empty`` is ``False``.
        """

        if not allow_empty and self.git("diff", "--cached", "--quiet", check=False).returncode == 0:
            return None
        commit_args: List[str] = ["commit", "--quiet", "-m", message]
        if allow_empty:
            commit_args.append("--allow-empty")
        commit = self.git(*commit_args, check=False)
        if commit.returncode != 0:
            output = commit.stderr.strip() or commit.stdout.strip() or ""
            if "nothing to commit" in output.lower() or "no changes added" in output.lower():
                return None
            raise GitError(f"git commit failed: {output}")
        return self.head()

    def merge(self, ref: str, *, message: str | None = None) -> bool:
        """Merge ``ref`` into the current branch.

        Returns ``False`` on a conflict after aborting the merge, so the
        checkout is left exactly as it was before the call.
        """

        args = ["merge", "--no-ff", "--no-edit"]
        if message:
            args.extend(["-m", message])
        args.append(ref)
        result = self.git(*args, check=False)
        if result.returncode == 0:
            return True
        LOGGER.debug("Merge of %s failed: %s", ref, result.stdout.strip() or result.stderr.strip())
        abort = self.git("merge", "--abort", check=False)
        if abort.returncode != 0:
            self.git("reset", "--hard", "--quiet", "HEAD")
        return False

    # -------------------------------------------------------------- remotes
    def push(
        self,
        remote: str,
        branch: str,
        *,
        set_upstream: bool = False,
        force: bool = False,
    ) -> None:
        """Push ``branch``; ``force`` rewrites a rebuilt branch with ``--force-with-lease``."""

        args: List[str] = ["push", "--quiet"]
        if set_upstream:
            args.append("-u")
        if force:
            args.append("--force-with-lease")
        args.extend([remote, branch])
        self.git(*args)

    def remote_branch_exists(self, remote: str, branch: str) -> bool:
        result = self.git("ls-remote", "--exit-code", "--heads", remote, branch, check=False)
        return result.returncode == 0


def _run(root: Path, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
    result = subprocess.run(
        ["git", *args],
        cwd=root,
        capture_output=True,
        encoding="utf-8",
        errors="replace",
        check=False,
    )
    if check and result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip() or f"exit code {result.returncode}"
        raise GitError(f"git {' '.join(args)}: {detail}")
    return result


def _count(value: str) -> int:
    # Binary files report "-" for both columns.
    return int(value) if value.isdigit() else 0


__all__ = ["GitCheckpoint", "GitError", "GitRepository"]
