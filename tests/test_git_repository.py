from __future__ import annotations

from pathlib import Path

import pytest

from stacksplit.tools.vcs import GitError, GitRepository


def test_diff_covers_only_the_source_side(stack_repo) -> None:
    stack_repo.commit({"a.txt": "x\n", "b.txt": "gone\n"}, "Seed files")
    stack_repo.feature("feature", {"a.txt": "y\n", "b.txt": None, "c.txt": "1\n2\n3\n"})
    stack_repo.commit({"main-only.txt": "later\n"}, "Change main after branching")

    entries = stack_repo.repo.diff_name_status("main", "feature")
    sizes = stack_repo.repo.diff_numstat("main", "feature")

    assert sorted(entries) == [("A", "c.txt"), ("D", "b.txt"), ("M", "a.txt")]
    assert sizes == {"a.txt": 2, "b.txt": 1, "c.txt": 3}


def test_show_and_list_files(stack_repo) -> None:
    stack_repo.feature("feature", {"pkg/mod.py": "X = 1\n"})
    repo = stack_repo.repo

    assert repo.show_file("feature", "pkg/mod.py") == "X = 1\n"
    assert repo.show_file("main", "pkg/mod.py") is None
    assert repo.list_files("feature") == ["README.md", "pkg/mod.py"]
    assert repo.rev_parse("no-such-branch") is None


def test_conflicting_merge_is_aborted(stack_repo) -> None:
    repo = stack_repo.repo
    stack_repo.feature("left", {"README.md": "# left\n"})
    stack_repo.feature("right", {"README.md": "# right\n"})
    repo.checkout("left")
    before = repo.head()

    assert repo.merge("right") is False
    assert repo.head() == before
    assert repo.is_clean()
    assert (repo.root / "README.md").read_text(encoding="utf-8") == "# left\n"


def test_clean_merge_creates_a_merge_commit(stack_repo) -> None:
    repo = stack_repo.repo
    stack_repo.feature("left", {"left.txt": "l\n"})
    stack_repo.feature("right", {"right.txt": "r\n"})
    repo.checkout("left")

    assert repo.merge("right", message="Merge right into left") is True
    assert (repo.root / "right.txt").exists()
    assert repo.git("log", "-1", "--format=%s").stdout.strip() == "Merge right into left"


def test_checkpoint_restores_branch_files_and_untracked_baseline(stack_repo) -> None:
    repo = stack_repo.repo
    root = stack_repo.root
    (root / "notes.txt").write_text("keep me\n", encoding="utf-8")
    checkpoint = repo.create_checkpoint("before")

    repo.create_branch("scratch-branch", "main")
    (root / "README.md").write_text("# edited\n", encoding="utf-8")
    (root / "scratch.txt").write_text("remove me\n", encoding="utf-8")
    (root / "tmpdir").mkdir()
    (root / "tmpdir" / "file.txt").write_text("remove me too\n", encoding="utf-8")
    repo.restore_checkpoint(checkpoint)

    assert repo.current_branch() == "main"
    assert (root / "README.md").read_text(encoding="utf-8") == "# demo\n"
    assert (root / "notes.txt").exists()
    assert not (root / "scratch.txt").exists()
    assert not (root / "tmpdir").exists()


def test_checkpoint_from_another_repository_is_rejected(stack_repo, tmp_path: Path) -> None:
    other = GitRepository.initialise(tmp_path / "other")

    with pytest.raises(GitError):
        stack_repo.repo.restore_checkpoint(other.create_checkpoint())


def test_commit_staged_without_changes(stack_repo) -> None:
    assert stack_repo.repo.commit_staged("Nothing to see") is None


def test_ensure_excluded_is_idempotent(stack_repo) -> None:
    repo = stack_repo.repo

    repo.ensure_excluded(".stacksplit/")
    repo.ensure_excluded(".stacksplit/")

    exclude = (repo.root / ".git" / "info" / "exclude").read_text(encoding="utf-8")
    assert exclude.splitlines().count(".stacksplit/") == 1


def test_push_and_delete_branches(stack_repo) -> None:
    repo = stack_repo.repo
    stack_repo.feature("feature", {"new.txt": "n\n"})

    repo.push("origin", "feature")

    assert repo.remote_branch_exists("origin", "feature")
    assert stack_repo.remote_heads()["feature"] == repo.rev_parse("feature")
    assert repo.delete_branch("feature") is True
    assert repo.delete_branch("feature") is False


def test_discover_walks_up_to_the_repository(stack_repo) -> None:
    nested = stack_repo.root / "a" / "b"
    nested.mkdir(parents=True)

    assert GitRepository.discover(nested).root == stack_repo.root


def test_non_repository_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(GitError):
        GitRepository(tmp_path)
