import subprocess
from pathlib import Path

import pytest

from foreman.adapters.git import GitRepository, VcsError


def _run(cmd: list[str], cwd: Path) -> str:
    proc = subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def _init_git_repo(repo: Path, *, commit: bool = True) -> GitRepository:
    repo.mkdir(parents=True, exist_ok=True)
    _run(["git", "init", "-b", "main"], cwd=repo)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo)
    _run(["git", "config", "user.name", "Test User"], cwd=repo)
    if commit:
        (repo / "README.md").write_text("hello\n", encoding="utf-8")
        _run(["git", "add", "README.md"], cwd=repo)
        _run(["git", "commit", "-m", "first"], cwd=repo)
    return GitRepository(repo)


def test_repository_detection(tmp_path: Path) -> None:
    vcs = _init_git_repo(tmp_path / "repo")
    outside = tmp_path / "plain"
    outside.mkdir()

    assert vcs.is_repository()
    assert vcs.has_head()
    assert vcs.current_branch() == "main"
    assert not GitRepository(outside).is_repository()


def test_changed_files_lists_modified_and_untracked(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    vcs = _init_git_repo(repo)
    (repo / "README.md").write_text("changed\n", encoding="utf-8")
    (repo / "src" / "app").mkdir(parents=True)
    (repo / "src" / "app" / "models.py").write_text("x = 1\n", encoding="utf-8")

    assert vcs.changed_files() == ["README.md", "src/app/models.py"]


def test_stage_commit_and_head(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    vcs = _init_git_repo(repo)
    (repo / "a.py").write_text("a = 1\n", encoding="utf-8")
    (repo / "b.py").write_text("b = 1\n", encoding="utf-8")

    staged = vcs.stage(["a.py", "missing.py"])
    revision = vcs.commit("s1: add a\n\nbody")

    assert staged == ["a.py"]
    assert vcs.head() == (revision, "s1: add a")
    assert vcs.changed_files() == ["b.py"]


def test_stage_includes_deletions(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    vcs = _init_git_repo(repo)
    (repo / "README.md").unlink()

    assert vcs.stage(["README.md"]) == ["README.md"]


def test_commit_refuses_empty_index(tmp_path: Path) -> None:
    vcs = _init_git_repo(tmp_path / "repo")

    with pytest.raises(VcsError, match="Nothing is staged"):
        vcs.commit("empty")


def test_unstage_restores_working_tree_changes(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    vcs = _init_git_repo(repo)
    (repo / "a.py").write_text("a = 1\n", encoding="utf-8")
    vcs.stage(["a.py"])

    vcs.unstage(["a.py"])

    assert vcs.staged_files() == []
    assert (repo / "a.py").exists()
    assert vcs.changed_files() == ["a.py"]


def test_unstage_without_head(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    vcs = _init_git_repo(repo, commit=False)
    (repo / "a.py").write_text("a = 1\n", encoding="utf-8")
    vcs.stage(["a.py"])

    vcs.unstage(["a.py"])

    assert vcs.head() is None
    assert vcs.staged_files() == []


def test_browse_url_from_remote_forms() -> None:
    assert (
        GitRepository.browse_url("git@github.com:acme/app.git", "main")
        == "https://github.com/acme/app/tree/main"
    )
    assert (
        GitRepository.browse_url("https://github.com/acme/app.git", "dev")
        == "https://github.com/acme/app/tree/dev"
    )
    assert GitRepository.browse_url("/srv/git/app.git", "main") == "/srv/git/app"


def test_publish_pushes_to_configured_remote(tmp_path: Path) -> None:
    remote = tmp_path / "remote.git"
    _run(["git", "init", "--bare", str(remote)], cwd=tmp_path)
    repo = tmp_path / "repo"
    vcs = _init_git_repo(repo)
    _run(["git", "remote", "add", "origin", str(remote)], cwd=repo)

    result = vcs.publish("main")

    assert result["branch"] == "main"
    assert result["remote"] == "origin"
    assert _run(["git", "rev-parse", "main"], cwd=remote) == vcs.head()[0]


def test_publish_without_remote_fails(tmp_path: Path) -> None:
    vcs = _init_git_repo(tmp_path / "repo")

    with pytest.raises(VcsError, match="not configured"):
        vcs.publish("main")


def test_create_branch_carries_working_tree_changes(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    vcs = _init_git_repo(repo)
    (repo / "a.py").write_text("a = 1\n", encoding="utf-8")

    vcs.create_branch("foreman/plan-1")

    assert vcs.current_branch() == "foreman/plan-1"
    assert vcs.branch_exists("main")
    assert vcs.changed_files() == ["a.py"]
    with pytest.raises(VcsError, match="already exists"):
        vcs.create_branch("foreman/plan-1")

    vcs.switch("main")
    assert vcs.current_branch() == "main"


def test_current_branch_before_first_commit(tmp_path: Path) -> None:
    vcs = _init_git_repo(tmp_path / "repo", commit=False)

    assert vcs.current_branch() == "main"
    vcs.create_branch("foreman/plan-1")
    assert vcs.current_branch() == "foreman/plan-1"
    assert not vcs.branch_exists("main")
