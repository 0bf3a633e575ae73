"""Tests for git_repo."""

from pathlib import Path

import git
import pytest

from kube_release import git_repo
from kube_release.exceptions import InputException


@pytest.fixture(name="repo")
def repo_fixture(tmp_path: Path) -> git.Repo:
    """A git repository with a single commit on main."""
    repo = git.Repo.init(tmp_path, initial_branch="main")
    (tmp_path / "Dockerfile").write_text("FROM scratch\n")
    repo.index.add(["Dockerfile"])
    repo.index.commit("Initial commit")
    return repo


def test_current_commit(repo: git.Repo, tmp_path: Path) -> None:
    """Test reading the checked out commit."""
    assert git_repo.current_commit(tmp_path) == repo.head.commit.hexsha


def test_current_branch(repo: git.Repo, tmp_path: Path) -> None:
    """Test reading the checked out branch."""
    assert git_repo.current_branch(tmp_path) == "main"

    repo.git.checkout("-b", "feature/login")
    assert git_repo.current_branch(tmp_path) == "feature/login"


def test_detached_head(repo: git.Repo, tmp_path: Path) -> None:
    """Test a detached HEAD has no branch."""
    repo.git.checkout(repo.head.commit.hexsha)
    assert git_repo.current_branch(tmp_path) is None
    assert git_repo.current_commit(tmp_path) == repo.head.commit.hexsha


def test_no_commits(tmp_path: Path) -> None:
    """Test a repository without any commits."""
    git.Repo.init(tmp_path)
    assert git_repo.current_commit(tmp_path) is None


def test_not_a_repository(tmp_path: Path) -> None:
    """Test a directory outside of a git repository."""
    with pytest.raises(InputException, match="Unable to find git repository"):
        git_repo.git_repo(tmp_path)
    assert git_repo.current_commit(tmp_path) is None
    assert git_repo.current_branch(tmp_path) is None
