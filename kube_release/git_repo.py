"""Library for reading build provenance from a local git repository.

The commit and branch of the source tree decide which tags are published and
whether a release should be triggered at all:
```python
from kube_release import git_repo

commit = git_repo.current_commit(Path("app"))
branch = git_repo.current_branch(Path("app"))
```
"""

import logging
from pathlib import Path

import git

from .exceptions import InputException

__all__ = [
    "git_repo",
    "current_commit",
    "current_branch",
]

_LOGGER = logging.getLogger(__name__)


def git_repo(path: Path) -> git.repo.Repo:
    """Return the git repo containing the path."""
    try:
        return git.repo.Repo(str(path), search_parent_directories=True)
    except (git.GitError, git.NoSuchPathError) as err:
        raise InputException(f"Unable to find git repository for {path}: {err}") from err


def current_commit(path: Path) -> str | None:
    """Return the commit sha checked out at the path, or None if unavailable."""
    try:
        repo = git_repo(path)
    except InputException as err:
        _LOGGER.debug("No commit available: %s", err)
        return None
    try:
        return repo.head.commit.hexsha
    except ValueError as err:
        # Repository without any commits
        _LOGGER.debug("No commit available in %s: %s", path, err)
        return None


def current_branch(path: Path) -> str | None:
    """Return the branch checked out at the path, or None when detached."""
    try:
        repo = git_repo(path)
    except InputException as err:
        _LOGGER.debug("No branch available: %s", err)
        return None
    if repo.head.is_detached:
        return None
    return repo.active_branch.name
