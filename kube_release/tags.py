"""Deterministic tag planning for a published image.

The same repository, commit and options always produce the same `TagSet`:
```python
from kube_release.tags import plan_tags

tag_set = plan_tags("registry.example.com/app", "abc123")
assert tag_set.references == [
    "registry.example.com/app:abc123",
    "registry.example.com/app:latest",
]
```
"""

from collections.abc import Iterable, Mapping
import logging
import os
from pathlib import Path

from . import git_repo
from .exceptions import MissingProvenance
from .manifest import TagSet

__all__ = [
    "LATEST",
    "plan_tags",
    "resolve_commit",
]

_LOGGER = logging.getLogger(__name__)

LATEST = "latest"

# Environment variables set by common CI runners with the commit being built
COMMIT_ENV_VARS = ("GITHUB_SHA", "CI_COMMIT_SHA")


def plan_tags(
    repository: str,
    commit: str | None,
    latest: bool = True,
    extra_tags: Iterable[str] = (),
    short_length: int | None = None,
) -> TagSet:
    """Return the ordered tags to publish for a build.

    The commit tag comes first and is used to reference the image from
    manifests, followed by any extra tags and then `latest` when requested.
    """
    if commit is None or not commit.strip():
        raise MissingProvenance(
            f"No commit identifier available for {repository}; refusing to "
            "publish without a commit tag"
        )
    commit_tag = commit.strip()
    if short_length is not None:
        commit_tag = commit_tag[:short_length]

    tags: list[str] = []
    candidates = [commit_tag, *extra_tags]
    if latest:
        candidates.append(LATEST)
    for tag in candidates:
        if tag not in tags:
            tags.append(tag)
    return TagSet(repository=repository, tags=tuple(tags))


def resolve_commit(
    path: Path | None = None,
    commit: str | None = None,
    env: Mapping[str, str] | None = None,
) -> str | None:
    """Find the commit identifier of the source being built.

    An explicit commit wins, then CI environment variables, then the git
    repository containing the path. Returns None when nothing is available.
    """
    if commit:
        return commit
    env = os.environ if env is None else env
    for var in COMMIT_ENV_VARS:
        if value := env.get(var):
            _LOGGER.debug("Using commit from %s", var)
            return value
    if path is not None:
        return git_repo.current_commit(path)
    return None
