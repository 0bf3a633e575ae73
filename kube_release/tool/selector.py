"""Library for common command line flags."""

from argparse import ArgumentParser
import logging
import pathlib

from kube_release.config import DEFAULT_CONFIG_FILE, ReleaseConfig
from kube_release.manifest import TagSet
from kube_release.tags import resolve_commit

_LOGGER = logging.getLogger(__name__)


def add_config_flags(args: ArgumentParser) -> None:
    """Add the release configuration file argument."""
    args.add_argument(
        "config",
        help="Path to the release configuration file",
        type=pathlib.Path,
        default=pathlib.Path(DEFAULT_CONFIG_FILE),
        nargs="?",
    )


def add_commit_flags(args: ArgumentParser) -> None:
    """Add flags for selecting the commit being released."""
    args.add_argument(
        "--commit",
        help="Commit identifier of the build, by default read from the CI "
        "environment or the git repository",
        type=str,
        default=None,
    )


def add_output_flags(args: ArgumentParser) -> None:
    """Add flags for where to write the results."""
    args.add_argument(
        "--output-file",
        type=str,
        default="/dev/stdout",
        help="Output file for the results of the command",
    )


def build_commit(release_config: ReleaseConfig, commit: str | None) -> str | None:
    """Return the commit for the release build context."""
    return resolve_commit(release_config.build_spec().context, commit=commit)


def single_tag_set(release_config: ReleaseConfig, tag: str) -> TagSet:
    """Return a TagSet referencing an already published tag."""
    return TagSet(repository=release_config.registry.repository, tags=(tag,))
