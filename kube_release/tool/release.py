"""Kube-release release action."""

from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
import logging
import os
import pathlib
from typing import cast

from kube_release import git_repo
from kube_release.config import ReleaseConfig, read_config
from kube_release.pipeline import ReleasePipeline
from kube_release.registry import RegistryCredentials

from . import selector

_LOGGER = logging.getLogger(__name__)

# Set by CI runners to the branch that triggered the build
BRANCH_ENV_VARS = ("GITHUB_REF_NAME", "CI_COMMIT_BRANCH")


def current_branch(release_config: ReleaseConfig) -> str | None:
    """Return the branch being released, from the CI environment or git."""
    for var in BRANCH_ENV_VARS:
        if value := os.environ.get(var):
            return value
    return git_repo.current_branch(release_config.build_spec().context)


class ReleaseAction:
    """Kube-release release action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "release",
                help="Build, publish and roll out the service",
                description="""Run the full release: build the image, push it
                    under the planned tags, render the manifests, apply them
                    and wait for the rollout. Stops at the first failed stage.""",
            ),
        )
        selector.add_config_flags(args)
        selector.add_commit_flags(args)
        args.add_argument(
            "--branch",
            type=str,
            default=None,
            help="Only release when on this branch, overrides trigger.branch",
        )
        args.add_argument(
            "--dry-run",
            type=bool,
            action=BooleanOptionalAction,
            default=False,
            help="Stop after rendering, without applying to the cluster",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        config: pathlib.Path,
        commit: str | None,
        branch: str | None,
        dry_run: bool,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        release_config = await read_config(config)
        if designated := (branch or release_config.trigger.branch):
            found = current_branch(release_config)
            if found != designated:
                _LOGGER.info(
                    "Skipping release: branch '%s' is not '%s'", found, designated
                )
                print(f"Skipping release of {release_config.name}: not on branch {designated}")
                return

        registry = release_config.registry
        credentials = RegistryCredentials.from_env(
            registry.username_env, registry.password_env
        )
        pipeline = ReleasePipeline(release_config, credentials=credentials)
        report = await pipeline.run(
            selector.build_commit(release_config, commit), dry_run=dry_run
        )

        if report.artifact:
            print(f"Image: {report.artifact.digest}")
        if report.publish:
            for result in report.publish.results:
                print(f"Pushed: {result.reference}")
        if dry_run and report.manifests:
            print(report.manifests.yaml(), end="")
        if report.rollout:
            print(f"Rollout: {report.rollout}")
