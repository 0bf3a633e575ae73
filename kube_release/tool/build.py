"""Kube-release build action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
from typing import cast

from kube_release.builder import ImageBuilder
from kube_release.config import read_config

from . import selector

_LOGGER = logging.getLogger(__name__)


class BuildAction:
    """Kube-release build action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "build",
                help="Build the container image",
                description="""Build the container image of the release with
                    docker buildx, reusing cached layers from earlier builds
                    of the same source tree.""",
            ),
        )
        selector.add_config_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        config: pathlib.Path,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        release_config = await read_config(config)
        artifact = await ImageBuilder().build(
            release_config.build_spec(), name=release_config.name
        )
        print(artifact.digest)
