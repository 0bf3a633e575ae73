"""Kube-release render action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
from typing import cast

from kube_release.config import read_config
from kube_release.pipeline import plan_release_tags, render_release

from . import selector

_LOGGER = logging.getLogger(__name__)


class RenderAction:
    """Kube-release render action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "render",
                help="Render the cluster manifests",
                description="""Render the Deployment and Service manifests for
                    an image tag without applying them.""",
            ),
        )
        selector.add_config_flags(args)
        args.add_argument(
            "--tag",
            type=str,
            default=None,
            help="Image tag to reference, by default the planned commit tag",
        )
        selector.add_commit_flags(args)
        selector.add_output_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        config: pathlib.Path,
        tag: str | None,
        commit: str | None,
        output_file: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        release_config = await read_config(config)
        if tag:
            tag_set = selector.single_tag_set(release_config, tag)
        else:
            tag_set = plan_release_tags(
                release_config, selector.build_commit(release_config, commit)
            )
        manifests = await render_release(release_config, tag_set)
        with open(output_file, "w") as file:
            file.write(manifests.yaml())
