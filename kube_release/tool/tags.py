"""Kube-release tags action."""

from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
import logging
import pathlib
from typing import cast

from kube_release.tags import plan_tags, resolve_commit

from . import selector

_LOGGER = logging.getLogger(__name__)


class TagsAction:
    """Kube-release tags action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "tags",
                help="Print the image references that would be published",
                description="""Plan the tags for a build. The commit tag comes
                    first followed by any extra tags and then latest.""",
            ),
        )
        args.add_argument(
            "--repository",
            type=str,
            required=True,
            help="Image repository e.g. registry.example.com/app",
        )
        args.add_argument(
            "--latest",
            type=bool,
            action=BooleanOptionalAction,
            default=True,
            help="Also publish the latest tag",
        )
        args.add_argument(
            "--tag",
            dest="extra_tags",
            action="append",
            default=[],
            help="Additional tag to publish, may be repeated",
        )
        args.add_argument(
            "--short-sha",
            type=int,
            default=None,
            help="Truncate the commit tag to this many characters",
        )
        args.add_argument(
            "--path",
            type=pathlib.Path,
            default=pathlib.Path("."),
            help="Path inside the git repository used to find the commit",
        )
        selector.add_commit_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        repository: str,
        latest: bool,
        extra_tags: list[str],
        short_sha: int | None,
        path: pathlib.Path,
        commit: str | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        tag_set = plan_tags(
            repository,
            resolve_commit(path, commit=commit),
            latest=latest,
            extra_tags=extra_tags,
            short_length=short_sha,
        )
        for reference in tag_set.references:
            print(reference)
