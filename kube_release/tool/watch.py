"""Kube-release watch action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
from typing import cast

from kube_release.cluster import KubectlCluster
from kube_release.config import read_config
from kube_release.rollout import RolloutWatcher, raise_for_status

from . import selector

_LOGGER = logging.getLogger(__name__)


class WatchAction:
    """Kube-release watch action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "watch",
                help="Wait for the Deployment rollout to become healthy",
                description="""Poll the cluster until all desired replicas are
                    ready, the cluster reports a permanent error, or the
                    timeout elapses. Re-run this after a rollout timed out.""",
            ),
        )
        selector.add_config_flags(args)
        args.add_argument(
            "--timeout",
            type=float,
            default=None,
            help="Seconds to wait, overriding the configured rollout timeout",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        config: pathlib.Path,
        timeout: float | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        release_config = await read_config(config)
        rollout = release_config.rollout
        watcher = RolloutWatcher(
            KubectlCluster(context=release_config.deploy.context),
            release_config.target(),
            interval=rollout.interval,
            timeout=timeout if timeout is not None else rollout.timeout,
            stability_window=rollout.stability_window,
        )
        status = await watcher.watch()
        print(status)
        raise_for_status(status)
