"""Run driver for a release.

A run executes Build -> Tag -> Publish -> Render -> Watch strictly in order,
each stage consuming the output of the previous one. The first failing stage
halts the run and is reported as a `StageFailedError`; the `RunReport` keeps
whatever the earlier stages produced.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
import logging

from . import render as render_lib
from .builder import ImageBuilder
from .cluster import Cluster, KubectlCluster
from .config import ReleaseConfig
from .context import current_trace, trace_context
from .exceptions import ReleaseException, StageFailedError
from .manifest import ImageArtifact, PublishReport, RolloutStatus, TagSet
from .registry import RegistryCredentials, RegistryPublisher
from .render import RenderedManifests
from .rollout import RolloutWatcher, raise_for_status
from .tags import plan_tags

__all__ = [
    "Stage",
    "RunReport",
    "ReleasePipeline",
    "plan_release_tags",
    "render_release",
]

_LOGGER = logging.getLogger(__name__)


class Stage(StrEnum):
    """Stages of a release run in execution order."""

    BUILD = "build"
    TAG = "tag"
    PUBLISH = "publish"
    RENDER = "render"
    ROLLOUT = "rollout"


@dataclass
class RunReport:
    """Outputs of the stages of a single run."""

    artifact: ImageArtifact | None = None
    tag_set: TagSet | None = None
    publish: PublishReport | None = None
    manifests: RenderedManifests | None = None
    rollout: RolloutStatus | None = None
    completed: list[Stage] = field(default_factory=list)
    failed_stage: Stage | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        """Return True if the run finished without a failed stage."""
        return self.failed_stage is None


def plan_release_tags(config: ReleaseConfig, commit: str | None) -> TagSet:
    """Plan the tags of a release for a commit."""
    registry = config.registry
    return plan_tags(
        registry.repository,
        commit,
        latest=registry.latest,
        extra_tags=registry.extra_tags,
        short_length=registry.short_sha,
    )


async def render_release(config: ReleaseConfig, tag_set: TagSet) -> RenderedManifests:
    """Render the manifests of a release referencing the primary tag."""
    if config.template_paths:
        templates = await render_lib.load_templates(config.template_paths)
    else:
        templates = render_lib.DEFAULT_TEMPLATES
    values: Mapping[str, str] = {
        **config.target().substitutions(),
        render_lib.IMAGE_VAR: tag_set.reference(tag_set.primary),
    }
    return render_lib.render(templates, values)


class ReleasePipeline:
    """Builds, publishes and rolls out one release."""

    def __init__(
        self,
        config: ReleaseConfig,
        builder: ImageBuilder | None = None,
        publisher: RegistryPublisher | None = None,
        cluster: Cluster | None = None,
        credentials: RegistryCredentials | None = None,
    ) -> None:
        """Initialize ReleasePipeline."""
        self._config = config
        self._builder = builder or ImageBuilder()
        self._publisher = publisher or RegistryPublisher(retries=config.registry.retries)
        self._cluster = cluster or KubectlCluster(context=config.deploy.context)
        self._credentials = credentials
        self._watcher: RolloutWatcher | None = None
        self.report = RunReport()

    async def _build(self) -> None:
        self.report.artifact = await self._builder.build(
            self._config.build_spec(), name=self._config.name
        )

    async def _tag(self, commit: str | None) -> None:
        self.report.tag_set = plan_release_tags(self._config, commit)
        _LOGGER.info("Planned tags: %s", ", ".join(self.report.tag_set.tags))

    async def _publish(self) -> None:
        assert self.report.artifact and self.report.tag_set
        report = await self._publisher.publish(
            self.report.artifact, self.report.tag_set, self._credentials
        )
        self.report.publish = report
        report.raise_for_failures()

    async def _render(self) -> None:
        assert self.report.tag_set
        self.report.manifests = await render_release(self._config, self.report.tag_set)

    async def _rollout(self) -> None:
        assert self.report.manifests
        await self._cluster.apply(self.report.manifests.documents)
        rollout = self._config.rollout
        self._watcher = RolloutWatcher(
            self._cluster,
            self._config.target(),
            interval=rollout.interval,
            timeout=rollout.timeout,
            stability_window=rollout.stability_window,
        )
        self.report.rollout = self._watcher.status
        await self._watcher.watch()
        raise_for_status(self._watcher.status)

    async def run(self, commit: str | None, dry_run: bool = False) -> RunReport:
        """Execute the stages in order, halting at the first failure.

        When `dry_run` is set the run stops after rendering, nothing is
        applied to the cluster.

        Raises StageFailedError naming the stage that failed and its cause.
        """
        stages = [
            (Stage.BUILD, self._build),
            (Stage.TAG, lambda: self._tag(commit)),
            (Stage.PUBLISH, self._publish),
            (Stage.RENDER, self._render),
        ]
        if not dry_run:
            stages.append((Stage.ROLLOUT, self._rollout))
        self.report = RunReport()
        self._watcher = None
        with trace_context(f"Release {self._config.name}"):
            for stage, func in stages:
                with trace_context(str(stage)):
                    try:
                        await func()
                    except ReleaseException as err:
                        _LOGGER.error("%s failed: %s", current_trace(), err)
                        self.report.failed_stage = stage
                        self.report.error = str(err)
                        raise StageFailedError(str(stage), err) from err
                self.report.completed.append(stage)
        return self.report

    def cancel(self) -> bool:
        """Abort an in-progress rollout watch, leaving the cluster untouched."""
        if self._watcher is None:
            return False
        return self._watcher.cancel()
