"""Tests for the release run driver."""

import asyncio
from pathlib import Path

import pytest

from kube_release.builder import ImageBuilder
from kube_release.cache import BuildCache
from kube_release.config import ReleaseConfig, read_config
from kube_release.exceptions import (
    BuildFailure,
    MissingProvenance,
    PublishFailure,
    RolloutFailure,
    StageFailedError,
)
from kube_release.manifest import DeploymentState, RolloutPhase
from kube_release.pipeline import (
    ReleasePipeline,
    Stage,
    plan_release_tags,
    render_release,
)
from kube_release.registry import RegistryCredentials, RegistryPublisher

from .conftest import DIGEST, FakeBackend, FakeCluster, FakeRegistry

READY = DeploymentState(desired=3, ready=3, updated=3, available=3)


@pytest.fixture(name="config")
async def config_fixture(app_dir: Path) -> ReleaseConfig:
    """Release configuration of the test app."""
    return await read_config(app_dir / "release.yaml")


@pytest.fixture(name="pipeline")
def pipeline_fixture(
    config: ReleaseConfig,
    backend: FakeBackend,
    build_cache: BuildCache,
    registry: FakeRegistry,
    cluster: FakeCluster,
) -> ReleasePipeline:
    """A pipeline using fake external systems."""
    return ReleasePipeline(
        config,
        builder=ImageBuilder(backend, build_cache),
        publisher=RegistryPublisher(registry, retries=0, backoff=0),
        cluster=cluster,
    )


async def test_release(
    pipeline: ReleasePipeline, registry: FakeRegistry, cluster: FakeCluster
) -> None:
    """Test a release of a commit from build to healthy rollout."""
    cluster.states = [DeploymentState(desired=3, ready=1, updated=3), READY]
    report = await pipeline.run("abc123")

    assert report.succeeded
    assert report.completed == [
        Stage.BUILD,
        Stage.TAG,
        Stage.PUBLISH,
        Stage.RENDER,
        Stage.ROLLOUT,
    ]
    assert report.artifact is not None
    assert report.artifact.digest == DIGEST
    assert report.tag_set is not None
    assert report.tag_set.tags == ("abc123", "latest")
    assert sorted(registry.pushed) == [
        "registry.example.com/web:abc123",
        "registry.example.com/web:latest",
    ]
    assert report.manifests is not None
    assert report.manifests.images == ["registry.example.com/web:abc123"]
    assert [doc["kind"] for doc in cluster.applied] == ["Deployment", "Service"]
    assert report.rollout is not None
    assert report.rollout.phase == RolloutPhase.SUCCEEDED
    assert str(report.rollout) == "Succeeded (3/3 ready): 3/3 replicas ready"


async def test_partial_publish_halts(
    pipeline: ReleasePipeline, registry: FakeRegistry, cluster: FakeCluster
) -> None:
    """Test a tag that fails to push stops the run before rendering."""
    registry.failures["registry.example.com/web:latest"] = 1
    with pytest.raises(StageFailedError, match="Stage 'publish' failed") as exc_info:
        await pipeline.run("abc123")
    assert isinstance(exc_info.value.__cause__, PublishFailure)
    assert exc_info.value.__cause__.failed_tags == ["latest"]

    report = pipeline.report
    assert report.failed_stage == Stage.PUBLISH
    assert report.completed == [Stage.BUILD, Stage.TAG]
    assert report.publish is not None
    assert [result.tag for result in report.publish.succeeded] == ["abc123"]
    assert registry.pushed == ["registry.example.com/web:abc123"]
    assert report.manifests is None
    assert not cluster.applied


async def test_build_failure_halts(
    pipeline: ReleasePipeline, backend: FakeBackend, registry: FakeRegistry
) -> None:
    """Test a failed build publishes nothing."""
    backend.error = BuildFailure("build failed", output="npm ERR!")
    with pytest.raises(StageFailedError, match="Stage 'build' failed"):
        await pipeline.run("abc123")
    assert pipeline.report.failed_stage == Stage.BUILD
    assert pipeline.report.error == "build failed"
    assert pipeline.report.tag_set is None
    assert not registry.pushed


async def test_missing_commit_halts(
    pipeline: ReleasePipeline, registry: FakeRegistry
) -> None:
    """Test a release without a commit is not published."""
    with pytest.raises(StageFailedError, match="Stage 'tag' failed") as exc_info:
        await pipeline.run(None)
    assert isinstance(exc_info.value.__cause__, MissingProvenance)
    assert pipeline.report.artifact is not None
    assert not registry.pushed


async def test_rollout_failure(pipeline: ReleasePipeline, cluster: FakeCluster) -> None:
    """Test a rollout that fails after the manifests were applied."""
    cluster.states = [
        DeploymentState(desired=3, ready=0, failure="ImagePullBackOff"),
    ]
    with pytest.raises(StageFailedError, match="Stage 'rollout' failed") as exc_info:
        await pipeline.run("abc123")
    assert isinstance(exc_info.value.__cause__, RolloutFailure)
    assert cluster.applied
    report = pipeline.report
    assert report.rollout is not None
    assert report.rollout.phase == RolloutPhase.FAILED


async def test_dry_run(
    pipeline: ReleasePipeline, registry: FakeRegistry, cluster: FakeCluster
) -> None:
    """Test a dry run stops after rendering the manifests."""
    report = await pipeline.run("abc123", dry_run=True)
    assert report.succeeded
    assert report.completed[-1] == Stage.RENDER
    assert report.manifests is not None
    assert report.rollout is None
    assert not cluster.applied
    assert cluster.polls == 0


async def test_credentials(
    config: ReleaseConfig,
    backend: FakeBackend,
    build_cache: BuildCache,
    registry: FakeRegistry,
    cluster: FakeCluster,
) -> None:
    """Test the registry login uses the configured credentials."""
    credentials = RegistryCredentials(username="ci", password="s3cret")
    cluster.states = [READY]
    pipeline = ReleasePipeline(
        config,
        builder=ImageBuilder(backend, build_cache),
        publisher=RegistryPublisher(registry, backoff=0),
        cluster=cluster,
        credentials=credentials,
    )
    await pipeline.run("abc123")
    assert registry.logins == [("registry.example.com", credentials)]


async def test_cancel(pipeline: ReleasePipeline, cluster: FakeCluster) -> None:
    """Test cancelling a run while waiting for the rollout."""
    cluster.states = [DeploymentState(desired=3, ready=1, updated=3)]
    assert not pipeline.cancel()
    task = asyncio.create_task(pipeline.run("abc123"))
    while cluster.polls < 1:
        await asyncio.sleep(0.01)
    assert pipeline.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert pipeline.report.rollout is not None
    assert pipeline.report.rollout.phase == RolloutPhase.PROGRESSING


async def test_render_release(config: ReleaseConfig) -> None:
    """Test rendering the manifests for the primary tag."""
    tag_set = plan_release_tags(config, "abc123")
    manifests = await render_release(config, tag_set)
    assert manifests.images == ["registry.example.com/web:abc123"]
    assert manifests.deployments[0]["spec"]["replicas"] == 3


async def test_rerun_after_failure(
    pipeline: ReleasePipeline, registry: FakeRegistry, cluster: FakeCluster
) -> None:
    """Test a second run of the same pipeline starts from an empty report."""
    registry.failures["registry.example.com/web:latest"] = 1
    with pytest.raises(StageFailedError, match="Stage 'publish' failed"):
        await pipeline.run("abc123")
    failed_report = pipeline.report
    assert failed_report.failed_stage == Stage.PUBLISH

    cluster.states = [READY]
    report = await pipeline.run("abc123")
    assert report is not failed_report
    assert report.succeeded
    assert report.failed_stage is None
    assert report.error is None
    assert report.completed == [
        Stage.BUILD,
        Stage.TAG,
        Stage.PUBLISH,
        Stage.RENDER,
        Stage.ROLLOUT,
    ]
    assert report.publish is not None
    assert not report.publish.failed
    assert failed_report.failed_stage == Stage.PUBLISH
