"""Test fixtures for kube-release."""

import datetime
from pathlib import Path
from typing import Any

import pytest

from kube_release.builder import BuildBackend
from kube_release.cache import BuildCache
from kube_release.cluster import Cluster
from kube_release.exceptions import CommandException
from kube_release.manifest import BuildSpec, DeploymentState, ImageArtifact
from kube_release.registry import Registry, RegistryCredentials

APP_DIR = Path("tests/testdata/app")
DIGEST = "sha256:" + "d" * 64
CREATED_AT = datetime.datetime(2024, 1, 2, 3, 4, 5, tzinfo=datetime.timezone.utc)


class FakeBackend(BuildBackend):
    """Build backend that records builds and returns a fixed artifact."""

    def __init__(self) -> None:
        self.builds: list[tuple[BuildSpec, Path | None, Path | None]] = []
        self.error: Exception | None = None

    async def build(
        self, spec: BuildSpec, cache_from: Path | None, cache_to: Path | None
    ) -> ImageArtifact:
        self.builds.append((spec, cache_from, cache_to))
        if self.error:
            raise self.error
        return ImageArtifact(digest=DIGEST, size=1024, created_at=CREATED_AT)


class FakeRegistry(Registry):
    """Registry that records pushes and fails the configured references."""

    def __init__(self) -> None:
        self.pushed: list[str] = []
        self.logins: list[tuple[str, RegistryCredentials]] = []
        self.failures: dict[str, int] = {}
        """Number of times a push of each reference should fail."""

    async def login(self, host: str, credentials: RegistryCredentials) -> None:
        self.logins.append((host, credentials))

    async def push(self, artifact: ImageArtifact, reference: str) -> None:
        if self.failures.get(reference, 0) > 0:
            self.failures[reference] -= 1
            raise CommandException(f"push of {reference} denied")
        self.pushed.append(reference)


class FakeCluster(Cluster):
    """Cluster that replays a sequence of Deployment states.

    The last state is repeated once the sequence is exhausted.
    """

    def __init__(self) -> None:
        self.applied: list[dict[str, Any]] = []
        self.states: list[DeploymentState | Exception] = []
        self.polls = 0

    async def apply(self, documents: list[dict[str, Any]]) -> None:
        self.applied.extend(documents)

    async def get_deployment_state(self, namespace: str, name: str) -> DeploymentState:
        index = min(self.polls, len(self.states) - 1)
        self.polls += 1
        state = self.states[index]
        if isinstance(state, Exception):
            raise state
        return state


@pytest.fixture(name="app_dir")
def app_dir_fixture() -> Path:
    """Directory of a trivial web app with release configuration."""
    return APP_DIR


@pytest.fixture(name="build_cache")
def build_cache_fixture(tmp_path: Path) -> BuildCache:
    """A build cache in a temporary directory."""
    return BuildCache(tmp_path / "cache")


@pytest.fixture(name="backend")
def backend_fixture() -> FakeBackend:
    """A fake build backend."""
    return FakeBackend()


@pytest.fixture(name="registry")
def registry_fixture() -> FakeRegistry:
    """A fake registry."""
    return FakeRegistry()


@pytest.fixture(name="cluster")
def cluster_fixture() -> FakeCluster:
    """A fake cluster."""
    return FakeCluster()


@pytest.fixture(name="artifact")
def artifact_fixture() -> ImageArtifact:
    """The artifact produced by the fake build backend."""
    return ImageArtifact(digest=DIGEST, size=1024, created_at=CREATED_AT)
