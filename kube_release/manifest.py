"""Data model for a release run.

These objects are passed from one pipeline stage to the next: a `BuildSpec`
produces an `ImageArtifact`, which is published under a `TagSet` and rolled
out to a `DeploymentTarget` while the `RolloutStatus` is tracked.
"""

from dataclasses import dataclass, field
import datetime
from enum import StrEnum
import logging
from pathlib import Path
import re
from typing import Any

from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_decode, yaml_encode
from mashumaro.config import BaseConfig

from .exceptions import InputException, PublishFailure, RolloutStateError

__all__ = [
    "BuildSpec",
    "ImageArtifact",
    "TagSet",
    "ResourceBounds",
    "Probe",
    "DeploymentTarget",
    "DeploymentState",
    "RolloutPhase",
    "RolloutStatus",
    "PublishResult",
    "PublishReport",
]

_LOGGER = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"
DEFAULT_PLATFORM = "linux/amd64"
DEFAULT_CONTAINER_PORT = 3000
DEFAULT_SERVICE_PORT = 80

# Valid OCI distribution tag
TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


class BaseManifest(DataClassDictMixin):
    """Base class for all serializable model objects."""

    @classmethod
    def parse_yaml(cls, content: str) -> Any:
        """Parse a serialized object."""
        return yaml_decode(content, cls)

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True)
class BuildSpec(BaseManifest):
    """Inputs to a container image build."""

    context: Path
    """The source directory used as the build context."""

    dockerfile: str = "Dockerfile"
    """Path to the Dockerfile relative to the context."""

    excludes: tuple[str, ...] = ()
    """Glob patterns excluded from the build context."""

    platforms: tuple[str, ...] = (DEFAULT_PLATFORM,)
    """Target platforms e.g. `linux/amd64`."""

    build_args: dict[str, str] = field(default_factory=dict)
    """Values passed as `--build-arg`."""

    cache: bool = True
    """Export layers to the build cache and reuse them on later builds."""

    @property
    def dockerfile_path(self) -> Path:
        """Return the full path to the Dockerfile."""
        return self.context / self.dockerfile


@dataclass(frozen=True)
class ImageArtifact(BaseManifest):
    """A built, content-addressed container image."""

    digest: str
    """The image digest e.g. `sha256:abc...`."""

    size: int
    """Image size in bytes."""

    created_at: datetime.datetime
    """When the image was created."""

    @property
    def short_digest(self) -> str:
        """Return an abbreviated digest for log messages."""
        _, _, value = self.digest.partition(":")
        return (value or self.digest)[:12]


@dataclass(frozen=True)
class TagSet(BaseManifest):
    """Ordered tags for one published image."""

    repository: str
    """The image repository e.g. `registry.example.com/app`."""

    tags: tuple[str, ...]
    """Tags in publish order, the first one is the primary tag."""

    def __post_init__(self) -> None:
        """Validate the tag invariants."""
        if not self.repository:
            raise InputException("TagSet requires a repository")
        if not self.tags:
            raise InputException("TagSet requires at least one tag")
        if len(set(self.tags)) != len(self.tags):
            raise InputException(f"TagSet contains duplicate tags: {self.tags}")
        for tag in self.tags:
            if not TAG_RE.match(tag):
                raise InputException(f"Invalid image tag '{tag}'")

    @property
    def primary(self) -> str:
        """The tag used when referencing the image from manifests."""
        return self.tags[0]

    def reference(self, tag: str) -> str:
        """Return the full image reference for a tag."""
        return f"{self.repository}:{tag}"

    @property
    def references(self) -> list[str]:
        """Full image references for all tags."""
        return [self.reference(tag) for tag in self.tags]


@dataclass(frozen=True)
class ResourceBounds(BaseManifest):
    """CPU and memory requests and limits for the application container."""

    cpu_request: str = "100m"
    memory_request: str = "128Mi"
    cpu_limit: str = "500m"
    memory_limit: str = "512Mi"


@dataclass(frozen=True)
class Probe(BaseManifest):
    """An HTTP health check performed by the cluster."""

    path: str = "/"
    initial_delay: int = 10
    period: int = 10
    timeout: int = 5
    failure_threshold: int = 3

    def __post_init__(self) -> None:
        """Validate probe timing."""
        if self.initial_delay < 0:
            raise InputException(f"Probe initial_delay must be >= 0: {self}")
        for name in ("period", "timeout", "failure_threshold"):
            if getattr(self, name) < 1:
                raise InputException(f"Probe {name} must be >= 1: {self}")

    def substitutions(self, prefix: str) -> dict[str, str]:
        """Return template values for this probe."""
        return {
            f"{prefix}_PATH": self.path,
            f"{prefix}_INITIAL_DELAY": str(self.initial_delay),
            f"{prefix}_PERIOD": str(self.period),
            f"{prefix}_TIMEOUT": str(self.timeout),
            f"{prefix}_FAILURE_THRESHOLD": str(self.failure_threshold),
        }


@dataclass(frozen=True)
class DeploymentTarget(BaseManifest):
    """Where and how the service is deployed in the cluster."""

    name: str
    """Name of the Deployment and Service."""

    namespace: str = DEFAULT_NAMESPACE
    context: str | None = None
    """The kubeconfig context of the cluster, or the current context."""

    replicas: int = 1
    container_port: int = DEFAULT_CONTAINER_PORT
    service_port: int = DEFAULT_SERVICE_PORT
    resources: ResourceBounds = field(default_factory=ResourceBounds)
    liveness: Probe = field(default_factory=lambda: Probe(initial_delay=30))
    readiness: Probe = field(default_factory=lambda: Probe(initial_delay=5, period=5))

    def __post_init__(self) -> None:
        """Validate the target."""
        if not self.name:
            raise InputException("DeploymentTarget requires a name")
        if self.replicas < 0:
            raise InputException(f"Invalid replica count {self.replicas}")
        for port in (self.container_port, self.service_port):
            if not 0 < port < 65536:
                raise InputException(f"Invalid port {port}")

    def substitutions(self) -> dict[str, str]:
        """Return the values used to render the manifest templates."""
        values = {
            "APP_NAME": self.name,
            "NAMESPACE": self.namespace,
            "REPLICAS": str(self.replicas),
            "CONTAINER_PORT": str(self.container_port),
            "SERVICE_PORT": str(self.service_port),
            "CPU_REQUEST": self.resources.cpu_request,
            "MEMORY_REQUEST": self.resources.memory_request,
            "CPU_LIMIT": self.resources.cpu_limit,
            "MEMORY_LIMIT": self.resources.memory_limit,
        }
        values.update(self.liveness.substitutions("LIVENESS"))
        values.update(self.readiness.substitutions("READINESS"))
        return values


@dataclass
class DeploymentState:
    """A snapshot of a Deployment read from the cluster."""

    desired: int
    ready: int = 0
    updated: int = 0
    available: int = 0
    generation: int = 0
    observed_generation: int = 0
    failure: str | None = None
    """A permanent error reported by the cluster, if any."""

    @property
    def is_current(self) -> bool:
        """Return True when the controller has observed the latest spec."""
        return self.observed_generation >= self.generation

    @property
    def is_ready(self) -> bool:
        """Return True if all desired replicas are updated and ready."""
        return (
            self.is_current
            and self.ready == self.desired
            and self.updated >= self.desired
        )


class RolloutPhase(StrEnum):
    """Lifecycle of a rollout."""

    PENDING = "Pending"
    PROGRESSING = "Progressing"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"

    @property
    def terminal(self) -> bool:
        """Return True if no further transitions are allowed."""
        return self in TERMINAL_PHASES


TERMINAL_PHASES = {RolloutPhase.SUCCEEDED, RolloutPhase.FAILED, RolloutPhase.TIMED_OUT}


@dataclass
class RolloutStatus(BaseManifest):
    """Current vs. desired ready replicas of a rollout."""

    desired: int
    ready: int = 0
    phase: RolloutPhase = RolloutPhase.PENDING
    message: str | None = None

    def _check_mutable(self) -> None:
        if self.phase.terminal:
            raise RolloutStateError(f"Rollout status is already {self.phase}")

    def observe(self, ready: int, desired: int) -> None:
        """Record replica counts from the cluster, moving to Progressing."""
        self._check_mutable()
        self.ready = ready
        self.desired = desired
        self.phase = RolloutPhase.PROGRESSING

    def succeed(self) -> None:
        """Mark the rollout as healthy."""
        self._check_mutable()
        self.phase = RolloutPhase.SUCCEEDED
        self.message = f"{self.ready}/{self.desired} replicas ready"

    def fail(self, message: str) -> None:
        """Mark the rollout as permanently failed."""
        self._check_mutable()
        self.phase = RolloutPhase.FAILED
        self.message = message

    def time_out(self, message: str) -> None:
        """Mark the rollout as not healthy before the deadline."""
        self._check_mutable()
        self.phase = RolloutPhase.TIMED_OUT
        self.message = message

    def __str__(self) -> str:
        """Return a human readable status."""
        result = f"{self.phase} ({self.ready}/{self.desired} ready)"
        if self.message and self.phase.terminal:
            result += f": {self.message}"
        return result


@dataclass
class PublishResult(BaseManifest):
    """Outcome of pushing a single tag."""

    tag: str
    reference: str
    success: bool
    attempts: int = 1
    error: str | None = None


@dataclass
class PublishReport(BaseManifest):
    """Outcome of publishing all tags of an image."""

    results: list[PublishResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[PublishResult]:
        """Results for tags that were pushed."""
        return [result for result in self.results if result.success]

    @property
    def failed(self) -> list[PublishResult]:
        """Results for tags that could not be pushed."""
        return [result for result in self.results if not result.success]

    @property
    def ok(self) -> bool:
        """Return True if every tag was pushed."""
        return not self.failed

    def raise_for_failures(self) -> None:
        """Raise PublishFailure if any tag could not be pushed."""
        if not (failed := self.failed):
            return
        tags = [result.tag for result in failed]
        details = "; ".join(f"{result.reference}: {result.error}" for result in failed)
        raise PublishFailure(
            f"Failed to publish {len(failed)} of {len(self.results)} tags: {details}",
            failed_tags=tags,
        )
