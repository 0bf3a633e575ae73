"""Configuration objects for kube-release.

A release is described by a declarative `release.yaml` file that is read once
at start-up and never modified:
```yaml
name: web
build:
  context: .
registry:
  repository: registry.example.com/web
deploy:
  replicas: 3
  container_port: 3000
```

Relative paths in the file are resolved against the directory holding it.
"""

from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import cast

import aiofiles
import yaml

from .exceptions import InputException
from .manifest import (
    BaseManifest,
    BuildSpec,
    DeploymentTarget,
    Probe,
    ResourceBounds,
    DEFAULT_CONTAINER_PORT,
    DEFAULT_NAMESPACE,
    DEFAULT_PLATFORM,
    DEFAULT_SERVICE_PORT,
)
from .registry import DEFAULT_RETRIES
from .rollout import DEFAULT_INTERVAL, DEFAULT_STABILITY_WINDOW, DEFAULT_TIMEOUT

__all__ = [
    "ReleaseConfig",
    "read_config",
]

_LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "release.yaml"


@dataclass
class BuildConfig(BaseManifest):
    """Configuration for the image build."""

    context: str = "."
    dockerfile: str = "Dockerfile"
    platforms: list[str] = field(default_factory=lambda: [DEFAULT_PLATFORM])
    excludes: list[str] = field(default_factory=list)
    build_args: dict[str, str] = field(default_factory=dict)
    cache: bool = True
    """Reuse layers of earlier builds, when the buildx driver supports it."""


@dataclass
class RegistryConfig(BaseManifest):
    """Configuration for publishing to the registry."""

    repository: str
    username_env: str = "REGISTRY_USERNAME"
    password_env: str = "REGISTRY_PASSWORD"
    latest: bool = True
    extra_tags: list[str] = field(default_factory=list)
    short_sha: int | None = None
    retries: int = DEFAULT_RETRIES


@dataclass
class DeployConfig(BaseManifest):
    """Configuration for the cluster deployment."""

    namespace: str = DEFAULT_NAMESPACE
    context: str | None = None
    replicas: int = 1
    container_port: int = DEFAULT_CONTAINER_PORT
    service_port: int = DEFAULT_SERVICE_PORT
    resources: ResourceBounds = field(default_factory=ResourceBounds)
    liveness: Probe = field(default_factory=lambda: Probe(initial_delay=30))
    readiness: Probe = field(default_factory=lambda: Probe(initial_delay=5, period=5))
    templates: list[str] = field(default_factory=list)
    """Template files, the built-in Deployment and Service are used if empty."""


@dataclass
class RolloutConfig(BaseManifest):
    """Configuration for watching the rollout."""

    interval: float = DEFAULT_INTERVAL
    timeout: float = DEFAULT_TIMEOUT
    stability_window: float = DEFAULT_STABILITY_WINDOW


@dataclass
class TriggerConfig(BaseManifest):
    """Configuration for when a release is triggered."""

    branch: str | None = None
    """Only release from this branch, or from any branch if unset."""


@dataclass
class ReleaseConfig(BaseManifest):
    """Top level configuration of a release."""

    name: str
    registry: RegistryConfig
    build: BuildConfig = field(default_factory=BuildConfig)
    deploy: DeployConfig = field(default_factory=DeployConfig)
    rollout: RolloutConfig = field(default_factory=RolloutConfig)
    trigger: TriggerConfig = field(default_factory=TriggerConfig)

    base_dir: Path = field(default=Path("."), metadata={"serialize": "omit"})
    """Directory that relative paths are resolved against."""

    def _resolve(self, path: str) -> Path:
        result = Path(path)
        if result.is_absolute():
            return result
        return self.base_dir / result

    def build_spec(self) -> BuildSpec:
        """Return the BuildSpec for this release."""
        return BuildSpec(
            context=self._resolve(self.build.context),
            dockerfile=self.build.dockerfile,
            excludes=tuple(self.build.excludes),
            platforms=tuple(self.build.platforms),
            build_args=dict(self.build.build_args),
            cache=self.build.cache,
        )

    def target(self) -> DeploymentTarget:
        """Return the DeploymentTarget for this release."""
        return DeploymentTarget(
            name=self.name,
            namespace=self.deploy.namespace,
            context=self.deploy.context,
            replicas=self.deploy.replicas,
            container_port=self.deploy.container_port,
            service_port=self.deploy.service_port,
            resources=self.deploy.resources,
            liveness=self.deploy.liveness,
            readiness=self.deploy.readiness,
        )

    @property
    def template_paths(self) -> list[Path]:
        """Resolved paths of the manifest templates."""
        return [self._resolve(path) for path in self.deploy.templates]


def parse_config(content: str, base_dir: Path = Path(".")) -> ReleaseConfig:
    """Parse the contents of a release configuration file."""
    if not content.strip():
        raise InputException("Release configuration is empty")
    try:
        config = cast(ReleaseConfig, ReleaseConfig.parse_yaml(content))
    except InputException:
        raise
    except (yaml.YAMLError, ValueError, LookupError, TypeError) as err:
        raise InputException(f"Invalid release configuration: {err}") from err
    config.base_dir = base_dir
    # Validate the derived objects early so errors point at the config file
    config.build_spec()
    config.target()
    return config


async def read_config(config_path: Path) -> ReleaseConfig:
    """Return the contents of a release configuration file."""
    try:
        async with aiofiles.open(str(config_path)) as config_file:
            content = await config_file.read()
    except FileNotFoundError as err:
        raise InputException(f"Release configuration not found: {config_path}") from err
    _LOGGER.debug("Read release configuration %s", config_path)
    return parse_config(content, base_dir=config_path.parent)
