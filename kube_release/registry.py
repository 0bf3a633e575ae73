"""Library for publishing a built image to a container registry.

Every tag is pushed independently and concurrently. A failure to push one tag
does not affect the others and nothing already pushed is rolled back; the
resulting `PublishReport` tells the caller exactly which tags made it:
```python
from kube_release.registry import RegistryPublisher

publisher = RegistryPublisher()
report = await publisher.publish(artifact, tag_set, credentials)
report.raise_for_failures()
```
"""

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass, field
import logging
import os
from collections.abc import Mapping

from . import command
from .command import Command
from .exceptions import CommandException, InputException, PublishFailure
from .manifest import ImageArtifact, PublishReport, PublishResult, TagSet

__all__ = [
    "RegistryCredentials",
    "Registry",
    "DockerRegistry",
    "RegistryPublisher",
]

_LOGGER = logging.getLogger(__name__)

DOCKER_BIN = "docker"
PUSH_TIMEOUT = 600.0
DEFAULT_RETRIES = 2
DEFAULT_BACKOFF = 2.0


@dataclass(frozen=True)
class RegistryCredentials:
    """Credentials used to authenticate with the registry."""

    username: str
    password: str = field(repr=False)

    @classmethod
    def from_env(
        cls,
        username_env: str,
        password_env: str,
        env: Mapping[str, str] | None = None,
    ) -> "RegistryCredentials | None":
        """Load credentials from the environment, or None if not set."""
        env = os.environ if env is None else env
        username = env.get(username_env)
        password = env.get(password_env)
        if not username and not password:
            return None
        if not username or not password:
            raise InputException(
                f"Registry credentials require both {username_env} and {password_env}"
            )
        return cls(username=username, password=password)


def registry_host(repository: str) -> str:
    """Return the registry host of a repository e.g. `ghcr.io`."""
    first, sep, _ = repository.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first
    return "docker.io"


class Registry(ABC):
    """An external container registry."""

    @abstractmethod
    async def login(self, host: str, credentials: RegistryCredentials) -> None:
        """Authenticate with the registry."""

    @abstractmethod
    async def push(self, artifact: ImageArtifact, reference: str) -> None:
        """Push the artifact under the full image reference."""


class DockerRegistry(Registry):
    """Registry client using the docker command line."""

    def __init__(self, timeout: float = PUSH_TIMEOUT) -> None:
        """Initialize DockerRegistry."""
        self._timeout = timeout

    async def login(self, host: str, credentials: RegistryCredentials) -> None:
        """Log in with the password passed on stdin."""
        cmd = Command(
            [DOCKER_BIN, "login", host, "--username", credentials.username, "--password-stdin"]
        )
        try:
            await command.run(cmd, stdin=credentials.password.encode("utf-8"))
        except CommandException as err:
            raise PublishFailure(f"Unable to log in to {host}: {err}") from err

    async def push(self, artifact: ImageArtifact, reference: str) -> None:
        """Tag the local image and push it."""
        await command.run(Command([DOCKER_BIN, "tag", artifact.digest, reference]))
        await command.run(
            Command([DOCKER_BIN, "push", reference], timeout=self._timeout)
        )


class RegistryPublisher:
    """Pushes an ImageArtifact under every tag of a TagSet."""

    def __init__(
        self,
        registry: Registry | None = None,
        retries: int = DEFAULT_RETRIES,
        backoff: float = DEFAULT_BACKOFF,
    ) -> None:
        """Initialize RegistryPublisher."""
        self._registry = registry or DockerRegistry()
        self._retries = retries
        self._backoff = backoff

    async def _publish_tag(
        self, artifact: ImageArtifact, tag_set: TagSet, tag: str
    ) -> PublishResult:
        reference = tag_set.reference(tag)
        attempts = 0
        error: str | None = None
        while attempts <= self._retries:
            attempts += 1
            try:
                await self._registry.push(artifact, reference)
            except (CommandException, PublishFailure) as err:
                error = str(err)
                _LOGGER.warning(
                    "Push of %s failed (attempt %d/%d): %s",
                    reference,
                    attempts,
                    self._retries + 1,
                    err,
                )
                if attempts <= self._retries:
                    await asyncio.sleep(self._backoff)
                continue
            _LOGGER.info("Pushed %s", reference)
            return PublishResult(tag=tag, reference=reference, success=True, attempts=attempts)
        return PublishResult(
            tag=tag, reference=reference, success=False, attempts=attempts, error=error
        )

    async def publish(
        self,
        artifact: ImageArtifact,
        tag_set: TagSet,
        credentials: RegistryCredentials | None = None,
    ) -> PublishReport:
        """Push all tags, returning a result for each one.

        A failed login raises PublishFailure before any tag is pushed. Failed
        pushes are reported in the result and never raise.
        """
        if credentials:
            host = registry_host(tag_set.repository)
            _LOGGER.info("Logging in to %s as %s", host, credentials.username)
            await self._registry.login(host, credentials)
        results = await asyncio.gather(
            *(self._publish_tag(artifact, tag_set, tag) for tag in tag_set.tags)
        )
        return PublishReport(results=list(results))
