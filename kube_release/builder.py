"""Library for building container images from a local source tree.

The image is built with `docker buildx build` and loaded into the local image
store, where the registry publisher picks it up by digest:
```python
from kube_release.builder import ImageBuilder
from kube_release.manifest import BuildSpec

builder = ImageBuilder()
artifact = await builder.build(BuildSpec(context=Path("app")), name="web")
print(f"Built {artifact.digest} ({artifact.size} bytes)")
```

Exported build layers are cached per build context hash, see `cache.BuildCache`.
"""

from abc import ABC, abstractmethod
import asyncio
import datetime
import json
import logging
from pathlib import Path
import re
import tempfile

from . import command
from .cache import BuildCache, hash_context
from .command import Command
from .exceptions import BuildFailure, CommandException
from .manifest import BuildSpec, ImageArtifact

__all__ = [
    "BuildBackend",
    "DockerBuildx",
    "ImageBuilder",
]

_LOGGER = logging.getLogger(__name__)

DOCKER_BIN = "docker"
BUILD_TIMEOUT = 1800.0
DOCKER_DRIVER = "docker"
CONTAINERD_SNAPSHOTTER = "io.containerd.snapshotter"

# Docker reports creation times with nanosecond precision
_FRACTION_RE = re.compile(r"\.(\d{6})\d*")


def parse_timestamp(value: str) -> datetime.datetime:
    """Parse an RFC 3339 timestamp as reported by the container runtime."""
    value = _FRACTION_RE.sub(r".\1", value.strip())
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        result = datetime.datetime.fromisoformat(value)
    except ValueError as err:
        raise BuildFailure(f"Unable to parse image creation time '{value}'") from err
    if result.tzinfo is None:
        result = result.replace(tzinfo=datetime.timezone.utc)
    return result


class BuildBackend(ABC):
    """An external container build system."""

    @abstractmethod
    async def build(
        self, spec: BuildSpec, cache_from: Path | None, cache_to: Path | None
    ) -> ImageArtifact:
        """Build the image and return the resulting artifact."""


class DockerBuildx(BuildBackend):
    """Build backend using `docker buildx`."""

    def __init__(self, timeout: float = BUILD_TIMEOUT) -> None:
        """Initialize DockerBuildx."""
        self._timeout = timeout
        self._cache_export: bool | None = None

    async def _detect_cache_export(self) -> bool:
        try:
            out = await command.run(Command([DOCKER_BIN, "buildx", "inspect"]))
        except CommandException as err:
            _LOGGER.warning("Unable to inspect the buildx builder: %s", err)
            return False
        driver = None
        for line in out.splitlines():
            key, _, value = line.partition(":")
            if key.strip() == "Driver":
                driver = value.strip()
                break
        if driver is None:
            _LOGGER.warning("Unable to find the buildx driver in: %s", out)
            return False
        if driver != DOCKER_DRIVER:
            return True
        # The docker driver can only export with the containerd image store
        try:
            out = await command.run(
                Command([DOCKER_BIN, "info", "--format", "{{json .DriverStatus}}"])
            )
        except CommandException as err:
            _LOGGER.warning("Unable to read docker storage driver: %s", err)
            return False
        return CONTAINERD_SNAPSHOTTER in out

    async def supports_cache_export(self) -> bool:
        """Return True if the active builder can export layers to a local cache."""
        if self._cache_export is None:
            self._cache_export = await self._detect_cache_export()
            _LOGGER.debug("Build cache export supported: %s", self._cache_export)
        return self._cache_export

    def build_args(
        self,
        spec: BuildSpec,
        iidfile: Path,
        cache_from: Path | None,
        cache_to: Path | None,
    ) -> list[str]:
        """Return the command line for building the spec."""
        args = [
            DOCKER_BIN,
            "buildx",
            "build",
            "--file",
            str(spec.dockerfile_path),
            "--iidfile",
            str(iidfile),
            "--load",
        ]
        if spec.platforms:
            args.extend(["--platform", ",".join(spec.platforms)])
        for key, value in sorted(spec.build_args.items()):
            args.extend(["--build-arg", f"{key}={value}"])
        if cache_from:
            args.extend(["--cache-from", f"type=local,src={cache_from}"])
        if cache_to:
            args.extend(["--cache-to", f"type=local,dest={cache_to},mode=max"])
        args.append(str(spec.context))
        return args

    async def build(
        self, spec: BuildSpec, cache_from: Path | None, cache_to: Path | None
    ) -> ImageArtifact:
        """Build the image and inspect the result."""
        if (cache_from or cache_to) and not await self.supports_cache_export():
            _LOGGER.warning(
                "The buildx driver can't export a local cache, building without it"
            )
            cache_from = cache_to = None
        with tempfile.TemporaryDirectory() as tmp_dir:
            iidfile = Path(tmp_dir) / "iid"
            cmd = Command(
                self.build_args(spec, iidfile, cache_from, cache_to),
                timeout=self._timeout,
            )
            try:
                await command.run(cmd)
            except CommandException as err:
                raise BuildFailure(
                    f"Failed to build image from {spec.context}", output=str(err)
                ) from err
            if not iidfile.exists() or not (digest := iidfile.read_text().strip()):
                raise BuildFailure(f"Build of {spec.context} produced no image id")
        return await self.inspect(digest)

    async def inspect(self, digest: str) -> ImageArtifact:
        """Read the size and creation time of an image in the local store."""
        cmd = Command([DOCKER_BIN, "image", "inspect", "--format", "{{json .}}", digest])
        try:
            out = await command.run(cmd)
        except CommandException as err:
            raise BuildFailure(f"Unable to inspect image {digest}", output=str(err)) from err
        try:
            info = json.loads(out)
        except json.JSONDecodeError as err:
            raise BuildFailure(f"Unable to parse image metadata for {digest}: {err}") from err
        if not isinstance(info, dict) or not (created := info.get("Created")):
            raise BuildFailure(f"Image metadata for {digest} has no creation time")
        return ImageArtifact(
            digest=info.get("Id") or digest,
            size=int(info.get("Size", 0)),
            created_at=parse_timestamp(created),
        )


class ImageBuilder:
    """Builds a BuildSpec into an ImageArtifact, reusing cached layers."""

    def __init__(
        self, backend: BuildBackend | None = None, cache: BuildCache | None = None
    ) -> None:
        """Initialize ImageBuilder."""
        self._backend = backend or DockerBuildx()
        self._cache = cache or BuildCache()

    async def build(self, spec: BuildSpec, name: str) -> ImageArtifact:
        """Build the image for the spec.

        Raises BuildFailure with the captured diagnostic output of the backend.
        """
        if not spec.context.is_dir():
            raise BuildFailure(f"Build context {spec.context} is not a directory")
        if not spec.dockerfile_path.is_file():
            raise BuildFailure(f"Dockerfile not found: {spec.dockerfile_path}")

        if not spec.cache:
            _LOGGER.info("Building %s from %s (cache disabled)", name, spec.context)
            artifact = await self._backend.build(spec, cache_from=None, cache_to=None)
            _LOGGER.info("Built image %s (%d bytes)", artifact.short_digest, artifact.size)
            return artifact

        context_hash = await asyncio.to_thread(hash_context, spec.context, spec.excludes)
        cache_path = self._cache.get_path(name, context_hash)
        cache_from = cache_path if self._cache.has_layers(cache_path) else None
        _LOGGER.info(
            "Building %s from %s (context %s, cache %s)",
            name,
            spec.context,
            context_hash[:12],
            "hit" if cache_from else "miss",
        )
        artifact = await self._backend.build(spec, cache_from=cache_from, cache_to=cache_path)
        _LOGGER.info("Built image %s (%d bytes)", artifact.short_digest, artifact.size)
        return artifact
