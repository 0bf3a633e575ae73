"""Build cache keyed by the content of the build context.

Layers exported by the build backend are stored in a directory per context
hash, so that a rebuild of an unchanged source tree reuses them. Entries are
only ever added; eviction is left to whoever owns the cache directory.
"""

from collections.abc import Iterable, Generator
import fnmatch
import hashlib
import logging
from pathlib import Path
import tempfile

from slugify import slugify

_LOGGER = logging.getLogger(__name__)

DOCKERIGNORE = ".dockerignore"
CACHE_DIR_NAME = "kube-release-cache"
_CHUNK_SIZE = 65536


def read_ignore_patterns(context: Path) -> list[str]:
    """Return the patterns from the `.dockerignore` file in the context, if any."""
    ignore_file = context / DOCKERIGNORE
    if not ignore_file.exists():
        return []
    patterns = []
    with ignore_file.open() as fd:
        for line in fd.readlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            patterns.append(line.rstrip("/"))
    return patterns


def _is_excluded(rel_path: str, patterns: Iterable[str]) -> bool:
    """Return True if the path or any of its parent directories match a pattern."""
    parts = rel_path.split("/")
    prefixes = ["/".join(parts[: i + 1]) for i in range(len(parts))]
    for pattern in patterns:
        for prefix in prefixes:
            if fnmatch.fnmatch(prefix, pattern):
                return True
        # Bare names like `node_modules` match at any depth
        if "/" not in pattern and any(fnmatch.fnmatch(part, pattern) for part in parts):
            return True
    return False


def context_files(context: Path, excludes: Iterable[str] = ()) -> Generator[Path, None, None]:
    """Yield files in the build context in a stable order, skipping excludes."""
    patterns = list(excludes) + read_ignore_patterns(context)
    for path in sorted(context.rglob("*")):
        if not path.is_file():
            continue
        rel_path = path.relative_to(context).as_posix()
        if _is_excluded(rel_path, patterns):
            continue
        yield path


def hash_context(context: Path, excludes: Iterable[str] = ()) -> str:
    """Return a SHA-256 hex digest over the file names and contents of a context."""
    digest = hashlib.sha256()
    for path in context_files(context, excludes):
        digest.update(path.relative_to(context).as_posix().encode("utf-8"))
        digest.update(b"\0")
        with path.open("rb") as fd:
            while chunk := fd.read(_CHUNK_SIZE):
                digest.update(chunk)
        digest.update(b"\0")
    return digest.hexdigest()


class BuildCache:
    """Cache manager for build layers.

    The cache persists across runs and stores exported layers in a
    dedicated directory per build context hash.
    """

    def __init__(self, cache_dir: Path | None = None) -> None:
        """Initialize the cache manager."""
        self._cache_dir = cache_dir or Path(tempfile.gettempdir()) / CACHE_DIR_NAME
        self._cache_dir.mkdir(parents=True, exist_ok=True)

    @property
    def cache_dir(self) -> Path:
        """The root directory of the cache."""
        return self._cache_dir

    def get_path(self, name: str, context_hash: str) -> Path:
        """Get the cache directory for a context hash.

        Args:
            name: A readable name for the build, e.g. the repository
            context_hash: The hash of the build context

        Returns:
            Path: e.g. /kube-release-cache/my-app/ab1234567890abcd
        """
        slug = slugify(name, max_length=50, lowercase=True, separator="-") or "build"
        cache_path = self._cache_dir / slug / context_hash[:16]
        cache_path.mkdir(parents=True, exist_ok=True)
        return cache_path

    def has_layers(self, path: Path) -> bool:
        """Return True if a previous build exported layers to this path."""
        return (path / "index.json").exists()
