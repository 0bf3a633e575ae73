"""
.. include:: ../README.md
"""

__all__ = [
    "builder",
    "config",
    "manifest",
    "tags",
    "registry",
    "render",
    "rollout",
    "pipeline",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
