"""Map repository URLs such as ``s3://bucket/releases`` onto bucket and key prefix."""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlparse

from .errors import ConfigurationError

__all__ = ["ObjectRef", "parse_repo_url"]


@dataclass(frozen=True)
class ObjectRef:
    """Storage container and key prefix derived from a repository URL."""

    container: str
    key_prefix: str

    def key_for(self, name: str) -> str:
        """Return the object key for ``name`` below the prefix."""

        return f"{self.key_prefix}{name}"


def parse_repo_url(repo_url: str) -> ObjectRef:
    """Parse ``repo_url`` into an :class:`ObjectRef`.

    The URL host names the bucket. The path becomes the key prefix with a
    trailing slash enforced and the leading slash removed, so
    ``s3://bucket/releases`` and ``s3://bucket/releases/`` both yield
    ``releases/`` while ``s3://bucket`` yields an empty prefix.

    Raises:
        ConfigurationError: If the URL is empty, malformed, or has no host.
    """

    if not repo_url or not isinstance(repo_url, str):
        raise ConfigurationError("repo_url must be a non-empty URL string")
    try:
        parsed = urlparse(repo_url.strip())
    except ValueError as exc:
        raise ConfigurationError(f"Invalid repository URL: {repo_url!r}") from exc
    if not parsed.scheme or not parsed.hostname:
        raise ConfigurationError(f"Repository URL has no bucket host: {repo_url!r}")

    path = parsed.path or ""
    if not path.endswith("/"):
        path = f"{path}/"
    prefix = path[1:] if path.startswith("/") else path
    # netloc keeps the bucket's original case; hostname lowercases it
    container = parsed.netloc.rsplit("@", 1)[-1].split(":", 1)[0]
    return ObjectRef(container=container, key_prefix=prefix)
