# === NAVMAP v1 ===
# {
#   "module": "ArchiveSync.revisions",
#   "purpose": "Resolve the archive key, pinned version, and etag for a deploy run",
#   "sections": [
#     {"id": "revision", "name": "Revision", "anchor": "class-revision", "kind": "class"},
#     {"id": "objectmetadata", "name": "ObjectMetadata", "anchor": "class-objectmetadata", "kind": "class"},
#     {"id": "resolutioncontext", "name": "ResolutionContext", "anchor": "class-resolutioncontext", "kind": "class"},
#     {"id": "sort-presets", "name": "SORT_PRESETS", "anchor": "constant-sort-presets", "kind": "constant"},
#     {"id": "revisionresolver", "name": "RevisionResolver", "anchor": "class-revisionresolver", "kind": "class"},
#     {"id": "current-revision-label", "name": "current_revision_label", "anchor": "function-current-revision-label", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Revision resolution for archive deploys.

Responsibilities
----------------
- Turn a branch selector into an object key: ``latest`` (or an unset branch)
  picks the first object under the configured comparator, anything else is
  appended to the key prefix verbatim.
- Look up the etag/version of the chosen key for staleness checks.
- Bundle the results into a :class:`ResolutionContext` that is computed once
  per invocation and passed explicitly to the cache and strategies.

Design Notes
------------
- The default comparator orders keys in descending lexicographic order, so
  the release naming convention must encode recency in the key string
  (``app-20240101.tar.gz`` style). Callers that cannot uphold it should
  configure ``last_modified_desc`` or pass their own comparator.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Union

from .errors import ConfigurationError, ObjectNotFoundError
from .locator import ObjectRef
from .storage import ObjectSummary, StorageGateway

__all__ = [
    "Revision",
    "ObjectMetadata",
    "ResolutionContext",
    "Comparator",
    "SORT_PRESETS",
    "LATEST_SELECTORS",
    "resolve_comparator",
    "current_revision_label",
    "RevisionResolver",
]

logger = logging.getLogger(__name__)

Comparator = Callable[[ObjectSummary, ObjectSummary], int]

LATEST_SELECTORS = frozenset({"latest", "master"})

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Revision:
    """Exactly one object version: a key plus an optional pinned version id."""

    key: str
    version_id: Optional[str] = None


@dataclass(frozen=True)
class ObjectMetadata:
    """Change-detection metadata for one object version."""

    etag: str
    version_id: str
    is_latest: bool


@dataclass(frozen=True)
class ResolutionContext:
    """Everything resolved about the archive for the current invocation."""

    ref: ObjectRef
    revision: Revision
    metadata: Optional[ObjectMetadata] = None

    @property
    def label(self) -> str:
        return current_revision_label(self.revision)

    @property
    def basename(self) -> str:
        return self.revision.key.rsplit("/", 1)[-1]


def _cmp(left, right) -> int:
    return (left > right) - (left < right)


def _key_desc(a: ObjectSummary, b: ObjectSummary) -> int:
    return _cmp(b.key, a.key)


def _key_asc(a: ObjectSummary, b: ObjectSummary) -> int:
    return _cmp(a.key, b.key)


def _modified(summary: ObjectSummary) -> datetime:
    value = summary.last_modified
    if value is None:
        return _EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _last_modified_desc(a: ObjectSummary, b: ObjectSummary) -> int:
    return _cmp(_modified(b), _modified(a)) or _key_desc(a, b)


SORT_PRESETS: Dict[str, Comparator] = {
    "key_desc": _key_desc,
    "key_asc": _key_asc,
    "last_modified_desc": _last_modified_desc,
}


def resolve_comparator(sort: Union[str, Comparator, None]) -> Comparator:
    """Return the comparator named by ``sort`` or ``sort`` itself if callable."""

    if sort is None:
        return _key_desc
    if callable(sort):
        return sort
    try:
        return SORT_PRESETS[sort]
    except KeyError:
        raise ConfigurationError(
            f"Unknown sort {sort!r}; expected one of {sorted(SORT_PRESETS)}"
        ) from None


def current_revision_label(revision: Revision) -> str:
    """Return ``key`` or ``key?versionid=<id>`` for logs and revision records."""

    if revision.version_id:
        return f"{revision.key}?versionid={revision.version_id}"
    return revision.key


class RevisionResolver:
    """Resolve keys and version metadata against a :class:`StorageGateway`."""

    def __init__(
        self,
        gateway: StorageGateway,
        ref: ObjectRef,
        *,
        sort: Union[str, Comparator, None] = None,
    ) -> None:
        self.gateway = gateway
        self.ref = ref
        self.comparator = resolve_comparator(sort)

    def list_all_objects(self) -> List[ObjectSummary]:
        return list(self.gateway.list_objects(self.ref.container, self.ref.key_prefix))

    def latest_object_key(self) -> str:
        objects = self.list_all_objects()
        if not objects:
            raise ObjectNotFoundError(
                f"No objects under s3://{self.ref.container}/{self.ref.key_prefix}"
            )
        ordered = sorted(objects, key=functools.cmp_to_key(self.comparator))
        return ordered[0].key

    def resolve_key(self, branch: Optional[str] = None) -> str:
        """Return the archive key selected by ``branch``.

        ``None`` and ``latest`` list the prefix and take the first object under
        the comparator; any other selector is appended to the prefix without
        checking that it exists.
        """

        selector = (branch or "latest").strip()
        if selector in LATEST_SELECTORS:
            key = self.latest_object_key()
            logger.debug("resolved %s to %s", selector, key)
            return key
        return self.ref.key_for(selector)

    def resolve_metadata(
        self, key: str, version_id: Optional[str] = None
    ) -> Optional[ObjectMetadata]:
        """Return metadata for ``key``, or ``None`` when no version matches.

        The entry whose version id equals ``version_id`` wins when one is
        given; otherwise the entry flagged as latest.
        """

        for version in self.gateway.list_object_versions(self.ref.container, key):
            if version.key != key:
                continue
            if version_id is not None:
                matched = version.version_id == version_id
            else:
                matched = version.is_latest
            if matched:
                return ObjectMetadata(
                    etag=version.etag,
                    version_id=version.version_id,
                    is_latest=version.is_latest,
                )
        return None

    def resolve_context(
        self,
        branch: Optional[str] = None,
        version_id: Optional[str] = None,
        *,
        require_metadata: bool = True,
    ) -> ResolutionContext:
        """Resolve key and metadata once and freeze them for this invocation.

        Raises:
            ObjectNotFoundError: If ``require_metadata`` is set and the key or
                pinned version has no matching entry.
        """

        revision = Revision(key=self.resolve_key(branch), version_id=version_id)
        metadata = self.resolve_metadata(revision.key, version_id)
        if metadata is None and require_metadata:
            raise ObjectNotFoundError(f"No such object: {current_revision_label(revision)}")
        return ResolutionContext(ref=self.ref, revision=revision, metadata=metadata)
