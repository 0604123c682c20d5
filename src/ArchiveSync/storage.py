# === NAVMAP v1 ===
# {
#   "module": "ArchiveSync.storage",
#   "purpose": "Object storage contract and the boto3-backed S3 gateway",
#   "sections": [
#     {"id": "objectsummary", "name": "ObjectSummary", "anchor": "class-objectsummary", "kind": "class"},
#     {"id": "objectversion", "name": "ObjectVersion", "anchor": "class-objectversion", "kind": "class"},
#     {"id": "storagegateway", "name": "StorageGateway", "anchor": "class-storagegateway", "kind": "class"},
#     {"id": "boto3storagegateway", "name": "Boto3StorageGateway", "anchor": "class-boto3storagegateway", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Object storage access for archive resolution and download.

Only three calls are needed: list objects under a prefix, list the versions
of one key, and stream an object's body.  :class:`StorageGateway` captures
that contract so the resolver and cache manager can be exercised against an
in-memory fake, while :class:`Boto3StorageGateway` talks to Amazon S3.
Authentication is entirely delegated to boto3's credential chain.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ObjectNotFoundError, TransferError

__all__ = [
    "ObjectSummary",
    "ObjectVersion",
    "StorageGateway",
    "Boto3StorageGateway",
]

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class ObjectSummary:
    """One entry of an object listing."""

    key: str
    etag: str
    last_modified: Optional[datetime] = None


@dataclass(frozen=True)
class ObjectVersion:
    """One entry of an object version listing."""

    key: str
    version_id: str
    etag: str
    is_latest: bool


class StorageGateway(Protocol):
    """Protocol describing the storage operations the synchronizer consumes."""

    def list_objects(self, container: str, prefix: str) -> Iterator[ObjectSummary]:
        """Yield every object under ``prefix``, following all result pages."""

    def list_object_versions(self, container: str, key: str) -> List[ObjectVersion]:
        """Return all versions recorded for objects matching ``key``."""

    def get_object(
        self, container: str, key: str, version_id: Optional[str] = None
    ) -> Iterator[bytes]:
        """Yield the body of ``key`` (optionally a pinned version) in chunks."""


def _error_code(exc: Exception) -> str:
    response = getattr(exc, "response", None) or {}
    return str(response.get("Error", {}).get("Code", ""))


class Boto3StorageGateway:
    """S3 implementation of :class:`StorageGateway` backed by a boto3 client."""

    def __init__(
        self,
        client_options: Optional[Mapping[str, Any]] = None,
        *,
        client: Any = None,
    ) -> None:
        """Initialise the gateway.

        Args:
            client_options: Keyword arguments forwarded to ``boto3.client("s3")``
                (region, endpoint URL, profile credentials, ...).
            client: Pre-built S3 client; skips boto3 client construction.
        """
        self.client_options: Dict[str, Any] = dict(client_options or {})
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("s3", **self.client_options)
        return self._client

    def _wrap(self, exc: Exception, action: str) -> TransferError:
        return TransferError(f"S3 {action} failed: {exc}", output=str(exc))

    def list_objects(self, container: str, prefix: str) -> Iterator[ObjectSummary]:
        paginator = self.client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=container, Prefix=prefix):
                for item in page.get("Contents", []) or []:
                    yield ObjectSummary(
                        key=item["Key"],
                        etag=item.get("ETag", ""),
                        last_modified=item.get("LastModified"),
                    )
        except (BotoCoreError, ClientError) as exc:
            raise self._wrap(exc, f"list s3://{container}/{prefix}") from exc

    def list_object_versions(self, container: str, key: str) -> List[ObjectVersion]:
        versions: List[ObjectVersion] = []
        paginator = self.client.get_paginator("list_object_versions")
        try:
            for page in paginator.paginate(Bucket=container, Prefix=key):
                for item in page.get("Versions", []) or []:
                    versions.append(
                        ObjectVersion(
                            key=item["Key"],
                            version_id=str(item.get("VersionId", "null")),
                            etag=item.get("ETag", ""),
                            is_latest=bool(item.get("IsLatest", False)),
                        )
                    )
        except (BotoCoreError, ClientError) as exc:
            raise self._wrap(exc, f"list versions of s3://{container}/{key}") from exc
        return versions

    def get_object(
        self, container: str, key: str, version_id: Optional[str] = None
    ) -> Iterator[bytes]:
        params: Dict[str, Any] = {"Bucket": container, "Key": key}
        if version_id:
            params["VersionId"] = version_id
        logger.debug("s3 get-object bucket=%s key=%s version=%s", container, key, version_id)
        try:
            response = self.client.get_object(**params)
            body = response["Body"]
            try:
                for chunk in body.iter_chunks(chunk_size=_CHUNK_SIZE):
                    if chunk:
                        yield chunk
            finally:
                body.close()
        except ClientError as exc:
            if _error_code(exc) in {"NoSuchKey", "NoSuchVersion", "404"}:
                raise ObjectNotFoundError(f"No such object: s3://{container}/{key}") from exc
            raise self._wrap(exc, f"get s3://{container}/{key}") from exc
        except BotoCoreError as exc:
            raise self._wrap(exc, f"get s3://{container}/{key}") from exc
