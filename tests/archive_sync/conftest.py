"""Shared fixtures for the archive_sync test suite."""

from __future__ import annotations

import io
import tarfile
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

import pytest

from ArchiveSync.executors import TargetHost
from ArchiveSync.settings import ArchiveSyncSettings, build_settings
from ArchiveSync.storage import ObjectSummary, ObjectVersion


def make_tar_gz(files: Mapping[str, bytes]) -> bytes:
    """Return a gzip tarball containing ``files``."""

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, payload in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            info.mtime = 1_700_000_000
            archive.addfile(info, io.BytesIO(payload))
    return buffer.getvalue()


def make_zip(files: Mapping[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, payload in files.items():
            archive.writestr(name, payload)
    return buffer.getvalue()


class FakeGateway:
    """In-memory :class:`StorageGateway` recording every call."""

    def __init__(self, container: str = "my-bucket") -> None:
        self.container = container
        self.objects: Dict[str, Tuple[bytes, str, datetime]] = {}
        self.versions: Dict[str, List[ObjectVersion]] = {}
        self.get_calls: List[Tuple[str, str, Optional[str]]] = []
        self.list_calls: List[Tuple[str, str]] = []
        self.fail_after_chunks: Optional[int] = None

    def put(
        self,
        key: str,
        body: bytes,
        etag: str,
        *,
        modified: Optional[datetime] = None,
        version_id: Optional[str] = None,
    ) -> None:
        self.objects[key] = (body, etag, modified or datetime(2024, 1, 1, tzinfo=timezone.utc))
        history = self.versions.setdefault(key, [])
        history[:] = [
            ObjectVersion(key=v.key, version_id=v.version_id, etag=v.etag, is_latest=False)
            for v in history
        ]
        history.append(
            ObjectVersion(
                key=key,
                version_id=version_id or f"v{len(history) + 1}",
                etag=etag,
                is_latest=True,
            )
        )

    def list_objects(self, container: str, prefix: str) -> Iterator[ObjectSummary]:
        self.list_calls.append((container, prefix))
        for key in sorted(self.objects):
            if key.startswith(prefix):
                _, etag, modified = self.objects[key]
                yield ObjectSummary(key=key, etag=etag, last_modified=modified)

    def list_object_versions(self, container: str, key: str) -> List[ObjectVersion]:
        found: List[ObjectVersion] = []
        for name, history in sorted(self.versions.items()):
            if name.startswith(key):
                found.extend(history)
        return found

    def get_object(
        self, container: str, key: str, version_id: Optional[str] = None
    ) -> Iterator[bytes]:
        self.get_calls.append((container, key, version_id))
        body = self.objects[key][0]
        midpoint = max(len(body) // 2, 1)
        for index, chunk in enumerate((body[:midpoint], body[midpoint:])):
            if self.fail_after_chunks is not None and index >= self.fail_after_chunks:
                raise OSError("connection reset by peer")
            if chunk:
                yield chunk


class RecordingExecutor:
    """Executor double that records commands and replays canned results."""

    def __init__(self, target: Optional[TargetHost] = None) -> None:
        self.target = target or TargetHost.localhost()
        self.commands: List[str] = []
        self.messages: List[str] = []
        self.outputs: Dict[str, str] = {}
        self.failures: Dict[str, Exception] = {}
        self.test_results: Dict[str, bool] = {}

    def _lookup(self, table, command):
        for fragment, value in table.items():
            if fragment in command:
                return value
        return None

    def execute(self, command: str) -> str:
        self.commands.append(command)
        failure = self._lookup(self.failures, command)
        if failure is not None:
            raise failure
        return self._lookup(self.outputs, command) or ""

    def capture(self, command: str) -> str:
        return self.execute(command).strip()

    def test(self, command: str) -> bool:
        self.commands.append(command)
        return bool(self._lookup(self.test_results, command))

    def info(self, message: str) -> None:
        self.messages.append(message)


@pytest.fixture
def gateway() -> FakeGateway:
    fake = FakeGateway()
    fake.put("releases/app-1.tar.gz", make_tar_gz({"VERSION": b"1\n"}), '"a1"')
    fake.put(
        "releases/app-2.tar.gz",
        make_tar_gz({"VERSION": b"2\n", "lib/app.py": b"print('hi')\n"}),
        '"a2"',
    )
    return fake


@pytest.fixture
def settings(tmp_path: Path) -> ArchiveSyncSettings:
    return build_settings(
        {
            "repo_url": "s3://my-bucket/releases",
            "stage": "production",
            "deploy_to": str(tmp_path / "deploy"),
            "local_download_dir": str(tmp_path / "archives"),
            "local_cache_dir": str(tmp_path / "cache"),
            "keep_releases": 3,
        }
    )


@pytest.fixture
def tar_gz():
    """Factory building gzip tarballs from ``{name: bytes}`` mappings."""

    return make_tar_gz


@pytest.fixture
def zip_bytes():
    return make_zip


@pytest.fixture
def recording():
    """The :class:`RecordingExecutor` class, for tests that need several hosts."""

    return RecordingExecutor
