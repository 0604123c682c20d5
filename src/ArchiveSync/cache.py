# === NAVMAP v1 ===
# {
#   "module": "ArchiveSync.cache",
#   "purpose": "Idempotent archive download, locked extraction, and retention cleanup",
#   "sections": [
#     {"id": "stagepaths", "name": "StagePaths", "anchor": "class-stagepaths", "kind": "class"},
#     {"id": "stageresult", "name": "StageResult", "anchor": "class-stageresult", "kind": "class"},
#     {"id": "localcachemanager", "name": "LocalCacheManager", "anchor": "class-localcachemanager", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Local archive cache for the rsync-staged strategy.

On-disk layout per stage::

    <download_dir>/<stage>/<archive>          downloaded archive
    <download_dir>/<stage>/.<archive>.etag    etag of that archive
    <cache_dir>/<stage>/                      extracted tree
    <cache_dir>.<stage>.lock                  stage lock (download + extract)
    <cache_dir>.<stage>.release.lock          release lock (extract vs. rsync)

The archive is streamed into ``<archive>.part`` and renamed into place only
after the transfer completes; the etag sidecar is written only after the
rename, so a matching sidecar always describes a complete archive.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .archives import archive_kind, extract_command
from .errors import ConcurrentOperationError, ObjectNotFoundError
from .executors import CommandExecutor, LocalExecutor
from .locks import LockMode, locked_region
from .revisions import ResolutionContext
from .settings import ArchiveSyncSettings
from .storage import StorageGateway

__all__ = ["StagePaths", "StageResult", "LocalCacheManager"]

logger = logging.getLogger(__name__)

PART_SUFFIX = ".part"


@dataclass(frozen=True)
class StagePaths:
    """Download, cache, and lock locations for one stage."""

    download_dir: Path
    cache_dir: Path
    stage_lock: Path
    release_lock: Path

    @classmethod
    def for_stage(cls, download_root: Path, cache_root: Path, stage: str) -> "StagePaths":
        cache_root = Path(cache_root)
        return cls(
            download_dir=Path(download_root) / stage,
            cache_dir=cache_root / stage,
            stage_lock=Path(f"{cache_root}.{stage}.lock"),
            release_lock=Path(f"{cache_root}.{stage}.release.lock"),
        )

    def archive_file(self, basename: str) -> Path:
        return self.download_dir / basename

    def part_file(self, basename: str) -> Path:
        return self.download_dir / f"{basename}{PART_SUFFIX}"

    def etag_file(self, basename: str) -> Path:
        return self.download_dir / f".{basename}.etag"


@dataclass(frozen=True)
class StageResult:
    """Outcome of :meth:`LocalCacheManager.download_and_extract`."""

    archive_file: Path
    cache_dir: Path
    etag: str
    downloaded: bool


def _write_text_atomic(path: Path, text: str) -> None:
    temp_path = path.with_name(f"{path.name}.tmp")
    with temp_path.open("w", encoding="utf-8") as handle:
        handle.write(text)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(temp_path, path)


class LocalCacheManager:
    """Keep one up-to-date extracted copy of the resolved archive per stage."""

    def __init__(
        self,
        settings: ArchiveSyncSettings,
        gateway: StorageGateway,
        executor: Optional[CommandExecutor] = None,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.executor = executor or LocalExecutor()
        self.paths = StagePaths.for_stage(
            settings.local_download_dir, settings.local_cache_dir, settings.stage
        )

    def download_and_extract(self, context: ResolutionContext) -> StageResult:
        """Stage the resolved archive and extract it into the cache directory.

        Runs entirely under the exclusive stage lock; a concurrent invocation
        fails with :class:`ResourceBusyError` instead of waiting.

        Raises:
            ObjectNotFoundError: If ``context`` carries no object metadata.
            ConcurrentOperationError: If a ``.part`` download marker exists.
            ConfigurationError: If the archive suffix is not supported.
            TransferError: If the download or extraction command fails.
        """

        if context.metadata is None:
            raise ObjectNotFoundError(f"No such object: {context.label}")
        etag = context.metadata.etag
        archive = self.paths.archive_file(context.basename)
        archive_kind(archive)

        with locked_region(self.paths.stage_lock, LockMode.EXCLUSIVE, remove=True):
            downloaded = self._fetch_archive(context, etag)
            self._extract(archive)
        return StageResult(
            archive_file=archive,
            cache_dir=self.paths.cache_dir,
            etag=etag,
            downloaded=downloaded,
        )

    def is_fresh(self, basename: str, etag: str) -> bool:
        """Return ``True`` when the archive and a sidecar matching ``etag`` exist."""

        archive = self.paths.archive_file(basename)
        etag_file = self.paths.etag_file(basename)
        if not (archive.is_file() and etag_file.is_file()):
            return False
        return etag_file.read_text(encoding="utf-8") == etag

    def _fetch_archive(self, context: ResolutionContext, etag: str) -> bool:
        basename = context.basename
        archive = self.paths.archive_file(basename)
        part = self.paths.part_file(basename)
        etag_file = self.paths.etag_file(basename)

        if self.is_fresh(basename, etag):
            logger.info("%s (etag:%s) is found. download skipped.", archive, etag)
            # Reuse counts as recent use for retention ordering.
            os.utime(archive)
            return False

        if part.exists():
            raise ConcurrentOperationError(str(part))

        logger.info("Download %s to %s", context.label, archive)
        self.paths.download_dir.mkdir(parents=True, exist_ok=True)
        try:
            handle = part.open("xb")
        except FileExistsError:
            raise ConcurrentOperationError(str(part)) from None
        try:
            with handle:
                for chunk in self.gateway.get_object(
                    context.ref.container, context.revision.key, context.revision.version_id
                ):
                    handle.write(chunk)
                handle.flush()
                os.fsync(handle.fileno())
        except Exception:
            part.unlink(missing_ok=True)
            raise

        etag_file.unlink(missing_ok=True)
        os.replace(part, archive)
        _write_text_atomic(etag_file, etag)
        return True

    def _extract(self, archive: Path) -> None:
        cache_dir = self.paths.cache_dir
        command = extract_command(archive, cache_dir)
        with locked_region(self.paths.release_lock, LockMode.EXCLUSIVE):
            if cache_dir.exists():
                shutil.rmtree(cache_dir)
            cache_dir.mkdir(parents=True)
            logger.debug("extract %s into %s", archive, cache_dir)
            self.executor.execute(command)

    def retention_set(self) -> List[Path]:
        """Return cached downloads for the stage, oldest modification first."""

        download_dir = self.paths.download_dir
        if not download_dir.is_dir():
            return []
        entries = [
            entry
            for entry in download_dir.iterdir()
            if not entry.name.startswith(".") and not entry.name.endswith(PART_SUFFIX)
        ]
        return sorted(entries, key=lambda entry: (entry.stat().st_mtime, entry.name))

    def cleanup(self) -> List[Path]:
        """Delete cached downloads beyond ``keep_releases`` along with their sidecars.

        Returns:
            The removed archive paths, oldest first.
        """

        keep = self.settings.keep_releases
        entries = self.retention_set()
        if len(entries) < keep:
            return []
        removed = entries[: len(entries) - keep]
        for entry in removed:
            logger.info("Removing cached archive %s", entry)
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
            self.paths.etag_file(entry.name).unlink(missing_ok=True)
        return removed
