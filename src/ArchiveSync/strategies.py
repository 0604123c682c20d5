# === NAVMAP v1 ===
# {
#   "module": "ArchiveSync.strategies",
#   "purpose": "Materialise release directories via rsync staging or direct remote fetch",
#   "sections": [
#     {"id": "propagationstrategy", "name": "PropagationStrategy", "anchor": "class-propagationstrategy", "kind": "class"},
#     {"id": "rsyncstagedstrategy", "name": "RsyncStagedStrategy", "anchor": "class-rsyncstagedstrategy", "kind": "class"},
#     {"id": "directstrategy", "name": "DirectStrategy", "anchor": "class-directstrategy", "kind": "class"},
#     {"id": "build-strategy", "name": "build_strategy", "anchor": "function-build-strategy", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Propagation strategies.

Both strategies leave the release directory holding exactly the extracted
contents of the resolved revision.  They differ only in where the bytes are
downloaded and where extraction happens:

``rsync``
    The deploy host downloads and extracts into its local cache
    (:class:`~ArchiveSync.cache.LocalCacheManager`), rsyncs the tree into a
    shared staging directory on each target, and copies it into the release
    directory there, optionally hard-linking unchanged files against the
    current release.

``direct``
    Each target downloads the archive itself with the storage CLI into a
    remote cache guarded by the same etag sidecar protocol, then extracts
    straight into the release directory.
"""

from __future__ import annotations

import abc
import logging
import posixpath
import shlex
from typing import Callable, Dict, Iterable, List, Optional, Type

from .archives import archive_kind, extract_command
from .cache import PART_SUFFIX, LocalCacheManager
from .errors import ConcurrentOperationError, ObjectNotFoundError, ResourceBusyError, TransferError
from .executors import CommandExecutor, LocalExecutor, TargetHost, executor_for
from .locks import LockMode, locked_region
from .revisions import ResolutionContext
from .settings import ArchiveSyncSettings
from .storage import StorageGateway

__all__ = [
    "ExecutorFactory",
    "PropagationStrategy",
    "RsyncStagedStrategy",
    "DirectStrategy",
    "STRATEGIES",
    "build_strategy",
]

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[TargetHost], CommandExecutor]

# Exit codes used by the remote download script.
REMOTE_BUSY_EXIT = 75
REMOTE_PART_EXIT = 76


class PropagationStrategy(abc.ABC):
    """Common contract: turn a resolved revision into release directories."""

    name: str = ""

    def __init__(
        self,
        settings: ArchiveSyncSettings,
        gateway: StorageGateway,
        *,
        executor_factory: ExecutorFactory = executor_for,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.executor_factory = executor_factory

    def check(self, targets: Iterable[TargetHost]) -> None:
        """Verify every target is reachable."""

        for target in targets:
            self.executor_factory(target).execute("echo 'check ssh'")

    def prepare(self, context: ResolutionContext) -> None:
        """Run once per deploy before any target is touched."""

    @abc.abstractmethod
    def materialize_release(
        self,
        context: ResolutionContext,
        target: TargetHost,
        release_path: str,
        current_path: Optional[str] = None,
    ) -> None:
        """Populate ``release_path`` on ``target`` with the resolved revision."""

    @abc.abstractmethod
    def cleanup(self, targets: Iterable[TargetHost]) -> None:
        """Trim cached downloads beyond ``keep_releases``."""

    def create_release(
        self,
        context: ResolutionContext,
        targets: Iterable[TargetHost],
        release_path: str,
        current_path: Optional[str] = None,
    ) -> None:
        hosts = list(targets)
        self.prepare(context)
        for target in hosts:
            self.materialize_release(context, target, release_path, current_path)
        self.cleanup(hosts)


class RsyncStagedStrategy(PropagationStrategy):
    """Download and extract locally, then rsync to each target."""

    name = "rsync"

    def __init__(
        self,
        settings: ArchiveSyncSettings,
        gateway: StorageGateway,
        *,
        executor_factory: ExecutorFactory = executor_for,
        local_executor: Optional[CommandExecutor] = None,
    ) -> None:
        super().__init__(settings, gateway, executor_factory=executor_factory)
        self.local = local_executor or LocalExecutor()
        self.cache = LocalCacheManager(settings, gateway, self.local)

    def prepare(self, context: ResolutionContext) -> None:
        self.cache.download_and_extract(context)

    def rsync_command(self, target: TargetHost) -> str:
        destination = self.settings.rsync_cache_path
        parts: List[str] = ["rsync"]
        parts.extend(shlex.quote(option) for option in self.settings.rsync_options)
        parts.append(shlex.quote(f"{self.cache.paths.cache_dir}/"))
        if target.is_local:
            parts.append("--no-compress")
            parts.append(shlex.quote(destination))
        else:
            ssh = [
                "ssh",
                target.ssh_key_option(),
                target.ssh_port_option(),
                *self.settings.rsync_ssh_options,
            ]
            parts.extend(["-e", shlex.quote(" ".join(item for item in ssh if item))])
            parts.append(shlex.quote(f"{target.login_user_at()}{target.hostname}:{destination}"))
        return " ".join(parts)

    def transfer_sources(self, target: TargetHost) -> None:
        """Push the locally extracted tree into the target's staging directory."""

        remote = self.executor_factory(target)
        remote.execute(f"mkdir -p {shlex.quote(self.settings.rsync_cache_path)}")
        command = self.rsync_command(target)
        with locked_region(self.cache.paths.release_lock, LockMode.SHARED):
            self.local.execute(command)

    def release(
        self, executor: CommandExecutor, release_path: str, current_path: Optional[str] = None
    ) -> None:
        """Copy the staging directory into ``release_path`` on the target."""

        release = release_path.rstrip("/")
        link_option = ""
        if self.settings.hardlink_release and current_path:
            current = executor.capture(f"readlink {shlex.quote(current_path)} || true")
            if current and current.rstrip("/") != release:
                link_option = f"--link-dest {shlex.quote(current)}"
        command = " ".join(
            part
            for part in (
                self.settings.rsync_copy,
                link_option,
                shlex.quote(f"{self.settings.rsync_cache_path}/"),
                shlex.quote(f"{release}/"),
            )
            if part
        )
        executor.execute(command)

    def materialize_release(
        self,
        context: ResolutionContext,
        target: TargetHost,
        release_path: str,
        current_path: Optional[str] = None,
    ) -> None:
        self.transfer_sources(target)
        self.release(self.executor_factory(target), release_path, current_path)

    def cleanup(self, targets: Iterable[TargetHost]) -> None:
        self.cache.cleanup()


class DirectStrategy(PropagationStrategy):
    """Have each target fetch and extract the archive itself."""

    name = "direct"

    def remote_stage_dir(self) -> str:
        return posixpath.join(self.settings.remote_cache_path, self.settings.stage)

    def remote_lock(self) -> str:
        return posixpath.join(self.settings.remote_cache_path, f"{self.settings.stage}.lock")

    def fetch_command(self, context: ResolutionContext, destination: str) -> str:
        """Return the storage CLI invocation writing the object to ``destination``."""

        parts = [
            self.settings.storage_cli,
            "s3api",
            "get-object",
            "--bucket",
            shlex.quote(context.ref.container),
            "--key",
            shlex.quote(context.revision.key),
        ]
        if context.revision.version_id:
            parts.extend(["--version-id", shlex.quote(context.revision.version_id)])
        region = self.settings.client_options.get("region_name")
        if region:
            parts.extend(["--region", shlex.quote(str(region))])
        endpoint = self.settings.client_options.get("endpoint_url")
        if endpoint:
            parts.extend(["--endpoint-url", shlex.quote(str(endpoint))])
        parts.append(shlex.quote(destination))
        return " ".join(parts)

    def download_script(self, context: ResolutionContext) -> str:
        """Return the remote script that mirrors the local etag/.part protocol."""

        if context.metadata is None:
            raise ObjectNotFoundError(f"No such object: {context.label}")
        stage_dir = self.remote_stage_dir()
        archive = posixpath.join(stage_dir, context.basename)
        part = f"{archive}{PART_SUFFIX}"
        etag_file = posixpath.join(stage_dir, f".{context.basename}.etag")
        q = shlex.quote
        etag = q(context.metadata.etag)
        return "\n".join(
            [
                "set -e",
                f"mkdir -p {q(stage_dir)}",
                f'if [ -f {q(archive)} ] && [ -f {q(etag_file)} ] && [ "$(cat {q(etag_file)})" = {etag} ]; then',
                f"  touch {q(archive)}",
                "  echo skipped",
                "else",
                f"  if [ -e {q(part)} ]; then echo {q(part + ' is found')} >&2; exit {REMOTE_PART_EXIT}; fi",
                f"  {self.fetch_command(context, part)} >/dev/null || {{ rm -f {q(part)}; exit 1; }}",
                f"  rm -f {q(etag_file)}",
                f"  mv {q(part)} {q(archive)}",
                f"  printf '%s' {etag} > {q(etag_file + '.tmp')}",
                f"  mv {q(etag_file + '.tmp')} {q(etag_file)}",
                "  echo downloaded",
                "fi",
            ]
        )

    def stage_remote(self, executor: CommandExecutor, context: ResolutionContext) -> bool:
        """Fetch the archive into the target's cache; return ``True`` if downloaded."""

        archive_kind(context.basename)
        lock = self.remote_lock()
        command = (
            f"mkdir -p {shlex.quote(self.settings.remote_cache_path)} && "
            f"flock -n -E {REMOTE_BUSY_EXIT} {shlex.quote(lock)} "
            f"-c {shlex.quote(self.download_script(context))}"
        )
        try:
            output = executor.capture(command)
        except TransferError as exc:
            if exc.returncode == REMOTE_BUSY_EXIT:
                raise ResourceBusyError(f"{executor.target}:{lock}") from exc
            if exc.returncode == REMOTE_PART_EXIT:
                part = posixpath.join(self.remote_stage_dir(), context.basename + PART_SUFFIX)
                raise ConcurrentOperationError(f"{executor.target}:{part}") from exc
            raise
        archive = posixpath.join(self.remote_stage_dir(), context.basename)
        downloaded = output.splitlines()[-1:] == ["downloaded"]
        if downloaded:
            executor.info(f"Download {context.label} to {archive}")
        else:
            executor.info(f"{archive} (etag:{context.metadata.etag}) is found. download skipped.")
        return downloaded

    def materialize_release(
        self,
        context: ResolutionContext,
        target: TargetHost,
        release_path: str,
        current_path: Optional[str] = None,
    ) -> None:
        executor = self.executor_factory(target)
        self.stage_remote(executor, context)
        archive = posixpath.join(self.remote_stage_dir(), context.basename)
        executor.execute(
            f"mkdir -p {shlex.quote(release_path)} && {extract_command(archive, release_path)}"
        )

    def cleanup(self, targets: Iterable[TargetHost]) -> None:
        stage_dir = self.remote_stage_dir()
        keep = self.settings.keep_releases
        for target in targets:
            executor = self.executor_factory(target)
            listing = executor.capture(f"ls -1tr {shlex.quote(stage_dir)} 2>/dev/null || true")
            entries = [
                line
                for line in listing.splitlines()
                if line and not line.startswith(".") and not line.endswith(PART_SUFFIX)
            ]
            if len(entries) < keep:
                continue
            doomed = entries[: len(entries) - keep]
            if not doomed:
                continue
            paths = []
            for name in doomed:
                paths.append(shlex.quote(posixpath.join(stage_dir, name)))
                paths.append(shlex.quote(posixpath.join(stage_dir, f".{name}.etag")))
            executor.info(f"Removing {len(doomed)} cached archive(s) from {stage_dir}")
            executor.execute(f"rm -rf {' '.join(paths)}")


STRATEGIES: Dict[str, Type[PropagationStrategy]] = {
    RsyncStagedStrategy.name: RsyncStagedStrategy,
    DirectStrategy.name: DirectStrategy,
}


def build_strategy(
    settings: ArchiveSyncSettings,
    gateway: StorageGateway,
    *,
    executor_factory: ExecutorFactory = executor_for,
    local_executor: Optional[CommandExecutor] = None,
) -> PropagationStrategy:
    """Instantiate the strategy named by ``settings.strategy``."""

    if settings.strategy == RsyncStagedStrategy.name:
        return RsyncStagedStrategy(
            settings,
            gateway,
            executor_factory=executor_factory,
            local_executor=local_executor,
        )
    return STRATEGIES[settings.strategy](settings, gateway, executor_factory=executor_factory)
