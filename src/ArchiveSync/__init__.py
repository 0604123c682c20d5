"""Public API for deploying S3 release archives.

Resolve an archive revision in an S3 bucket, keep one locally extracted copy
per stage under non-blocking file locks, and propagate it into release
directories on local or ssh-reachable targets.
"""

from __future__ import annotations

from .cache import LocalCacheManager, StagePaths, StageResult
from .errors import (
    ArchiveSyncError,
    ConcurrentOperationError,
    ConfigurationError,
    ObjectNotFoundError,
    ResourceBusyError,
    TransferError,
)
from .executors import LocalExecutor, SshExecutor, TargetHost, executor_for
from .hooks import HOOKS, ArchiveSyncPlugin, register_hooks
from .locator import ObjectRef, parse_repo_url
from .locks import LockGuard, LockMode, locked_region
from .revisions import ObjectMetadata, ResolutionContext, Revision, RevisionResolver
from .settings import ArchiveSyncSettings, MappingConfigSource, load_settings, settings_from_source
from .storage import Boto3StorageGateway, ObjectSummary, ObjectVersion, StorageGateway
from .strategies import DirectStrategy, PropagationStrategy, RsyncStagedStrategy, build_strategy

__version__ = "0.1.0"

__all__ = [
    "ArchiveSyncError",
    "ArchiveSyncPlugin",
    "ArchiveSyncSettings",
    "Boto3StorageGateway",
    "ConcurrentOperationError",
    "ConfigurationError",
    "DirectStrategy",
    "HOOKS",
    "LocalCacheManager",
    "LocalExecutor",
    "LockGuard",
    "LockMode",
    "MappingConfigSource",
    "ObjectMetadata",
    "ObjectNotFoundError",
    "ObjectRef",
    "ObjectSummary",
    "ObjectVersion",
    "PropagationStrategy",
    "ResolutionContext",
    "ResourceBusyError",
    "Revision",
    "RevisionResolver",
    "RsyncStagedStrategy",
    "SshExecutor",
    "StagePaths",
    "StageResult",
    "StorageGateway",
    "TargetHost",
    "TransferError",
    "build_strategy",
    "executor_for",
    "load_settings",
    "locked_region",
    "parse_repo_url",
    "register_hooks",
    "settings_from_source",
    "__version__",
]
