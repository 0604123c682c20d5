# === NAVMAP v1 ===
# {
#   "module": "ArchiveSync.hooks",
#   "purpose": "Deploy-framework lifecycle hooks wired to resolution and propagation",
#   "sections": [
#     {"id": "archivesyncplugin", "name": "ArchiveSyncPlugin", "anchor": "class-archivesyncplugin", "kind": "class"},
#     {"id": "hooks", "name": "HOOKS", "anchor": "constant-hooks", "kind": "constant"},
#     {"id": "register-hooks", "name": "register_hooks", "anchor": "function-register-hooks", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Entry points invoked by a deploy pipeline.

A deploy framework calls three hooks at fixed points of its pipeline:

- ``check`` before ``deploy:check``: storage credentials and ssh reachability;
- ``create_release`` after ``deploy:new_release_path``: populate the release;
- ``set_current_revision`` before ``deploy:set_current_revision``: report the
  revision label to record for the release.

The archive revision is resolved at most once per plugin instance and then
handed explicitly to the strategy, so every target of one deploy receives the
same object version even if a newer archive lands mid-run.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional, Tuple

from .executors import TargetHost, executor_for
from .locator import ObjectRef, parse_repo_url
from .revisions import ResolutionContext, RevisionResolver
from .settings import ArchiveSyncSettings
from .storage import Boto3StorageGateway, StorageGateway
from .strategies import ExecutorFactory, PropagationStrategy, build_strategy

__all__ = ["ArchiveSyncPlugin", "HOOKS", "register_hooks"]

logger = logging.getLogger(__name__)

HOOKS: Tuple[Tuple[str, str, str], ...] = (
    ("after", "deploy:new_release_path", "create_release"),
    ("before", "deploy:check", "check"),
    ("before", "deploy:set_current_revision", "set_current_revision"),
)


class ArchiveSyncPlugin:
    """Bind settings, storage, and the configured strategy for one deploy run."""

    def __init__(
        self,
        settings: ArchiveSyncSettings,
        gateway: Optional[StorageGateway] = None,
        *,
        executor_factory: ExecutorFactory = executor_for,
        strategy: Optional[PropagationStrategy] = None,
    ) -> None:
        self.settings = settings
        self.ref: ObjectRef = parse_repo_url(settings.repo_url)
        self.gateway = gateway or Boto3StorageGateway(settings.client_options)
        self.resolver = RevisionResolver(self.gateway, self.ref, sort=settings.sort)
        self.strategy = strategy or build_strategy(
            settings, self.gateway, executor_factory=executor_factory
        )
        self._context: Optional[ResolutionContext] = None

    def resolve(self) -> ResolutionContext:
        """Return this run's :class:`ResolutionContext`, resolving it on first use."""

        if self._context is None:
            self._context = self.resolver.resolve_context(
                self.settings.branch, self.settings.object_version_id
            )
            logger.info(
                "Resolved %s (etag:%s)",
                self._context.label,
                self._context.metadata.etag if self._context.metadata else None,
            )
        return self._context

    def check(self, targets: Iterable[TargetHost]) -> None:
        """Confirm storage access and target reachability."""

        next(iter(self.gateway.list_objects(self.ref.container, self.ref.key_prefix)), None)
        self.strategy.check(targets)

    def create_release(
        self,
        targets: Iterable[TargetHost],
        release_path: str,
        current_path: Optional[str] = None,
    ) -> ResolutionContext:
        """Materialise ``release_path`` on every target from the resolved archive."""

        context = self.resolve()
        self.strategy.create_release(context, targets, release_path, current_path)
        return context

    def set_current_revision(self) -> str:
        return self.resolve().label


def register_hooks(
    plugin: ArchiveSyncPlugin, register: Callable[[str, str, Callable[..., object]], None]
) -> List[str]:
    """Attach the plugin's hooks through a framework ``register(when, task, fn)`` callback."""

    registered = []
    for when, task, method in HOOKS:
        register(when, task, getattr(plugin, method))
        registered.append(f"{when} {task}")
    return registered
