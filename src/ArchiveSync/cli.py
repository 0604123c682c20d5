# === NAVMAP v1 ===
# {
#   "module": "ArchiveSync.cli",
#   "purpose": "archive-sync command line entry points",
#   "sections": [
#     {"id": "setup", "name": "Setup", "anchor": "IMP", "kind": "infra"},
#     {"id": "commands", "name": "CLI Commands", "anchor": "CMDS", "kind": "commands"}
#   ]
# }
# === /NAVMAP ===

"""Command line interface for running archive deploy steps outside a framework.

Busy locks and in-progress download markers exit with status 75 (``EX_TEMPFAIL``)
so wrapping automation can tell "another deploy is running" from a failure.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, List, Optional, TypeVar

import typer

from .errors import ArchiveSyncError, ConcurrentOperationError, ResourceBusyError
from .executors import TargetHost
from .hooks import ArchiveSyncPlugin
from .logging_config import setup_logging
from .settings import ArchiveSyncSettings, load_settings

# ============================================================================
# SETUP (IMP)
# ============================================================================

app = typer.Typer(help="Synchronise S3 release archives into deploy targets")
logger = logging.getLogger(__name__)

EXIT_BUSY = 75
T = TypeVar("T")

ConfigOption = typer.Option(..., "--config", "-c", help="YAML settings file")
StageOption = typer.Option(None, "--stage", help="Override the configured stage")
BranchOption = typer.Option(None, "--branch", help="Archive name or 'latest'")
HostOption = typer.Option(
    None, "--host", help="Target as [user@]host[:port]; repeatable. Defaults to localhost."
)


def parse_host(value: str, key: Optional[str] = None) -> TargetHost:
    """Parse ``[user@]host[:port]`` into a :class:`TargetHost`."""

    user: Optional[str] = None
    rest = value.strip()
    if "@" in rest:
        user, rest = rest.split("@", 1)
    port: Optional[int] = None
    if rest.count(":") == 1:
        rest, raw_port = rest.split(":", 1)
        try:
            port = int(raw_port)
        except ValueError:
            raise typer.BadParameter(f"Invalid port in host {value!r}") from None
    if not rest:
        raise typer.BadParameter(f"Invalid host {value!r}")
    return TargetHost(
        hostname=rest,
        user=user or None,
        port=port,
        keys=(key,) if key else (),
    )


def _load(config: Path, stage: Optional[str], branch: Optional[str]) -> ArchiveSyncSettings:
    settings = load_settings(config, stage=stage, branch=branch)
    setup_logging(settings.logging, stage=settings.stage)
    return settings


def _targets(hosts: Optional[List[str]], key: Optional[str]) -> List[TargetHost]:
    if not hosts:
        return [TargetHost.localhost()]
    return [parse_host(item, key) for item in hosts]


def _run(action: Callable[[], T]) -> T:
    try:
        return action()
    except (ResourceBusyError, ConcurrentOperationError) as exc:
        typer.echo(f"Busy: {exc}", err=True)
        raise typer.Exit(EXIT_BUSY)
    except ArchiveSyncError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1)


# ============================================================================
# CLI COMMANDS (CMDS)
# ============================================================================


@app.command()
def check(
    config: Path = ConfigOption,
    stage: Optional[str] = StageOption,
    host: Optional[List[str]] = HostOption,
    ssh_key: Optional[str] = typer.Option(None, "--ssh-key", help="Private key for targets"),
) -> None:
    """Verify storage credentials and target reachability."""

    def action() -> None:
        plugin = ArchiveSyncPlugin(_load(config, stage, None))
        plugin.check(_targets(host, ssh_key))

    _run(action)
    typer.echo("ok")


@app.command()
def revision(
    config: Path = ConfigOption,
    stage: Optional[str] = StageOption,
    branch: Optional[str] = BranchOption,
) -> None:
    """Print the revision label the next deploy would install."""

    label = _run(lambda: ArchiveSyncPlugin(_load(config, stage, branch)).set_current_revision())
    typer.echo(label)


@app.command()
def deploy(
    release_path: str = typer.Option(..., "--release-path", help="Release directory to populate"),
    config: Path = ConfigOption,
    stage: Optional[str] = StageOption,
    branch: Optional[str] = BranchOption,
    current_path: Optional[str] = typer.Option(
        None, "--current-path", help="Symlink pointing at the live release"
    ),
    host: Optional[List[str]] = HostOption,
    ssh_key: Optional[str] = typer.Option(None, "--ssh-key", help="Private key for targets"),
) -> None:
    """Populate ``--release-path`` on every target from the resolved archive."""

    def action() -> str:
        plugin = ArchiveSyncPlugin(_load(config, stage, branch))
        context = plugin.create_release(_targets(host, ssh_key), release_path, current_path)
        return context.label

    label = _run(action)
    typer.echo(f"Released {label} into {release_path}")


@app.command()
def cleanup(
    config: Path = ConfigOption,
    stage: Optional[str] = StageOption,
    host: Optional[List[str]] = HostOption,
    ssh_key: Optional[str] = typer.Option(None, "--ssh-key", help="Private key for targets"),
) -> None:
    """Trim cached archives beyond ``keep_releases``."""

    def action() -> None:
        plugin = ArchiveSyncPlugin(_load(config, stage, None))
        plugin.strategy.cleanup(_targets(host, ssh_key))

    _run(action)


def main() -> None:  # pragma: no cover - console script
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
