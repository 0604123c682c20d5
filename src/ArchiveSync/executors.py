# === NAVMAP v1 ===
# {
#   "module": "ArchiveSync.executors",
#   "purpose": "Run shell commands on the local machine or on a target host over ssh",
#   "sections": [
#     {"id": "targethost", "name": "TargetHost", "anchor": "class-targethost", "kind": "class"},
#     {"id": "commandexecutor", "name": "CommandExecutor", "anchor": "class-commandexecutor", "kind": "class"},
#     {"id": "localexecutor", "name": "LocalExecutor", "anchor": "class-localexecutor", "kind": "class"},
#     {"id": "sshexecutor", "name": "SshExecutor", "anchor": "class-sshexecutor", "kind": "class"},
#     {"id": "executor-for", "name": "executor_for", "anchor": "function-executor-for", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Command execution backends.

Every side effect outside the local cache (rsync, tar/unzip, mkdir/rm/mv and
the storage CLI used by the direct strategy) is a shell command run through a
:class:`CommandExecutor`.  Nonzero exits surface as :class:`TransferError`
carrying the command and its combined output.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Protocol, Sequence, Tuple

from .errors import TransferError

__all__ = [
    "TargetHost",
    "CommandExecutor",
    "LocalExecutor",
    "SshExecutor",
    "executor_for",
]

logger = logging.getLogger(__name__)

_LOCAL_HOSTNAMES = frozenset({"localhost", "127.0.0.1", "::1"})


@dataclass(frozen=True)
class TargetHost:
    """Connection settings for one deployment target."""

    hostname: str
    user: Optional[str] = None
    port: Optional[int] = None
    keys: Tuple[str, ...] = ()
    ssh_options: Mapping[str, Any] = field(default_factory=dict)
    local: bool = False

    @classmethod
    def localhost(cls) -> "TargetHost":
        return cls(hostname="localhost", local=True)

    @property
    def is_local(self) -> bool:
        return self.local or self.hostname in _LOCAL_HOSTNAMES

    def login_user_at(self) -> str:
        user = self.user or self.ssh_options.get("user")
        return f"{user}@" if user else ""

    def ssh_key_option(self) -> str:
        extra = self.ssh_options.get("keys") or ()
        if isinstance(extra, str):
            extra = (extra,)
        candidates = [key for key in (*self.keys, *extra) if key]
        return f"-i {shlex.quote(candidates[0])}" if candidates else ""

    def ssh_port_option(self) -> str:
        port = self.port or self.ssh_options.get("port")
        return f"-p {int(port)}" if port else ""

    def __str__(self) -> str:
        return f"{self.login_user_at()}{self.hostname}"


class CommandExecutor(Protocol):
    """Protocol implemented by command execution backends."""

    target: TargetHost

    def execute(self, command: str) -> str:
        """Run ``command``; raise :class:`TransferError` on a nonzero exit."""

    def capture(self, command: str) -> str:
        """Run ``command`` and return its stripped standard output."""

    def test(self, command: str) -> bool:
        """Return ``True`` when ``command`` exits with status zero."""

    def info(self, message: str) -> None:
        """Log ``message`` attributed to this target."""


class _SubprocessExecutor:
    target: TargetHost

    def _argv(self, command: str) -> List[str]:
        raise NotImplementedError

    def _run(self, command: str) -> "subprocess.CompletedProcess[str]":
        argv = self._argv(command)
        logger.debug("exec host=%s command=%s", self.target, command)
        try:
            return subprocess.run(argv, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise TransferError(
                f"Failed to launch {argv[0]} for {self.target}: {exc}", command=command
            ) from exc

    def execute(self, command: str) -> str:
        completed = self._run(command)
        if completed.returncode != 0:
            output = "\n".join(
                part.strip() for part in (completed.stdout, completed.stderr) if part.strip()
            )
            raise TransferError(
                f"Command failed on {self.target} (exit {completed.returncode}): {command}"
                + (f"\n{output}" if output else ""),
                command=command,
                returncode=completed.returncode,
                output=output,
            )
        return completed.stdout

    def capture(self, command: str) -> str:
        return self.execute(command).strip()

    def test(self, command: str) -> bool:
        return self._run(command).returncode == 0

    def info(self, message: str) -> None:
        logger.info("%s", message, extra={"extra_fields": {"host": str(self.target)}})


class LocalExecutor(_SubprocessExecutor):
    """Run commands on this machine through ``sh -c``."""

    def __init__(self, target: Optional[TargetHost] = None) -> None:
        self.target = target or TargetHost.localhost()

    def _argv(self, command: str) -> List[str]:
        return ["sh", "-c", command]


class SshExecutor(_SubprocessExecutor):
    """Run commands on a remote host through the ``ssh`` client."""

    def __init__(self, target: TargetHost, ssh_options: Sequence[str] = ()) -> None:
        self.target = target
        self.ssh_options = list(ssh_options)

    def _argv(self, command: str) -> List[str]:
        argv = ["ssh"]
        for option in (self.target.ssh_key_option(), self.target.ssh_port_option()):
            argv.extend(shlex.split(option))
        argv.extend(self.ssh_options)
        argv.append(f"{self.target.login_user_at()}{self.target.hostname}")
        argv.append(command)
        return argv


def executor_for(target: TargetHost, ssh_options: Sequence[str] = ()) -> CommandExecutor:
    """Return a local executor for local targets and an ssh executor otherwise."""

    if target.is_local:
        return LocalExecutor(target)
    return SshExecutor(target, ssh_options)
