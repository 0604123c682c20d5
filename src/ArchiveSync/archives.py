"""Archive format dispatch for the extraction step."""

from __future__ import annotations

import shlex
from pathlib import PurePath
from typing import Union

from .errors import ConfigurationError

__all__ = ["ZIP_SUFFIXES", "TAR_SUFFIXES", "archive_kind", "extract_command"]

ZIP_SUFFIXES = (".zip",)
TAR_SUFFIXES = (".tar.gz", ".tgz", ".tar.bz2")


def archive_kind(archive: Union[str, PurePath]) -> str:
    """Return ``"zip"`` or ``"tar"`` for ``archive``.

    Raises:
        ConfigurationError: If the suffix is not a supported archive format.
    """

    name = PurePath(archive).name
    if name.endswith(ZIP_SUFFIXES):
        return "zip"
    if name.endswith(TAR_SUFFIXES):
        return "tar"
    raise ConfigurationError(f"Unsupported archive format: {archive}")


def extract_command(archive: Union[str, PurePath], destination: Union[str, PurePath]) -> str:
    """Return the shell command extracting ``archive`` into ``destination``."""

    source = shlex.quote(str(archive))
    target = shlex.quote(str(destination))
    if archive_kind(archive) == "zip":
        return f"unzip -q -d {target} {source}"
    return f"tar xf {source} -C {target}"
