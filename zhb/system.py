"""Preflight checks: privileges and required external tools."""
from __future__ import annotations

import os
from typing import TYPE_CHECKING, Iterable

from zhb.errors import PrerequisiteError
from zhb.models import Compression
from zhb.output import debug, status, warning

if TYPE_CHECKING:
    from zhb.executor import Executor

BACKUP_COMMANDS = ("zfs", "zpool", "gpg", "tar")
RESTORE_COMMANDS = ("sgdisk", "mkfs.fat", "zfs", "zpool", "gpg", "tar")
OPTIONAL_COMMANDS = ("lsblk", "blkid", "findmnt")


def backup_commands(compression: Compression) -> list[str]:
    commands = list(BACKUP_COMMANDS)
    if compression.tool:
        commands.append(compression.tool)
    return commands


def is_root() -> bool:
    return os.geteuid() == 0


def check_requirements(
    executor: "Executor",
    commands: Iterable[str],
    optional: Iterable[str] = OPTIONAL_COMMANDS,
    require_root: bool = True,
) -> None:
    """Raise PrerequisiteError unless running as root with every command on PATH.

    Missing optional commands only produce a warning.
    """
    if require_root and not is_root():
        raise PrerequisiteError("This script must be run as root")

    missing = [cmd for cmd in commands if executor.which(cmd) is None]
    if missing:
        raise PrerequisiteError(
            f"Missing required commands: {', '.join(missing)}\n"
            "Install with: apt install zfsutils-linux gnupg tar gzip xz-utils lz4 "
            "gdisk dosfstools cifs-utils"
        )

    for cmd in optional:
        if executor.which(cmd) is None:
            warning(f"Optional command not found: {cmd}")
        else:
            debug(f"Found optional command: {cmd}")
    status("All required tools available")
