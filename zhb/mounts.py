"""Mount helpers: each mount lives exactly as long as its with-block."""
from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

from zhb.errors import InsufficientSpaceError, MountError
from zhb.executor import ExecutorError, succeeds
from zhb.models import NasCredentials, human_size, partition_path
from zhb.output import debug, log, warning

if TYPE_CHECKING:
    from zhb.devices import DeviceInspector
    from zhb.executor import Executor

# Tried in order when plain `mount` cannot guess the filesystem
FALLBACK_FSTYPES = ("ext4", "ntfs", "exfat", "vfat", "ext3", "ext2")


def is_mountpoint(executor: "Executor", path: str) -> bool:
    return succeeds(executor, ["mountpoint", "-q", path])


def _prepare_mountpoint(executor: "Executor", path: str) -> bool:
    """Create the mount point directory; return True if it was created here."""
    if is_mountpoint(executor, path):
        raise MountError(f"{path} is already in use as a mount point")
    existed = os.path.isdir(path)
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise MountError(f"Failed to create mount point {path}: {e}")
    return not existed


def _remove_mountpoint(path: str) -> None:
    try:
        os.rmdir(path)
    except OSError as e:
        log.debug(f"Leaving mount point {path}: {e}")


def unmount(executor: "Executor", path: str) -> None:
    """sync, then umount; fall back to a lazy unmount."""
    if not is_mountpoint(executor, path):
        return
    succeeds(executor, ["sync"])
    try:
        executor.run(["umount", path])
        debug(f"Unmounted {path}")
        return
    except ExecutorError as e:
        warning(f"Standard unmount of {path} failed ({e.stderr.strip()}), trying lazy unmount...")
    try:
        executor.run(["umount", "-l", path])
    except ExecutorError as e:
        raise MountError(f"Failed to unmount {path}: {e}")


@contextlib.contextmanager
def mounted(executor: "Executor", source: str, mountpoint: str,
            fstype: str | None = None, remove: bool = False) -> Iterator[str]:
    """Mount ``source`` on ``mountpoint`` for the duration of the block."""
    created = _prepare_mountpoint(executor, mountpoint)
    cmd = ["mount"] + (["-t", fstype] if fstype else []) + [source, mountpoint]
    try:
        try:
            executor.run(cmd)
        except ExecutorError as e:
            raise MountError(f"Failed to mount {source} on {mountpoint}: {e.stderr.strip()}")
        try:
            yield mountpoint
        finally:
            unmount(executor, mountpoint)
    finally:
        if remove or created:
            _remove_mountpoint(mountpoint)


@contextlib.contextmanager
def mounted_cifs(executor: "Executor", nas: NasCredentials, mountpoint: str,
                 remove: bool = False, timeout: float | None = None) -> Iterator[str]:
    """Mount a CIFS share using a short-lived mode-600 credentials file.

    The credentials file is deleted as soon as mount returns.
    """
    created = _prepare_mountpoint(executor, mountpoint)
    try:
        # NamedTemporaryFile is created with mode 0600
        with tempfile.NamedTemporaryFile("w", prefix=".nas-creds-", delete=False) as f:
            creds_path = f.name
            f.write(f"username={nas.user}\npassword={nas.password}\n")
        try:
            os.chmod(creds_path, 0o600)
            options = (
                f"credentials={creds_path},uid={os.getuid()},gid={os.getgid()},"
                "file_mode=0644,dir_mode=0755,iocharset=utf8"
            )
            executor.run(["mount", "-t", "cifs", nas.unc, mountpoint, "-o", options],
                         timeout=timeout)
        except ExecutorError as e:
            raise MountError(f"Failed to mount NAS share {nas.unc}: {e.stderr.strip()}")
        finally:
            os.unlink(creds_path)
        if not is_mountpoint(executor, mountpoint):
            raise MountError(f"NAS share mount failed: {mountpoint} is not a mount point")
        try:
            yield mountpoint
        finally:
            unmount(executor, mountpoint)
    finally:
        if remove or created:
            _remove_mountpoint(mountpoint)


def removable_partition(inspector: "DeviceInspector", device: str) -> str:
    """Partition 1 of the device, or the whole device when it has no partition table."""
    candidate = partition_path(device, 1)
    if inspector.is_block_device(candidate):
        return candidate
    debug(f"Partition {candidate} not found, using whole device: {device}")
    if not inspector.is_block_device(device):
        raise MountError(f"{device} is not a block device")
    return device


@contextlib.contextmanager
def mounted_removable(executor: "Executor", inspector: "DeviceInspector", device: str,
                      mountpoint: str) -> Iterator[str]:
    """Mount a removable drive, trying common filesystem types in turn."""
    source = removable_partition(inspector, device)
    created = _prepare_mountpoint(executor, mountpoint)
    try:
        attempts = [None] + list(FALLBACK_FSTYPES)
        for fstype in attempts:
            cmd = ["mount"] + (["-t", fstype] if fstype else []) + [source, mountpoint]
            if succeeds(executor, cmd):
                debug(f"Mounted {source} ({fstype or 'auto-detected'})")
                break
        else:
            raise MountError(f"Failed to mount {source} with any filesystem type")
        try:
            yield mountpoint
        finally:
            unmount(executor, mountpoint)
    finally:
        if created:
            _remove_mountpoint(mountpoint)


def free_bytes(executor: "Executor", path: str) -> int:
    output = executor.run(["df", "--output=avail", "-B1", path])
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    try:
        return int(lines[-1])
    except (IndexError, ValueError):
        raise MountError(f"Cannot read free space of {path}: {output!r}")


def require_free_space(executor: "Executor", path: str, required: int) -> int:
    available = free_bytes(executor, path)
    if available < required:
        raise InsufficientSpaceError(path, available, required)
    debug(f"Space check on {path}: {human_size(available)} available")
    return available


def can_write(directory: Path | str) -> bool:
    """Create and remove a marker file in ``directory``."""
    marker = Path(directory) / f".write-test-{os.getpid()}"
    try:
        marker.touch()
        marker.unlink()
        return True
    except OSError as e:
        log.debug(f"Write test in {directory} failed: {e}")
        return False
