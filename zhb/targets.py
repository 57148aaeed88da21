"""Backup destinations and restore sources: NAS share, USB drive, local directory."""
from __future__ import annotations

import contextlib
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Union

from zhb import prompt
from zhb.errors import Cancelled, MountError, TargetError
from zhb.executor import succeeds
from zhb.models import BlockDevice, NasCredentials
from zhb.mounts import can_write, mounted_cifs, mounted_removable
from zhb.output import debug, header, info, status, warning

if TYPE_CHECKING:
    from zhb.context import RunContext
    from zhb.devices import DeviceInspector
    from zhb.executor import Executor


def probe_network(executor: "Executor", host: str, timeout: int) -> bool:
    """Two pings, each waiting at most ``timeout`` seconds for a reply."""
    debug(f"Testing connectivity to {host} (timeout: {timeout}s)")
    ok = succeeds(executor, ["ping", "-c", "2", "-W", str(timeout), host],
                  timeout=timeout * 2 + 5)
    debug(f"Network connectivity to {host}: {'OK' if ok else 'FAILED'}")
    return ok


def mount_and_test_write(ctx: "RunContext", nas: NasCredentials) -> bool:
    """Mount the share on a private temporary directory and write a marker file."""
    if nas.missing():
        debug(f"NAS credentials incomplete: missing {', '.join(nas.missing())}")
        return False
    if ctx.executor.which("mount.cifs") is None:
        warning("mount.cifs not found (install cifs-utils)")
        return False
    mountpoint = tempfile.mkdtemp(prefix="nas-test-")
    try:
        with mounted_cifs(ctx.executor, nas, mountpoint, remove=True,
                          timeout=ctx.settings.nas_timeout):
            directory = Path(mountpoint) / nas.path
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                debug(f"Cannot create {directory}: {e}")
                return False
            return can_write(directory)
    except MountError as e:
        debug(str(e))
        return False


def check_nas_connectivity(ctx: "RunContext", nas: NasCredentials | None) -> bool:
    if nas is None:
        debug("No NAS configured")
        return False
    if not probe_network(ctx.executor, nas.host, ctx.settings.nas_timeout):
        warning(f"NAS not reachable at {nas.host}")
        return False
    return mount_and_test_write(ctx, nas)


def enumerate_removable_devices(inspector: "DeviceInspector", pool: str) -> list[BlockDevice]:
    """Whole disks that do not back the pool (or '/', when the pool is unknown)."""
    excluded = set(inspector.pool_disks(pool))
    if not excluded:
        root = inspector.root_disk()
        if root:
            excluded.add(root)
    debug(f"Excluding system disks: {', '.join(sorted(excluded)) or 'none'}")
    return [
        d for d in inspector.list_disks()
        if d.path not in excluded and inspector.realpath(d.path) not in excluded
    ]


@dataclass
class NasTarget:
    nas: NasCredentials = field(repr=False)
    method = "NAS"

    @property
    def label(self) -> str:
        return f"NAS {self.nas.unc}/{self.nas.path}".rstrip("/")

    @contextlib.contextmanager
    def open(self, ctx: "RunContext", write: bool = True) -> Iterator[Path]:
        mountpoint = ctx.settings.temp_mount if write else ctx.settings.restore_source_mount
        with mounted_cifs(ctx.executor, self.nas, mountpoint,
                          timeout=ctx.settings.nas_timeout) as mp:
            directory = Path(mp) / self.nas.path
            if write:
                try:
                    directory.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    raise TargetError(f"Failed to create NAS backup directory {directory}: {e}")
                if not can_write(directory):
                    raise TargetError(f"Cannot write to NAS backup directory: {directory}")
            elif not directory.is_dir():
                raise TargetError(f"NAS backup directory not found: {directory}")
            status(f"NAS share mounted: {self.nas.unc}")
            yield directory


@dataclass
class UsbTarget:
    device: str
    method = "USB"

    @property
    def label(self) -> str:
        return f"USB {self.device}"

    @contextlib.contextmanager
    def open(self, ctx: "RunContext", write: bool = True) -> Iterator[Path]:
        mountpoint = ctx.settings.usb_mount if write else ctx.settings.restore_source_mount
        with mounted_removable(ctx.executor, ctx.inspector, self.device, mountpoint) as mp:
            if write and not can_write(mp):
                raise TargetError(f"USB device mounted but no write permissions: {self.device}")
            status(f"USB device mounted: {self.device}")
            yield Path(mp)


@dataclass
class DirectoryTarget:
    path: Path
    method = "Directory"

    @property
    def label(self) -> str:
        return f"directory {self.path}"

    @contextlib.contextmanager
    def open(self, ctx: "RunContext", write: bool = True) -> Iterator[Path]:
        if not self.path.is_dir():
            raise TargetError(f"Directory not found: {self.path}")
        if write and not os.access(self.path, os.W_OK):
            raise TargetError(f"Directory is not writable: {self.path}")
        yield self.path


Target = Union[NasTarget, UsbTarget, DirectoryTarget]


def select_usb_device(ctx: "RunContext") -> UsbTarget:
    header("USB DRIVE DETECTION")
    info("Scanning for external drives...")
    devices = enumerate_removable_devices(ctx.inspector, ctx.pool)
    if not devices:
        raise TargetError("No external drives found")
    if ctx.auto:
        raise TargetError("Auto mode requires a pre-selected USB device")
    info(f"Selection timeout: {ctx.settings.user_timeout}s")
    device = prompt.select_item(devices, [d.label for d in devices], "Select drive",
                                timeout=ctx.user_timeout)
    status(f"Selected: {device.path}")
    return UsbTarget(device.path)


def select_backup_target(ctx: "RunContext") -> Target:
    """NAS when reachable (default on countdown), USB otherwise. Auto mode needs NAS."""
    header("BACKUP TARGET SELECTION")
    nas = ctx.credentials.nas
    nas_ok = check_nas_connectivity(ctx, nas)

    if ctx.auto:
        if not nas_ok:
            raise TargetError("Auto mode requires NAS availability")
        status("Auto mode: Using NAS backup")
        return NasTarget(nas)

    if nas_ok:
        status("NAS is available")
        choice = prompt.choose_with_default(
            "Select target", ["NAS Backup (recommended)", "USB Backup"], 0, ctx.user_timeout,
        )
        if choice == 0:
            status("Selected: NAS backup")
            return NasTarget(nas)
    else:
        warning("NAS not available")
        choice = prompt.choose_with_default(
            "Only USB backup available", ["Continue with USB backup", "Cancel"], 0,
            ctx.user_timeout,
        )
        if choice == 1:
            raise Cancelled("Backup cancelled")
    return select_usb_device(ctx)


def select_restore_source(ctx: "RunContext") -> Target:
    """Ask where the backup files live: NAS, USB drive or a local directory."""
    header("BACKUP SOURCE SELECTION")
    choices = ["NAS share", "USB drive", "Local directory"]
    choice = prompt.choose_with_default("Select backup source", choices, 0, None)
    if choice == 0:
        nas = ctx.credentials.nas
        if nas is None or nas.missing():
            nas = prompt_nas_settings(ctx, nas)
        return NasTarget(nas)
    if choice == 1:
        return select_usb_device(ctx)
    path = prompt.ask("Backup directory path")
    if not path:
        raise Cancelled("No directory given")
    return DirectoryTarget(Path(path).expanduser())


def prompt_nas_settings(ctx: "RunContext", current: NasCredentials | None) -> NasCredentials:
    """Ask for NAS connection details, prefilled with the current values."""
    defaults = ctx.settings.nas
    current = current or NasCredentials(defaults.host, defaults.share, defaults.path)
    print("Press ENTER to use current settings, or customize:")
    host = prompt.ask("NAS IP Address", current.host or defaults.host)
    share = prompt.ask("Share Name", current.share or defaults.share)
    path = prompt.ask("Backup Path", current.path or defaults.path)
    user = prompt.ask("NAS Username", current.user)
    password = prompt.ask_secret("NAS Password", timeout=ctx.user_timeout)
    nas = NasCredentials(host=host, share=share, path=path, user=user, password=password)
    missing = nas.missing()
    if missing:
        raise TargetError(f"NAS settings incomplete: missing {', '.join(missing)}")
    info(f"Target: {nas.unc}/{nas.path}/")
    return nas
