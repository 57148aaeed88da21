"""Locate the system disk and its EFI partition."""
from __future__ import annotations

from typing import TYPE_CHECKING, Callable

from zhb.errors import DetectionError
from zhb.models import SystemComponents, disk_for_partition, partition_path
from zhb.output import debug, status, warning

if TYPE_CHECKING:
    from zhb.devices import DeviceInspector

EFI_FSTYPE = "vfat"


def _from_efi_mount(inspector: "DeviceInspector", efi_mount: str) -> tuple[str, str] | None:
    if not inspector.is_mountpoint(efi_mount):
        debug(f"{efi_mount} not mounted, trying alternative methods...")
        return None
    source = inspector.mount_source(efi_mount)
    if not source or not source.startswith("/dev/"):
        return None
    efi = inspector.realpath(source)
    debug(f"Found EFI partition from mount: {efi}")
    return disk_for_partition(efi), efi


def _from_pool(inspector: "DeviceInspector", pool: str) -> tuple[str, str] | None:
    for vdev in inspector.pool_vdevs(pool):
        disk = disk_for_partition(inspector.realpath(vdev))
        debug(f"Pool device {vdev} is on {disk}")
        for number in (1, 2):
            candidate = partition_path(disk, number)
            if inspector.is_block_device(candidate) and inspector.fstype(candidate) == EFI_FSTYPE:
                debug(f"Found EFI partition: {candidate}")
                return disk, candidate
    return None


def detect_system_components(
    inspector: "DeviceInspector",
    pool: str,
    efi_mount: str = "/boot/efi",
    ask: Callable[[str], str] | None = None,
) -> SystemComponents:
    """Find the system disk and EFI partition.

    Tries the EFI mount point, then the pool's member devices, then asks
    the operator (only when ``ask`` is given). Raises DetectionError when
    every method fails or the result is not a pair of block devices.
    """
    found = _from_efi_mount(inspector, efi_mount) or _from_pool(inspector, pool)
    if found is None:
        if ask is None:
            raise DetectionError("Could not automatically detect system disk and EFI partition")
        warning("Could not automatically detect system components")
        disk = ask("Enter system disk (e.g., /dev/nvme0n1)").strip()
        efi = ask("Enter EFI partition (e.g., /dev/nvme0n1p1)").strip()
        if not disk or not efi:
            raise DetectionError("No system components specified")
        found = disk, efi

    disk, efi = found
    if not inspector.is_block_device(disk):
        raise DetectionError(f"System disk not found or not a block device: {disk}")
    if not inspector.is_block_device(efi):
        raise DetectionError(f"EFI partition not found or not a block device: {efi}")

    fstype = inspector.fstype(efi)
    if fstype != EFI_FSTYPE:
        warning(f"EFI partition does not appear to be FAT32 (found: {fstype or 'unknown'})")
    status(f"System disk detected: {disk}")
    status(f"EFI partition detected: {efi} ({fstype or 'unknown'})")
    return SystemComponents(disk=disk, efi_partition=efi, efi_fstype=fstype)
