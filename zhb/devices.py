"""Block device inspection through lsblk, blkid and findmnt JSON output."""
from __future__ import annotations

import json
import os
import stat
from typing import TYPE_CHECKING

from zhb.executor import ExecutorError, succeeds
from zhb.models import BlockDevice, disk_for_partition
from zhb.output import log

if TYPE_CHECKING:
    from zhb.executor import Executor

LSBLK_COLUMNS = "NAME,PATH,SIZE,MODEL,TYPE,MOUNTPOINT"


def _mountpoints(node: dict) -> list[str]:
    """Mount points of a device and all of its children."""
    found = []
    mp = node.get("mountpoint")
    if mp:
        found.append(mp)
    for mp in node.get("mountpoints") or []:
        if mp and mp not in found:
            found.append(mp)
    for child in node.get("children") or []:
        found.extend(m for m in _mountpoints(child) if m not in found)
    return found


def parse_lsblk(output: str) -> list[BlockDevice]:
    """Return whole disks from ``lsblk -J -b`` output, with their mount points."""
    data = json.loads(output or "{}")
    disks = []
    for node in data.get("blockdevices", []):
        if node.get("type") != "disk":
            continue
        path = node.get("path") or f"/dev/{node.get('name', '')}"
        try:
            size = int(node.get("size") or 0)
        except (TypeError, ValueError):
            size = 0
        disks.append(BlockDevice(
            path=path,
            size=size,
            model=(node.get("model") or "").strip(),
            mountpoints=_mountpoints(node),
        ))
    return disks


def parse_zpool_vdevs(output: str) -> list[str]:
    """Device paths from ``zpool list -v -H -P`` output."""
    paths = []
    for line in output.splitlines():
        fields = line.split("\t")
        for field in fields:
            field = field.strip()
            if field.startswith("/dev/"):
                paths.append(field)
                break
    return paths


class DeviceInspector:
    """Answers questions about block devices and mounts.

    Everything that shells out goes through the executor; path checks use
    the local filesystem.
    """

    def __init__(self, executor: "Executor"):
        self.executor = executor

    def list_disks(self) -> list[BlockDevice]:
        output = self.executor.run(["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS])
        return parse_lsblk(output)

    def fstype(self, device: str) -> str:
        try:
            return self.executor.run(["blkid", "-o", "value", "-s", "TYPE", device]).strip()
        except ExecutorError:
            return ""

    def mount_source(self, mountpoint: str) -> str | None:
        """Return the source device of a mount point, or None."""
        try:
            output = self.executor.run(["findmnt", "-J", "-o", "SOURCE", "-M", mountpoint])
        except ExecutorError:
            return None
        filesystems = json.loads(output or "{}").get("filesystems") or []
        if not filesystems:
            return None
        return filesystems[0].get("source") or None

    def is_mountpoint(self, path: str) -> bool:
        return succeeds(self.executor, ["mountpoint", "-q", path])

    def is_block_device(self, path: str) -> bool:
        try:
            return stat.S_ISBLK(os.stat(path).st_mode)
        except OSError:
            return False

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def realpath(self, path: str) -> str:
        return os.path.realpath(path)

    def pool_vdevs(self, pool: str) -> list[str]:
        try:
            output = self.executor.run(["zpool", "list", "-v", "-H", "-P", pool])
        except ExecutorError as e:
            log.debug(f"zpool list -v {pool} failed: {e}")
            return []
        return parse_zpool_vdevs(output)

    def pool_disks(self, pool: str) -> list[str]:
        """Whole-disk paths backing a pool, by-id aliases resolved."""
        disks = []
        for vdev in self.pool_vdevs(pool):
            disk = disk_for_partition(self.realpath(vdev))
            if disk not in disks:
                disks.append(disk)
        return disks

    def root_disk(self) -> str | None:
        """The disk holding '/', when '/' is a plain block device."""
        source = self.mount_source("/")
        if not source or not source.startswith("/dev/"):
            return None
        return disk_for_partition(self.realpath(source))
