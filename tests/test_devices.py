"""Tests for zhb.devices and zhb.detect."""
from __future__ import annotations

import json

import pytest

from zhb.detect import detect_system_components
from zhb.devices import DeviceInspector, LSBLK_COLUMNS, parse_lsblk, parse_zpool_vdevs
from zhb.errors import DetectionError
from tests.conftest import FakeInspector, MockExecutor, fail

LSBLK = json.dumps({"blockdevices": [
    {"name": "nvme0n1", "path": "/dev/nvme0n1", "size": 512110190592, "model": "Samsung SSD 980 ",
     "type": "disk", "mountpoint": None, "children": [
         {"name": "nvme0n1p1", "path": "/dev/nvme0n1p1", "size": 536870912, "model": None,
          "type": "part", "mountpoint": "/boot/efi"},
         {"name": "nvme0n1p2", "path": "/dev/nvme0n1p2", "size": 511572271104, "model": None,
          "type": "part", "mountpoint": None},
     ]},
    {"name": "sdb", "path": "/dev/sdb", "size": 2000398934016, "model": "Elements",
     "type": "disk", "mountpoints": [None], "children": [
         {"name": "sdb1", "path": "/dev/sdb1", "size": 2000397795328, "type": "part",
          "mountpoints": ["/media/usb"]},
     ]},
    {"name": "loop0", "path": "/dev/loop0", "size": 1000, "type": "loop", "mountpoint": None},
]})

ZPOOL_V = (
    "rpool\t476G\t120G\t356G\t-\t-\t5%\t25%\t1.00x\tONLINE\t-\n"
    "\t/dev/disk/by-id/nvme-Samsung_SSD_980-part2\t476G\t120G\t356G\t-\t-\t5%\t25.2%\t-\tONLINE\n"
)


def test_parse_lsblk_disks_only_with_child_mounts():
    disks = parse_lsblk(LSBLK)
    assert [d.path for d in disks] == ["/dev/nvme0n1", "/dev/sdb"]
    assert disks[0].model == "Samsung SSD 980"
    assert disks[0].mountpoints == ["/boot/efi"]
    assert disks[1].mountpoints == ["/media/usb"]
    assert "Mounted at /media/usb" in disks[1].label


def test_parse_zpool_vdevs():
    assert parse_zpool_vdevs(ZPOOL_V) == ["/dev/disk/by-id/nvme-Samsung_SSD_980-part2"]


def test_inspector_list_disks_uses_json():
    ex = MockExecutor({("lsblk", "-J", "-b", "-o", LSBLK_COLUMNS): LSBLK})
    assert len(DeviceInspector(ex).list_disks()) == 2


def test_inspector_mount_source():
    cmd = ("findmnt", "-J", "-o", "SOURCE", "-M", "/boot/efi")
    ex = MockExecutor({cmd: json.dumps({"filesystems": [{"source": "/dev/nvme0n1p1"}]})})
    assert DeviceInspector(ex).mount_source("/boot/efi") == "/dev/nvme0n1p1"
    assert DeviceInspector(MockExecutor({cmd: fail(list(cmd))})).mount_source("/boot/efi") is None


def test_inspector_pool_vdevs_missing_pool():
    cmd = ("zpool", "list", "-v", "-H", "-P", "rpool")
    assert DeviceInspector(MockExecutor({cmd: fail(list(cmd))})).pool_vdevs("rpool") == []


def test_detect_from_efi_mount():
    inspector = FakeInspector(
        MockExecutor(),
        block_devices={"/dev/nvme0n1", "/dev/nvme0n1p1"},
        fstypes={"/dev/nvme0n1p1": "vfat"},
        mounts={"/boot/efi": "/dev/nvme0n1p1"},
    )
    components = detect_system_components(inspector, "rpool")
    assert components.disk == "/dev/nvme0n1"
    assert components.efi_partition == "/dev/nvme0n1p1"
    assert components.efi_fstype == "vfat"


def test_detect_from_pool_members_resolves_aliases():
    alias = "/dev/disk/by-id/ata-WDC-part3"
    inspector = FakeInspector(
        MockExecutor(),
        block_devices={"/dev/sda", "/dev/sda1", "/dev/sda2"},
        fstypes={"/dev/sda2": "vfat"},
        vdevs={"rpool": [alias]},
        links={alias: "/dev/sda3"},
    )
    components = detect_system_components(inspector, "rpool", efi_mount="/nonexistent")
    assert components.disk == "/dev/sda"
    assert components.efi_partition == "/dev/sda2"


def test_detect_asks_operator_as_last_resort(capsys):
    answers = iter(["/dev/vda", "/dev/vda1"])
    inspector = FakeInspector(MockExecutor(), block_devices={"/dev/vda", "/dev/vda1"},
                              fstypes={"/dev/vda1": "ext4"})
    components = detect_system_components(inspector, "rpool", ask=lambda _msg: next(answers))
    assert components.efi_partition == "/dev/vda1"
    assert "does not appear to be FAT32" in capsys.readouterr().err


def test_detect_fails_without_operator():
    with pytest.raises(DetectionError, match="Could not automatically detect"):
        detect_system_components(FakeInspector(MockExecutor()), "rpool")


def test_detect_rejects_non_block_device():
    inspector = FakeInspector(MockExecutor(), block_devices={"/dev/nvme0n1"},
                              mounts={"/boot/efi": "/dev/nvme0n1p1"})
    with pytest.raises(DetectionError, match="EFI partition not found"):
        detect_system_components(inspector, "rpool")
