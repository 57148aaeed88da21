"""Tests for zhb.models."""
from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from zhb.models import (
    Artifact,
    ArtifactKind,
    BackupSet,
    Compression,
    Credentials,
    NasCredentials,
    RestorePlan,
    Snapshot,
    boot_artifact_name,
    disk_for_partition,
    human_size,
    make_timestamp,
    partition_path,
    zfs_artifact_name,
)


def test_timestamp_format():
    assert make_timestamp(datetime(2025, 3, 7, 2, 5)) == "20250307-0205"


@pytest.mark.parametrize("compression,boot,zfs", [
    (Compression.GZIP, "boot-partition-20250307-0205.tar.gz.gpg", "zfs-backup-20250307-0205.gz.gpg"),
    (Compression.XZ, "boot-partition-20250307-0205.tar.xz.gpg", "zfs-backup-20250307-0205.xz.gpg"),
    (Compression.LZ4, "boot-partition-20250307-0205.tar.lz4.gpg", "zfs-backup-20250307-0205.lz4.gpg"),
    (Compression.NONE, "boot-partition-20250307-0205.tar.gpg", "zfs-backup-20250307-0205.gpg"),
])
def test_artifact_names(compression, boot, zfs):
    assert boot_artifact_name("20250307-0205", compression) == boot
    assert zfs_artifact_name("zfs-backup", "20250307-0205", compression) == zfs


def test_artifact_parse_boot():
    artifact = Artifact.parse(Path("/x/boot-partition-20250307-0205.tar.xz.gpg"))
    assert artifact.kind is ArtifactKind.BOOT
    assert artifact.compression is Compression.XZ
    assert artifact.timestamp == "20250307-0205"


def test_artifact_parse_zfs_uncompressed():
    artifact = Artifact.parse("/x/zfs-backup-20250307-0205.gpg")
    assert artifact.kind is ArtifactKind.ZFS
    assert artifact.compression is Compression.NONE


def test_artifact_parse_rejects_other_files():
    assert Artifact.parse("/x/RESTORE-HYBRID-20250307-0205.txt") is None
    assert Artifact.parse("/x/notes.gpg") is None
    assert Artifact.parse("/x/zfs-backup-20250307-0205.gz") is None


def test_compression_parse():
    assert Compression.parse("GZIP") is Compression.GZIP
    assert Compression.parse("gz") is Compression.GZIP
    assert Compression.parse("none") is Compression.NONE
    with pytest.raises(ValueError):
        Compression.parse("bzip2")
    with pytest.raises(ValueError):
        Compression.parse("")


def test_compression_commands():
    assert Compression.XZ.encode_cmd == ["xz", "-c", "-T0"]
    assert Compression.LZ4.decode_cmd == ["lz4", "-dc"]
    assert Compression.GZIP.test_cmd == ["gzip", "-t"]
    assert Compression.NONE.encode_cmd is None
    assert Compression.NONE.tool is None


def test_backup_set_completeness(tmp_path):
    boot = Artifact.parse(tmp_path / "boot-partition-20250307-0205.tar.gz.gpg")
    zfs = Artifact.parse(tmp_path / "zfs-backup-20250307-0205.gz.gpg")
    assert BackupSet("20250307-0205", boot=boot, zfs=zfs).complete
    half = BackupSet("20250307-0205", zfs=zfs)
    assert not half.complete
    assert half.incomplete
    assert not BackupSet("20250307-0205").incomplete


def test_snapshot_for_backup():
    snap = Snapshot.for_backup("rpool", "20250307-0205")
    assert snap.full_name == "rpool@backup-20250307-0205"
    assert Snapshot.parse(snap.full_name) == snap


@pytest.mark.parametrize("disk,expected_efi,expected_zfs", [
    ("/dev/nvme0n1", "/dev/nvme0n1p1", "/dev/nvme0n1p2"),
    ("/dev/mmcblk0", "/dev/mmcblk0p1", "/dev/mmcblk0p2"),
    ("/dev/sda", "/dev/sda1", "/dev/sda2"),
])
def test_partition_paths(disk, expected_efi, expected_zfs):
    assert partition_path(disk, 1) == expected_efi
    assert partition_path(disk, 2) == expected_zfs
    assert disk_for_partition(expected_efi) == disk


def test_restore_plan_confirmation():
    plan = RestorePlan("/dev/sdb", "rpool", BackupSet("20250307-0205"), "YES")
    assert plan.confirmed
    assert plan.efi_partition == "/dev/sdb1"
    assert not RestorePlan("/dev/sdb", "rpool", BackupSet("x"), "yes").confirmed


def test_credentials_problems():
    assert Credentials(passphrase="x" * 12).problems() == []
    assert "missing" in Credentials().problems()[0]
    assert "shorter" in Credentials(passphrase="short").problems()[0]
    creds = Credentials(passphrase="x" * 12, nas=NasCredentials(host="nas", share="b"))
    assert creds.needs_setup
    assert "username" in creds.problems()[0]


def test_credentials_scrub():
    creds = Credentials(passphrase="x" * 12, nas=NasCredentials(password="pw"))
    creds.scrub()
    assert creds.passphrase == ""
    assert creds.nas.password == ""


def test_human_size():
    assert human_size(0) == "0B"
    assert human_size(512) == "512.0B"
    assert human_size(3 * 1024 ** 3) == "3.0GB"
