"""The plain-text restore recipe written next to every backup set."""
from __future__ import annotations

from datetime import datetime
from pathlib import Path

from zhb.models import Artifact, Compression, human_size, instructions_name


def _decode(compression: Compression) -> str:
    cmd = compression.decode_cmd
    return f"{' '.join(cmd)} | " if cmd else ""


def render_instructions(
    timestamp: str,
    boot: Artifact,
    zfs_artifact: Artifact,
    pool: str,
    compression: Compression,
    cipher: str,
    method: str,
    boot_duration: str,
    zfs_duration: str,
    duration: str,
    efi_size: str = "+512M",
    now: datetime | None = None,
) -> str:
    created = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    decode = _decode(compression)
    return f"""\
HYBRID ENCRYPTED BACKUP RESTORE INSTRUCTIONS
============================================
Backup Date: {created}
Backup Set: {timestamp}
Boot Partition File: {boot.name} ({human_size(boot.size)})
ZFS Data File: {zfs_artifact.name} ({human_size(zfs_artifact.size)})
Boot Backup Duration: {boot_duration}
ZFS Backup Duration: {zfs_duration}
Total Duration: {duration}
Method: {method} backup
Pool: {pool}
Compression: {compression.label}
Encryption: {cipher}

CRITICAL: You need the encryption password to restore!

This backup contains TWO files:
  Boot partition files:    {boot.name}
  Complete ZFS pool data:  {zfs_artifact.name}

Automated restore: run zfs-restore from a live system and select this set.

MANUAL RESTORE PROCEDURE
========================
1. Boot the target system from a Linux live USB.
2. Install tools:
   apt update && apt install -y zfsutils-linux gnupg gdisk dosfstools tar gzip xz-utils lz4

3. Connect the backup drive and locate both backup files.

4. Identify the target disk (e.g. /dev/nvme0n1, /dev/sda).
   WARNING: the target disk will be COMPLETELY ERASED!
   Partitions are TARGET_DISKp1/p2 for NVMe-style names, TARGET_DISK1/2 otherwise.

5. Create the partition table:
   sgdisk --zap-all /dev/TARGET_DISK
   sgdisk --new=1:0:{efi_size} --typecode=1:ef00 --change-name=1:"EFI System" /dev/TARGET_DISK
   sgdisk --new=2:0:0 --typecode=2:bf00 --change-name=2:"ZFS Pool" /dev/TARGET_DISK
   mkfs.fat -F32 /dev/TARGET_DISKp1

6. Restore the ZFS data:
   zpool create -f {pool} /dev/TARGET_DISKp2
   gpg --decrypt {zfs_artifact.name} | {decode}zfs receive -F -u {pool}

7. Restore the boot files:
   mkdir -p /mnt/efi
   mount /dev/TARGET_DISKp1 /mnt/efi
   gpg --decrypt {boot.name} | {decode}tar -xf - -C /mnt/efi
   umount /mnt/efi

8. Set the boot filesystem (find the root dataset with: zfs list | grep ROOT):
   zpool set bootfs={pool}/ROOT/<root-dataset> {pool}

9. Export the pool, reboot and remove the live USB:
   zpool export {pool}

VERIFICATION
============
After restore, verify:
- The system boots normally
- ZFS pool is healthy: zpool status
- All datasets are present: zfs list

EMERGENCY NOTES
===============
- If the system does not boot, check EFI boot entries: efibootmgr -v
- Verify ZFS pool import: zpool import {pool}
- Check partition types: lsblk -f
- Regenerate initramfs if needed: update-initramfs -u
"""


def write_instructions(directory: Path, timestamp: str, **details) -> Path:
    """Write RESTORE-HYBRID-<timestamp>.txt into ``directory`` and return its path."""
    path = Path(directory) / instructions_name(timestamp)
    path.write_text(render_instructions(timestamp, **details))
    return path
