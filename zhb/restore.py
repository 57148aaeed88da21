"""Restore a hybrid backup set onto a blank disk."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Mapping

from zhb import prompt, zfs
from zhb.errors import Cancelled, CredentialsError, PipelineError, RestoreError
from zhb.executor import ExecutorError
from zhb.models import (
    INSTRUCTIONS_PREFIX,
    MIN_PASSPHRASE_LENGTH,
    TIMESTAMP_RE,
    Artifact,
    ArtifactKind,
    BackupSet,
    Compression,
    RestorePlan,
    human_size,
)
from zhb.mounts import mounted
from zhb.output import debug, header, info, status, warning
from zhb.streams import decrypt_stages, read_head, run_pipeline

if TYPE_CHECKING:
    from zhb.context import RunContext
    from zhb.executor import Executor

_INSTRUCTIONS_RE = re.compile(rf"^{INSTRUCTIONS_PREFIX}-(?P<ts>{TIMESTAMP_RE})\.txt$")

CONFIRM_TOKEN = "YES"
VERIFY_BYTES = 1024


def discover_backup_sets(directory: Path | str) -> list[BackupSet]:
    """Group the artifacts in ``directory`` by timestamp, newest first."""
    sets: dict[str, BackupSet] = {}
    for path in sorted(Path(directory).iterdir()):
        if not path.is_file():
            continue
        m = _INSTRUCTIONS_RE.match(path.name)
        if m:
            sets.setdefault(m.group("ts"), BackupSet(m.group("ts"))).instructions = path
            continue
        artifact = Artifact.parse(path)
        if artifact is None:
            continue
        backup_set = sets.setdefault(artifact.timestamp, BackupSet(artifact.timestamp))
        if artifact.kind is ArtifactKind.BOOT:
            backup_set.boot = backup_set.boot or artifact
        else:
            backup_set.zfs = backup_set.zfs or artifact
    return [
        sets[ts] for ts in sorted(sets, reverse=True)
        if sets[ts].boot is not None or sets[ts].zfs is not None
    ]


def verify_passphrase(executor: "Executor", artifact: Artifact, passphrase: str) -> bool:
    """Decrypt the first kilobyte of the artifact with the passphrase."""
    if not passphrase:
        return False
    data, _ = read_head(executor, decrypt_stages(artifact.path, Compression.NONE, passphrase),
                        VERIFY_BYTES)
    return bool(data)


def plan_restore(disk: str, pool: str, backup_set: BackupSet, confirmation: str) -> RestorePlan:
    if not disk:
        raise RestoreError("No target disk selected")
    if not pool:
        raise RestoreError("No pool name given")
    return RestorePlan(disk=disk, pool=pool, backup_set=backup_set, confirmation=confirmation)


@dataclass
class RestoreReport:
    disk: str
    pool: str
    health: str = "UNKNOWN"
    datasets: int = 0
    efi_files: int = 0
    bootfs: str | None = None

    @property
    def verified(self) -> bool:
        return self.health == zfs.HEALTHY and self.datasets > 0 and self.efi_files > 0


def _run_optional(executor: "Executor", cmd: list[str]) -> None:
    """Run a helper that may be missing on minimal live systems."""
    if executor.which(cmd[0]) is None:
        debug(f"{cmd[0]} not available, skipping")
        return
    try:
        executor.run(cmd)
    except ExecutorError as e:
        debug(f"{cmd[0]} failed: {e}")


def partition_disk(executor: "Executor", plan: RestorePlan, efi_size: str = "+512M") -> None:
    """Wipe the disk and create EFI (partition 1) and ZFS (partition 2)."""
    disk = plan.disk
    steps = [
        ("Wiping existing partition table...", ["sgdisk", "--zap-all", disk]),
        ("Creating EFI system partition...",
         ["sgdisk", f"--new=1:0:{efi_size}", "--typecode=1:ef00",
          "--change-name=1:EFI System", disk]),
        ("Creating ZFS pool partition...",
         ["sgdisk", "--new=2:0:0", "--typecode=2:bf00", "--change-name=2:ZFS Pool", disk]),
    ]
    for message, cmd in steps:
        info(message)
        try:
            executor.run(cmd)
        except ExecutorError as e:
            raise RestoreError(f"Partitioning {disk} failed: {e}") from e
    _run_optional(executor, ["partprobe", disk])
    _run_optional(executor, ["udevadm", "settle"])
    info("Formatting EFI partition...")
    try:
        executor.run(["mkfs.fat", "-F32", plan.efi_partition])
    except ExecutorError as e:
        raise RestoreError(f"Failed to format EFI partition {plan.efi_partition}: {e}") from e
    status(f"Partitions created: EFI {plan.efi_partition}, ZFS {plan.zfs_partition}")


def _receive_pool(ctx: "RunContext", plan: RestorePlan) -> None:
    artifact = plan.backup_set.zfs
    info(f"Creating ZFS pool '{plan.pool}' on {plan.zfs_partition}...")
    try:
        zfs.create_pool(plan.pool, plan.zfs_partition, ctx.executor)
    except ExecutorError as e:
        raise RestoreError(f"Failed to create ZFS pool: {e}") from e
    info("Restoring ZFS data from backup; this may take a while...")
    stages = decrypt_stages(artifact.path, artifact.compression, ctx.credentials.passphrase,
                            sink=zfs.receive_cmd(plan.pool))
    try:
        run_pipeline(ctx.executor, stages).check()
    except PipelineError as e:
        raise RestoreError(f"ZFS restoration failed: {e}") from e
    status("ZFS data restored successfully")


def _extract_boot(ctx: "RunContext", plan: RestorePlan) -> None:
    artifact = plan.backup_set.boot
    info("Restoring boot partition...")
    with mounted(ctx.executor, plan.efi_partition, ctx.settings.restore_efi_mount) as mp:
        stages = decrypt_stages(artifact.path, artifact.compression, ctx.credentials.passphrase,
                                sink=["tar", "-xf", "-", "-C", mp])
        try:
            run_pipeline(ctx.executor, stages).check()
        except PipelineError as e:
            raise RestoreError(f"Boot file restoration failed: {e}") from e
    status("Boot files restored successfully")


def _configure_bootfs(ctx: "RunContext", plan: RestorePlan) -> str | None:
    info("Configuring ZFS boot settings...")
    root = zfs.find_root_dataset(plan.pool, zfs.list_datasets(plan.pool, ctx.executor))
    if root is None:
        warning("Could not detect root dataset - set bootfs manually after boot:")
        info(f"  zpool set bootfs={plan.pool}/ROOT/<root-dataset> {plan.pool}")
        return None
    try:
        zfs.set_bootfs(plan.pool, root, ctx.executor)
    except ExecutorError as e:
        warning(f"Failed to set boot filesystem property: {e}")
        info(f"  zpool set bootfs={root.name} {plan.pool}")
        return None
    status(f"Boot filesystem set to: {root.name}")
    return root.name


def _count_files(directory: str) -> int:
    return sum(len(files) for _, _, files in os.walk(directory))


def verify_restoration(ctx: "RunContext", plan: RestorePlan, report: RestoreReport) -> RestoreReport:
    info("Running final verification...")
    report.health = zfs.pool_health(plan.pool, ctx.executor)
    try:
        report.datasets = zfs.count_datasets(plan.pool, ctx.executor)
    except ExecutorError:
        report.datasets = 0
    with mounted(ctx.executor, plan.efi_partition, ctx.settings.restore_efi_mount) as mp:
        report.efi_files = _count_files(mp)

    if report.health == zfs.HEALTHY:
        status(f"ZFS pool '{plan.pool}' is {report.health} with {report.datasets} datasets")
    else:
        warning(f"ZFS pool '{plan.pool}' health: {report.health}")
        zfs.report_pool(plan.pool, ctx.executor)
    status(f"EFI partition contains {report.efi_files} boot files")
    if not report.verified:
        raise RestoreError(
            f"Restoration verification failed (health {report.health}, "
            f"{report.datasets} datasets, {report.efi_files} EFI files)"
        )
    return report


def run_restore(ctx: "RunContext", plan: RestorePlan) -> RestoreReport:
    """Wipe the target disk and restore the set onto it.

    Refuses to touch the disk until the plan is confirmed with the literal
    token and the stored passphrase decrypts a complete backup set.
    """
    if not plan.confirmed:
        raise RestoreError(f"Restore not confirmed: type '{CONFIRM_TOKEN}' to erase {plan.disk}")
    if not plan.backup_set.complete:
        raise RestoreError(f"Incomplete backup set {plan.backup_set.timestamp} - "
                           "missing boot or ZFS file")
    if not verify_passphrase(ctx.executor, plan.backup_set.boot, ctx.credentials.passphrase):
        raise CredentialsError(
            f"Cannot decrypt {plan.backup_set.boot.name} - wrong encryption password?"
        )

    header("STARTING RESTORE PROCESS")
    report = RestoreReport(disk=plan.disk, pool=plan.pool)
    partition_disk(ctx.executor, plan, ctx.settings.efi_size)
    _receive_pool(ctx, plan)
    _extract_boot(ctx, plan)
    report.bootfs = _configure_bootfs(ctx, plan)
    verify_restoration(ctx, plan, report)

    header("RESTORE COMPLETED SUCCESSFULLY!")
    status(f"System has been restored to {plan.disk}")
    print("Next steps:")
    print("1. Remove live USB/CD")
    print("2. Reboot the system")
    print("3. System should boot normally")
    print()
    print("If the system doesn't boot:")
    print("- Check BIOS/UEFI settings")
    print("- Verify EFI boot entries with: efibootmgr -v")
    print("- Check ZFS pool status with: zpool status")
    return report


def is_live_system(cmdline: str = "/proc/cmdline",
                   environ: Mapping[str, str] | None = None) -> bool:
    environ = os.environ if environ is None else environ
    if os.path.isdir("/rw") or environ.get("LIVE_MEDIA"):
        return True
    try:
        return "live" in Path(cmdline).read_text()
    except OSError:
        return False


def check_live_system() -> None:
    info("Checking system environment...")
    if is_live_system():
        status("Running in live environment")
        return
    warning("Not detected as live system - proceed with caution!")
    print("Restore should be run from a live USB/CD; continuing may damage the running system.")
    if not prompt.confirm("Continue anyway?"):
        raise Cancelled("Restore cancelled")


def choose_backup_set(ctx: "RunContext", directory: Path) -> BackupSet:
    info(f"Scanning for backup files in {directory}...")
    sets = discover_backup_sets(directory)
    if not sets:
        raise RestoreError(f"No backup files found in {directory}")
    labels = []
    for backup_set in sets:
        lines = [f"Backup Set: {backup_set.timestamp}"
                 + ("" if backup_set.complete else " (INCOMPLETE)")]
        for artifact in backup_set.artifacts():
            kind = "Boot partition" if artifact.kind is ArtifactKind.BOOT else "ZFS data"
            lines.append(f"   - {kind}: {artifact.name} ({human_size(artifact.size)})")
        labels.append("\n".join(lines))
    print("Available backup sets:")
    print("=====================")
    chosen = prompt.select_item(sets, labels, "Select backup set")
    if not chosen.complete:
        raise RestoreError("Incomplete backup set - missing boot or ZFS file")
    status(f"Selected backup set: {chosen.timestamp}")
    status(f"Boot file: {chosen.boot.name}")
    status(f"ZFS file: {chosen.zfs.name}")
    status(f"Compression: {chosen.compression.label}")
    return chosen


def obtain_passphrase(ctx: "RunContext", artifact: Artifact) -> str:
    """Use the stored passphrase if it decrypts the artifact, else ask."""
    header("ENCRYPTION PASSWORD")
    stored = ctx.credentials.passphrase
    if stored:
        info("Using stored encryption password")
        if verify_passphrase(ctx.executor, artifact, stored):
            status("Password verification successful")
            return stored
        warning("Stored password doesn't work, requesting new one")
    passphrase = prompt.ask_secret("Backup encryption password", timeout=ctx.user_timeout)
    if len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise CredentialsError(f"Password too short (minimum {MIN_PASSPHRASE_LENGTH} characters)")
    info("Verifying encryption password...")
    if not verify_passphrase(ctx.executor, artifact, passphrase):
        raise CredentialsError("Password verification failed")
    status("Password verification successful")
    ctx.credentials.passphrase = passphrase
    return passphrase


def choose_target_disk(ctx: "RunContext") -> tuple[str, str]:
    """Return (disk, confirmation) after the explicit wipe warning."""
    header("TARGET DISK SELECTION")
    warning("Target disk will be COMPLETELY ERASED!")
    disks = ctx.inspector.list_disks()
    if not disks:
        raise RestoreError("No disks found")
    disk = prompt.select_item(disks, [d.label for d in disks], "Select target disk")
    warning(f"Selected disk: {disk.path}")
    warning("ALL DATA ON THIS DISK WILL BE LOST!")
    confirmation = prompt.confirm_token("Are you absolutely sure?", CONFIRM_TOKEN)
    if confirmation != CONFIRM_TOKEN:
        raise Cancelled("Operation cancelled")
    return disk.path, confirmation


def interactive_restore(ctx: "RunContext", source) -> RestoreReport:
    """Drive a restore from ``source``: pick a set, check the password, pick a disk."""
    with source.open(ctx, write=False) as directory:
        backup_set = choose_backup_set(ctx, directory)
        obtain_passphrase(ctx, backup_set.boot)
        disk, confirmation = choose_target_disk(ctx)
        plan = plan_restore(disk, ctx.pool, backup_set, confirmation)

        header("RESTORE SUMMARY")
        print(f"Boot backup: {backup_set.boot.name}")
        print(f"ZFS backup:  {backup_set.zfs.name}")
        print(f"Target disk: {plan.disk} (EFI {plan.efi_partition}, ZFS {plan.zfs_partition})")
        print(f"Pool:        {plan.pool}")
        print(f"Compression: {backup_set.compression.label}")
        print()
        warning(f"This will COMPLETELY ERASE {plan.disk}!")
        if not prompt.confirm("Continue with restore?"):
            raise Cancelled("Restore cancelled")
        return run_restore(ctx, plan)
