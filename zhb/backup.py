"""Hybrid backup: EFI partition as an encrypted tar, the pool as an encrypted send stream."""
from __future__ import annotations

import os
import time
from pathlib import Path
from typing import TYPE_CHECKING

from zhb import prompt, zfs
from zhb.detect import detect_system_components
from zhb.errors import BackupError, PipelineError
from zhb.instructions import write_instructions
from zhb.models import (
    Artifact,
    BackupSet,
    Compression,
    SystemComponents,
    boot_artifact_name,
    format_duration,
    human_size,
    make_timestamp,
    zfs_artifact_name,
)
from zhb.mounts import require_free_space
from zhb.output import debug, header, info, status, warning
from zhb.snapshot import BackupSnapshot, create_or_reuse, snapshot_policy
from zhb.streams import decrypt_stages, encrypt_stages, pipeline_to_file, read_head

if TYPE_CHECKING:
    from zhb.context import RunContext
    from zhb.targets import Target

SMOKE_TEST_BYTES = 1024


def _discard(path: Path) -> None:
    try:
        path.unlink()
        debug(f"Removed partial file {path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        warning(f"Could not remove partial file {path}: {e}")


def _encrypt_to_file(ctx: "RunContext", source: list[str], dest: Path,
                     progress_interval: float | None = None) -> None:
    """source | compressor | gpg > dest. The file is removed if anything fails."""
    settings = ctx.settings
    stages = encrypt_stages(source, settings.compression, settings.cipher,
                            ctx.credentials.passphrase)
    try:
        pipeline_to_file(ctx.executor, stages, dest, progress_interval).check()
        if dest.stat().st_size == 0:
            raise BackupError(f"Backup file is empty: {dest.name}")
    except (PipelineError, OSError) as e:
        _discard(dest)
        raise BackupError(f"Failed to write {dest.name}: {e}") from e
    except BaseException:
        _discard(dest)
        raise


def smoke_test(ctx: "RunContext", path: Path) -> None:
    """Decrypt the first kilobyte of a fresh artifact."""
    data, _ = read_head(
        ctx.executor,
        decrypt_stages(path, Compression.NONE, ctx.credentials.passphrase),
        SMOKE_TEST_BYTES,
    )
    if not data:
        raise BackupError(f"Decryption smoke test failed for {path.name}")
    debug(f"Smoke test passed for {path.name}")


def _backup_boot(ctx: "RunContext", path: Path) -> float:
    status("Step 1: Backing up boot partition files...")
    started = time.monotonic()
    _encrypt_to_file(ctx, ["tar", "-cf", "-", "-C", ctx.settings.efi_mount, "."], path)
    if ctx.settings.smoke_test:
        try:
            smoke_test(ctx, path)
        except BaseException:
            _discard(path)
            raise
    elapsed = time.monotonic() - started
    status(f"Boot partition backup completed in {format_duration(elapsed)} "
           f"({human_size(path.stat().st_size)})")
    return elapsed


def _backup_pool(ctx: "RunContext", backup_snapshot: BackupSnapshot, path: Path) -> float:
    status("Step 2: Streaming ZFS backup...")
    info("This may take a while depending on data size...")
    started = time.monotonic()
    _encrypt_to_file(ctx, zfs.send_cmd(backup_snapshot.snapshot), path,
                     ctx.settings.progress_interval)
    elapsed = time.monotonic() - started
    status(f"ZFS backup completed in {format_duration(elapsed)} "
           f"({human_size(path.stat().st_size)})")
    return elapsed


def write_backup_set(ctx: "RunContext", directory: Path, backup_snapshot: BackupSnapshot,
                     timestamp: str, method: str) -> BackupSet:
    """Write both artifacts and the instructions into ``directory``.

    If the pool step fails, the boot artifact written before it is removed
    too, so a failed run leaves no half set behind.
    """
    settings = ctx.settings
    boot_path = directory / boot_artifact_name(timestamp, settings.compression)
    zfs_path = directory / zfs_artifact_name(settings.backup_prefix, timestamp,
                                             settings.compression)

    boot_secs = _backup_boot(ctx, boot_path)
    try:
        zfs_secs = _backup_pool(ctx, backup_snapshot, zfs_path)
    except BaseException:
        _discard(boot_path)
        raise

    boot = Artifact.parse(boot_path)
    zfs_artifact = Artifact.parse(zfs_path)
    instructions = write_instructions(
        directory,
        timestamp,
        boot=boot,
        zfs_artifact=zfs_artifact,
        pool=ctx.pool,
        compression=settings.compression,
        cipher=settings.cipher,
        method=method,
        boot_duration=format_duration(boot_secs),
        zfs_duration=format_duration(zfs_secs),
        duration=format_duration(boot_secs + zfs_secs),
        efi_size=settings.efi_size,
    )
    debug(f"Restore instructions written to: {instructions}")
    return BackupSet(timestamp, boot=boot, zfs=zfs_artifact, instructions=instructions)


def run_backup(
    ctx: "RunContext",
    target: "Target",
    components: SystemComponents | None = None,
    timestamp: str | None = None,
) -> BackupSet:
    """Run one hybrid backup onto ``target``. Returns the written set.

    The free-space check happens before the snapshot is taken, so a full
    target never leaves a snapshot behind.
    """
    settings = ctx.settings
    timestamp = timestamp or make_timestamp()

    if components is None:
        ask = None if ctx.auto else (lambda msg: prompt.ask(msg, timeout=ctx.user_timeout))
        components = detect_system_components(ctx.inspector, ctx.pool, settings.efi_mount, ask=ask)
    if not os.path.isdir(settings.efi_mount):
        raise BackupError(f"EFI boot directory not found at {settings.efi_mount}")

    header(f"HYBRID BACKUP: {target.label}")
    used = zfs.pool_used(ctx.pool, ctx.executor)
    info(f"Backing up: EFI partition {components.efi_partition} + ZFS pool '{ctx.pool}'"
         + (f" ({human_size(used)} used)" if used else ""))

    with target.open(ctx) as directory:
        available = require_free_space(ctx.executor, str(directory), settings.min_free_bytes)
        status(f"Available space: {human_size(available)}")
        backup_snapshot = create_or_reuse(ctx, timestamp)
        with snapshot_policy(ctx, backup_snapshot):
            backup_set = write_backup_set(ctx, directory, backup_snapshot, timestamp,
                                          target.method)
        header("HYBRID BACKUP COMPLETED")
        status(f"Boot partition: {backup_set.boot.name} ({human_size(backup_set.boot.size)})")
        status(f"ZFS data: {backup_set.zfs.name} ({human_size(backup_set.zfs.size)})")
        status(f"Location: {target.label}")
    return backup_set
