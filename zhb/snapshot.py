"""Create-or-reuse of the backup snapshot and its cleanup policy."""
from __future__ import annotations

import contextlib
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator

from zhb import prompt, zfs
from zhb.errors import Interrupted, SnapshotError
from zhb.executor import ExecutorError
from zhb.models import Snapshot, human_size
from zhb.output import header, info, status, warning

if TYPE_CHECKING:
    from zhb.context import RunContext


@dataclass
class BackupSnapshot:
    snapshot: Snapshot
    created: bool  # made by this run, as opposed to reused

    @property
    def full_name(self) -> str:
        return self.snapshot.full_name


def create_or_reuse(ctx: "RunContext", timestamp: str) -> BackupSnapshot:
    """Make <pool>@backup-<timestamp>, or reuse one left by an earlier run.

    Auto mode reuses an existing snapshot silently; interactive mode asks
    whether to reuse it or destroy and recreate it.
    """
    header("SNAPSHOT CREATION")
    snap = Snapshot.for_backup(ctx.pool, timestamp)

    if zfs.snapshot_exists(snap, ctx.executor):
        warning(f"Snapshot already exists: {snap.full_name}")
        info("This might be from a previous failed backup")
        if ctx.auto or prompt.confirm("Reuse existing snapshot?"):
            status(f"Reusing existing snapshot: {snap.full_name}")
            return BackupSnapshot(snap, created=False)
        info("Destroying old snapshot and creating new one...")
        try:
            zfs.destroy_snapshot(snap, ctx.executor)
        except ExecutorError as e:
            raise SnapshotError(f"Failed to remove old snapshot {snap.full_name}: {e}") from e

    try:
        zfs.create_snapshot(snap, ctx.executor)
    except ExecutorError as e:
        zfs.report_pool(ctx.pool, ctx.executor)
        raise SnapshotError(f"Failed to create ZFS snapshot {snap.full_name}: {e}") from e
    status(f"Snapshot created: {snap.full_name}")

    used = zfs.snapshot_used(snap, ctx.executor)
    if used:
        info(f"Snapshot size: {human_size(used)}")
    return BackupSnapshot(snap, created=True)


def _remove(ctx: "RunContext", backup_snapshot: BackupSnapshot) -> None:
    try:
        zfs.destroy_snapshot(backup_snapshot.snapshot, ctx.executor)
        status(f"Snapshot removed: {backup_snapshot.full_name}")
    except ExecutorError as e:
        warning(f"Failed to remove snapshot {backup_snapshot.full_name}: {e}")


@contextlib.contextmanager
def snapshot_policy(ctx: "RunContext", backup_snapshot: BackupSnapshot) -> Iterator[BackupSnapshot]:
    """Apply the snapshot retention rules when the block exits.

    success   -> removed unless keep_snapshot
    failure   -> kept unless remove_snapshot_on_failure
    interrupt -> removed if this run created it, unless keep_snapshot
    """
    settings = ctx.settings
    try:
        yield backup_snapshot
    except (Interrupted, KeyboardInterrupt):
        if backup_snapshot.created and not settings.keep_snapshot:
            _remove(ctx, backup_snapshot)
        else:
            info(f"Snapshot kept: {backup_snapshot.full_name}")
        raise
    except Exception:
        if settings.remove_snapshot_on_failure:
            _remove(ctx, backup_snapshot)
        else:
            info(f"Snapshot kept for inspection: {backup_snapshot.full_name}")
        raise
    if settings.keep_snapshot:
        info(f"Snapshot kept: {backup_snapshot.full_name}")
    else:
        _remove(ctx, backup_snapshot)
