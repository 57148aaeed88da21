"""ZFS operations using an Executor for dependency injection."""
from __future__ import annotations

import shlex
from typing import TYPE_CHECKING

from zhb.errors import PrerequisiteError
from zhb.executor import ExecutorError
from zhb.models import Dataset, Snapshot
from zhb.output import debug, info, status, warning

if TYPE_CHECKING:
    from zhb.executor import Executor

HEALTHY = "ONLINE"
USABLE = ("ONLINE", "DEGRADED")
UNAVAILABLE = ("FAULTED", "OFFLINE", "UNAVAIL")


def list_pools(executor: "Executor") -> list[str]:
    output = executor.run(["zpool", "list", "-H", "-o", "name"])
    return [line.strip() for line in output.splitlines() if line.strip()]


def pool_exists(pool: str, executor: "Executor") -> bool:
    try:
        executor.run(["zpool", "list", "-H", "-o", "name", pool])
        return True
    except ExecutorError:
        return False


def pool_health(pool: str, executor: "Executor") -> str:
    try:
        return executor.run(["zpool", "list", "-H", "-o", "health", pool]).strip() or "UNKNOWN"
    except ExecutorError:
        return "UNKNOWN"


def validate_pool(pool: str, executor: "Executor") -> str:
    """Check that the pool exists and is usable. Returns its health.

    DEGRADED and unknown states only warn; FAULTED, OFFLINE and UNAVAIL
    raise PrerequisiteError.
    """
    if not pool_exists(pool, executor):
        try:
            others = list_pools(executor)
        except ExecutorError:
            others = []
        hint = f" (available: {', '.join(others)})" if others else " (no pools found)"
        raise PrerequisiteError(f"ZFS pool '{pool}' not found{hint}; use --pool POOL_NAME")
    health = pool_health(pool, executor)
    if health == HEALTHY:
        status(f"ZFS pool '{pool}' is healthy ({health})")
    elif health == "DEGRADED":
        warning(f"ZFS pool '{pool}' is degraded but usable")
    elif health in UNAVAILABLE:
        raise PrerequisiteError(f"ZFS pool '{pool}' is not available ({health})")
    else:
        warning(f"ZFS pool '{pool}' status unknown: {health}")
    return health


def pool_used(pool: str, executor: "Executor") -> int | None:
    try:
        return int(executor.run(["zfs", "list", "-H", "-p", "-o", "used", pool]).strip())
    except (ExecutorError, ValueError):
        return None


def list_datasets(pool: str, executor: "Executor") -> list[Dataset]:
    """Return all datasets in a pool (excluding the pool root itself)."""
    output = executor.run(["zfs", "list", "-H", "-o", "name", "-r", pool])
    results = []
    for line in output.splitlines():
        name = line.strip()
        if name and name != pool:
            results.append(Dataset(name=name))
    return results


def count_datasets(pool: str, executor: "Executor") -> int:
    """Count the datasets in a pool, the pool root included."""
    output = executor.run(["zfs", "list", "-H", "-o", "name", "-r", pool])
    return sum(1 for line in output.splitlines() if line.strip())


def find_root_dataset(pool: str, datasets: list[Dataset]) -> Dataset | None:
    """Pick the boot root dataset.

    Children of <pool>/ROOT come first (the direct ones before deeper
    ones); otherwise the first dataset with "root" in its name, in any case.
    """
    children = []
    for d in datasets:
        parts = d.name.split("/")
        if len(parts) > 2 and parts[1].lower() == "root":
            children.append(d)
    direct = [d for d in children if d.name.count("/") == 2]
    if direct:
        return direct[0]
    if children:
        return children[0]
    for d in datasets:
        if "root" in d.name.partition("/")[2].lower():
            return d
    return None


def set_bootfs(pool: str, dataset: Dataset, executor: "Executor") -> None:
    executor.run(["zpool", "set", f"bootfs={dataset.name}", pool])


def create_pool(pool: str, device: str, executor: "Executor") -> None:
    cmd = ["zpool", "create", "-f", pool, device]
    debug(f"[zpool] {shlex.join(cmd)}")
    executor.run(cmd)


def snapshot_exists(snapshot: Snapshot, executor: "Executor") -> bool:
    """Return True if the snapshot exists."""
    try:
        executor.run(["zfs", "list", "-H", "-o", "name", "-t", "snapshot", snapshot.full_name])
        return True
    except ExecutorError:
        return False


def create_snapshot(snapshot: Snapshot, executor: "Executor") -> None:
    """Create a recursive snapshot."""
    cmd = ["zfs", "snapshot", "-r", snapshot.full_name]
    debug(f"[snapshot] {shlex.join(cmd)}")
    executor.run(cmd)


def destroy_snapshot(snapshot: Snapshot, executor: "Executor") -> None:
    """Destroy a snapshot and its same-named descendants."""
    cmd = ["zfs", "destroy", "-r", snapshot.full_name]
    debug(f"[destroy] {shlex.join(cmd)}")
    executor.run(cmd)


def snapshot_used(snapshot: Snapshot, executor: "Executor") -> int:
    try:
        return int(executor.run(["zfs", "list", "-H", "-p", "-o", "used", snapshot.full_name]).strip())
    except (ExecutorError, ValueError):
        return 0


def send_cmd(snapshot: Snapshot) -> list[str]:
    """Replication stream of the snapshot with all descendants and properties."""
    return ["zfs", "send", "-R", snapshot.full_name]


def receive_cmd(pool: str) -> list[str]:
    return ["zfs", "receive", "-F", "-u", pool]


def receive_dry_run_cmd(target: str) -> list[str]:
    return ["zfs", "receive", "-n", "-v", target]


def report_pool(pool: str, executor: "Executor") -> None:
    """Print zpool status for diagnosis after a failure."""
    try:
        info(executor.run(["zpool", "status", pool]).rstrip())
    except ExecutorError:
        warning(f"Cannot retrieve status of pool {pool}")
