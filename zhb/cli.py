"""CLI entry points: zfs-backup, zfs-restore and zfs-integrity-check."""
from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

from zhb.config import load_credentials, load_settings, settings_path
from zhb.context import RunContext, signals_interrupt
from zhb.devices import DeviceInspector
from zhb.errors import Cancelled, ConfigError, Interrupted, ZhbError
from zhb.executor import ExecutorError, LocalExecutor
from zhb.models import Compression, Settings, format_duration
from zhb.output import error, header, info, setup_logging, status, warning


def _context(args, auto: bool = False) -> RunContext:
    """Load settings and credentials, set up logging, resolve the pool."""
    try:
        settings = load_settings(settings_path(args.config))
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {e.filename}")
    setup_logging(settings.log_file, args.debug)
    creds = load_credentials(settings.credentials_path, settings)
    pool = getattr(args, "pool", None) or settings.pool or creds.pool or Settings.DEFAULT_POOL
    executor = LocalExecutor()
    return RunContext(settings, creds, executor, DeviceInspector(executor),
                      auto=auto, pool=pool)


def _guarded(func, args) -> int:
    """Run a command handler and map its outcome to an exit code."""
    try:
        with signals_interrupt():
            return func(args)
    except Cancelled as e:
        info(str(e) or "Cancelled by user")
        return 0
    except (Interrupted, KeyboardInterrupt):
        print()
        error("Interrupted - cleanup completed")
        return 130
    except (ZhbError, ExecutorError) as e:
        error(str(e))
        return 1


def cmd_backup(args) -> int:
    from zhb import zfs
    from zhb.backup import run_backup
    from zhb.models import make_timestamp
    from zhb.system import backup_commands, check_requirements
    from zhb.targets import NasTarget, select_backup_target, select_usb_device
    from zhb.wizard import ensure_credentials

    with _context(args, auto=args.auto) as ctx:
        header("ZFS HYBRID BACKUP" + (" (AUTO MODE)" if ctx.auto else ""))
        check_requirements(ctx.executor, backup_commands(ctx.settings.compression))
        zfs.validate_pool(ctx.pool, ctx.executor)
        ensure_credentials(ctx)

        started = time.monotonic()
        timestamp = make_timestamp()
        target = select_backup_target(ctx)
        try:
            backup_set = run_backup(ctx, target, timestamp=timestamp)
        except Cancelled:
            raise
        except (ZhbError, ExecutorError) as e:
            if ctx.auto or not isinstance(target, NasTarget):
                raise
            error(f"NAS backup failed: {e}")
            warning("Falling back to USB backup")
            target = select_usb_device(ctx)
            backup_set = run_backup(ctx, target, timestamp=timestamp)

        header("BACKUP SUCCESSFUL")
        status(f"Backup set {backup_set.timestamp} written to {target.label}")
        status(f"Total time: {format_duration(time.monotonic() - started)}")
        info("Keep your encryption password safe; it is required for restore")
    return 0


def cmd_setup(args) -> int:
    from zhb.system import check_requirements
    from zhb.wizard import run_setup

    with _context(args) as ctx:
        check_requirements(ctx.executor, ("zfs", "zpool"), optional=())
        run_setup(ctx)
    return 0


def cmd_test_nas(args) -> int:
    from zhb.system import check_requirements
    from zhb.targets import check_nas_connectivity

    with _context(args) as ctx:
        header("NAS CONNECTIVITY TEST")
        check_requirements(ctx.executor, (), optional=("mount.cifs", "ping"))
        nas = ctx.credentials.nas
        if nas is None:
            raise ConfigError("No NAS configured; run 'zfs-backup setup'")
        info(f"Testing {nas.unc}/{nas.path}")
        if not check_nas_connectivity(ctx, nas):
            error("NAS connectivity test FAILED")
            return 1
        status("NAS connectivity test PASSED")
    return 0


def cmd_restore(args) -> int:
    from zhb.restore import check_live_system, interactive_restore
    from zhb.system import RESTORE_COMMANDS, check_requirements
    from zhb.targets import DirectoryTarget, select_restore_source

    with _context(args) as ctx:
        header("ZFS HYBRID RESTORE")
        check_requirements(ctx.executor, RESTORE_COMMANDS)
        check_live_system()
        if args.source:
            source = DirectoryTarget(Path(args.source).expanduser())
        else:
            source = select_restore_source(ctx)
        started = time.monotonic()
        interactive_restore(ctx, source)
        status(f"Total restore time: {format_duration(time.monotonic() - started)}")
    return 0


def _artifact_for(path: Path, compression: Compression | None):
    from zhb.models import Artifact, ArtifactKind

    artifact = Artifact.parse(path)
    if artifact is None:
        warning(f"Unrecognized file name: {path.name}")
        kind = ArtifactKind.BOOT if "boot" in path.name else ArtifactKind.ZFS
        artifact = Artifact(path, kind, compression or Compression.NONE, "")
    return artifact


def _choose_artifacts(ctx: RunContext, directory: Path):
    from zhb import prompt
    from zhb.integrity import analyze_directory

    sets = analyze_directory(directory)
    if not sets:
        raise ZhbError(f"No backup files found in {directory}")
    labels = [
        f"{s.timestamp}: " + ", ".join(a.name for a in s.artifacts())
        + ("" if s.complete else " (INCOMPLETE)")
        for s in sets
    ]
    chosen = prompt.select_item(sets, labels, "Select backup set to verify",
                                timeout=ctx.user_timeout)
    return chosen.artifacts()


def _verify(ctx: RunContext, artifacts, compression: Compression | None) -> int:
    from zhb import prompt
    from zhb.integrity import estimate_size, print_report, print_size_estimate, verify_artifact
    from zhb.models import ArtifactKind

    passphrase = ctx.credentials.passphrase
    if passphrase:
        info("Using stored encryption password")
    else:
        passphrase = prompt.ask_secret("Backup encryption password", timeout=ctx.user_timeout)

    failed = 0
    for artifact in artifacts:
        report = verify_artifact(ctx.executor, artifact, passphrase, compression)
        print_report(report)
        if artifact.kind is ArtifactKind.ZFS and report.passed:
            print_size_estimate(estimate_size(artifact))
        if report.tier == "failed":
            failed += 1
    return 1 if failed else 0


def cmd_verify(args) -> int:
    from zhb.system import check_requirements
    from zhb.targets import select_restore_source

    compression = Compression.parse(args.compression) if args.compression else None
    with _context(args) as ctx:
        header("BACKUP INTEGRITY CHECK")
        check_requirements(ctx.executor, ("gpg",), optional=("zfs", "gzip", "xz", "lz4"),
                           require_root=False)
        if args.path:
            path = Path(args.path).expanduser()
            if path.is_dir():
                return _verify(ctx, _choose_artifacts(ctx, path), compression)
            return _verify(ctx, [_artifact_for(path, compression)], compression)

        source = select_restore_source(ctx)
        with source.open(ctx, write=False) as directory:
            return _verify(ctx, _choose_artifacts(ctx, directory), compression)


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", "-c", help="Path to YAML settings file")
    p.add_argument("--debug", action="store_true", help="Show debug output")


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(
        prog="zfs-backup",
        description="Encrypted hybrid backup of the EFI partition and the ZFS pool",
    )
    parser.add_argument("command", nargs="?", default="backup",
                        choices=["backup", "setup", "test-nas"],
                        help="backup (default), setup wizard, or NAS connectivity test")
    parser.add_argument("--auto", action="store_true",
                        help="Non-interactive mode for cron: NAS only, no prompts")
    parser.add_argument("--pool", "-p", help="ZFS pool to back up (default: rpool)")
    _add_common(parser)

    args = parser.parse_args(argv)
    handlers = {"backup": cmd_backup, "setup": cmd_setup, "test-nas": cmd_test_nas}
    sys.exit(_guarded(handlers[args.command], args))


def restore_main(argv=None) -> None:
    parser = argparse.ArgumentParser(
        prog="zfs-restore",
        description="Restore a hybrid backup set onto a blank disk (run from live media)",
    )
    parser.add_argument("--pool", "-p", help="Name of the pool to create (default: rpool)")
    parser.add_argument("--source", "-s", help="Local directory holding the backup files")
    _add_common(parser)

    args = parser.parse_args(argv)
    sys.exit(_guarded(cmd_restore, args))


def verify_main(argv=None) -> None:
    parser = argparse.ArgumentParser(
        prog="zfs-integrity-check",
        description="Verify backup artifacts without restoring them",
    )
    parser.add_argument("path", nargs="?",
                        help="Backup file or directory (default: choose a source)")
    parser.add_argument("--compression", choices=[c.label for c in Compression],
                        help="Override the compression implied by the file name")
    _add_common(parser)

    args = parser.parse_args(argv)
    sys.exit(_guarded(cmd_verify, args))


if __name__ == "__main__":
    main()
