"""Guided credential entry and the first-run setup wizard."""
from __future__ import annotations

from typing import TYPE_CHECKING

from zhb import prompt, zfs
from zhb.config import save_credentials
from zhb.errors import ConfigError, CredentialsError
from zhb.executor import ExecutorError
from zhb.models import MIN_PASSPHRASE_LENGTH, Credentials
from zhb.output import header, info, status, warning
from zhb.targets import check_nas_connectivity, prompt_nas_settings

if TYPE_CHECKING:
    from zhb.context import RunContext

PASSPHRASE_ATTEMPTS = 3
CRON_LINE = "0 2 * * 0  zfs-backup --auto"


def prompt_passphrase(ctx: "RunContext") -> str:
    """Ask for a new passphrase twice. Gives up after a few bad attempts."""
    print(f"Use a strong password (minimum {MIN_PASSPHRASE_LENGTH} characters).")
    warning("You'll need this password to restore backups!")
    for _ in range(PASSPHRASE_ATTEMPTS):
        first = prompt.ask_secret("Enter encryption password", timeout=ctx.user_timeout)
        if len(first) < MIN_PASSPHRASE_LENGTH:
            warning(f"Password must be at least {MIN_PASSPHRASE_LENGTH} characters long")
            continue
        second = prompt.ask_secret("Confirm encryption password", timeout=ctx.user_timeout)
        if first != second:
            warning("Passwords do not match")
            continue
        return first
    raise CredentialsError("No valid encryption password entered")


def _passphrase_ok(creds: Credentials) -> bool:
    return len(creds.passphrase) >= MIN_PASSPHRASE_LENGTH


def _offer_save(ctx: "RunContext") -> None:
    path = ctx.settings.credentials_path
    if prompt.confirm(f"Save credentials to {path}?"):
        save_credentials(path, ctx.credentials, ctx.pool)
        status(f"Credentials saved to {path} (mode 600)")
    else:
        info("Credentials used for this run only")


def ensure_credentials(ctx: "RunContext") -> Credentials:
    """Make sure the run has a usable passphrase and complete NAS settings.

    Auto mode cannot ask, so incomplete credentials are fatal there.
    """
    creds = ctx.credentials
    problems = creds.problems()
    if not problems:
        status("Credentials loaded")
        return creds

    if ctx.auto:
        raise CredentialsError(
            f"Credentials incomplete ({'; '.join(problems)}); "
            "run 'zfs-backup setup' first"
        )

    header("CREDENTIAL SETUP")
    for problem in problems:
        warning(problem)
    if not _passphrase_ok(creds):
        creds.passphrase = prompt_passphrase(ctx)
    if creds.nas is not None and creds.nas.missing():
        creds.nas = prompt_nas_settings(ctx, creds.nas)
    _offer_save(ctx)
    return creds


def run_setup(ctx: "RunContext") -> Credentials:
    """First-run wizard: pool, passphrase, NAS settings, save, test."""
    header("ZFS HYBRID BACKUP SETUP")
    try:
        pools = zfs.list_pools(ctx.executor)
    except ExecutorError as e:
        raise ConfigError(f"Cannot list ZFS pools: {e}") from e
    if pools:
        print("Available ZFS pools:")
        for name in pools:
            print(f"  {name}")
    else:
        warning("No ZFS pools found")

    default = ctx.pool if ctx.pool in pools or not pools else pools[0]
    pool = prompt.ask("ZFS pool to back up", default, timeout=ctx.user_timeout)
    if not zfs.pool_exists(pool, ctx.executor):
        raise ConfigError(f"ZFS pool '{pool}' not found")
    ctx.pool = pool
    status(f"Using pool: {pool}")

    creds = ctx.credentials
    header("ENCRYPTION PASSWORD")
    if _passphrase_ok(creds) and prompt.confirm("Keep the existing encryption password?"):
        info("Keeping existing encryption password")
    else:
        creds.passphrase = prompt_passphrase(ctx)

    header("NAS SETTINGS")
    if prompt.confirm("Configure a NAS backup target?"):
        creds.nas = prompt_nas_settings(ctx, creds.nas)
    else:
        info("No NAS configured; backups will go to USB drives")

    path = ctx.settings.credentials_path
    save_credentials(path, creds, pool)
    status(f"Credentials saved to {path} (mode 600)")

    if creds.nas is not None:
        header("NAS CONNECTIVITY TEST")
        if check_nas_connectivity(ctx, creds.nas):
            status("NAS connectivity test passed")
        else:
            warning("NAS connectivity test failed; check the settings and re-run setup")

    header("SETUP COMPLETE")
    print("Next steps:")
    print("  1. Run a backup now:          zfs-backup")
    print("  2. Test NAS connectivity:     zfs-backup test-nas")
    print("  3. Schedule automatic backups (crontab -e):")
    print(f"       {CRON_LINE}")
    print("  4. Keep the encryption password somewhere safe; restores need it.")
    return creds
