"""Load YAML settings and the key=value credentials file."""
from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Mapping

import yaml

from zhb.errors import ConfigError, CredentialsError
from zhb.models import Compression, Credentials, NasCredentials, NasDefaults, Settings

DEFAULT_SETTINGS_PATH = "/etc/zfs-hybrid-backup.yaml"
SETTINGS_ENV = "ZHB_CONFIG"

# credentials file key -> environment override
CREDENTIAL_KEYS = {
    "encryption_password": "BACKUP_ENCRYPTION_PASSWORD",
    "zfs_pool": None,
    "nas_ip": "BACKUP_NAS_IP",
    "nas_share": "BACKUP_NAS_SHARE",
    "nas_backup_path": "BACKUP_NAS_PATH",
    "nas_username": "BACKUP_NAS_USER",
    "nas_password": "BACKUP_NAS_PASSWORD",
}
NAS_KEYS = ("nas_ip", "nas_share", "nas_backup_path", "nas_username", "nas_password")

_BOOL_KEYS = ("keep_snapshot", "remove_snapshot_on_failure", "smoke_test")
_STR_KEYS = (
    "pool", "backup_prefix", "cipher", "efi_mount", "temp_mount", "usb_mount",
    "restore_efi_mount", "restore_source_mount", "credentials_file", "efi_size",
)


def settings_path(explicit: str | None = None,
                  environ: Mapping[str, str] | None = None) -> str | None:
    """Pick the settings file: --config, then $ZHB_CONFIG, then the system default."""
    environ = os.environ if environ is None else environ
    if explicit:
        return explicit
    if environ.get(SETTINGS_ENV):
        return environ[SETTINGS_ENV]
    if os.path.exists(DEFAULT_SETTINGS_PATH):
        return DEFAULT_SETTINGS_PATH
    return None


def load_settings(path: str | None) -> Settings:
    """Load settings from YAML. A None path yields the defaults."""
    if path is None:
        return Settings()
    with open(path) as f:
        raw = yaml.safe_load(f)
    if raw is None:
        return Settings()
    if not isinstance(raw, dict):
        raise ConfigError(f"Config must be a YAML mapping: {path}")

    settings = Settings()

    for key in _STR_KEYS:
        if key in raw:
            value = raw[key]
            if value is None or not str(value).strip():
                raise ConfigError(f"{key} must not be empty")
            setattr(settings, key, str(value).strip())

    if "log_file" in raw:
        value = raw["log_file"]
        settings.log_file = str(value) if value else None

    for key in _BOOL_KEYS:
        if key in raw:
            if not isinstance(raw[key], bool):
                raise ConfigError(f"{key} must be true or false, got {raw[key]!r}")
            setattr(settings, key, raw[key])

    if "compression" in raw:
        try:
            settings.compression = Compression.parse(str(raw["compression"]))
        except ValueError as e:
            raise ConfigError(f"{e} (expected none, gzip, xz or lz4)")

    settings.min_free_gb = _int(raw, "min_free_gb", settings.min_free_gb, minimum=0)
    settings.progress_interval = float(
        _int(raw, "progress_interval", int(settings.progress_interval), minimum=1)
    )

    timeouts = raw.get("timeouts") or {}
    if not isinstance(timeouts, dict):
        raise ConfigError("timeouts must be a mapping")
    settings.nas_timeout = _int(timeouts, "nas", settings.nas_timeout, minimum=1)
    settings.user_timeout = _int(timeouts, "user", settings.user_timeout, minimum=1)

    nas_raw = raw.get("nas") or {}
    if not isinstance(nas_raw, dict):
        raise ConfigError("nas must be a mapping")
    defaults = NasDefaults()
    settings.nas = NasDefaults(
        host=str(nas_raw.get("host", defaults.host)),
        share=str(nas_raw.get("share", defaults.share)),
        path=str(nas_raw.get("path", defaults.path) or ""),
    )

    return settings


def _int(raw: dict, key: str, default: int, minimum: int) -> int:
    if key not in raw:
        return default
    try:
        value = int(raw[key])
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got {raw[key]!r}")
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def parse_key_values(text: str) -> dict[str, str]:
    """Parse line-oriented key=value pairs; '#' lines and blanks are skipped."""
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value
    return values


def load_credentials(
    path: Path | str,
    settings: Settings | None = None,
    environ: Mapping[str, str] | None = None,
) -> Credentials:
    """Load credentials from the file, then apply environment overrides.

    Never raises for missing or incomplete data: check
    ``Credentials.needs_setup`` / ``problems()`` instead.
    """
    settings = settings or Settings()
    environ = os.environ if environ is None else environ
    path = Path(path).expanduser()

    values: dict[str, str] = {}
    try:
        values = {
            k: v for k, v in parse_key_values(path.read_text()).items()
            if k in CREDENTIAL_KEYS
        }
    except FileNotFoundError:
        pass
    except OSError as e:
        raise CredentialsError(f"Cannot read credentials file {path}: {e}")

    for key, env_name in CREDENTIAL_KEYS.items():
        if env_name and environ.get(env_name):
            values[key] = environ[env_name]

    nas = None
    if any(values.get(k) for k in NAS_KEYS):
        nas = NasCredentials(
            host=values.get("nas_ip") or settings.nas.host,
            share=values.get("nas_share") or settings.nas.share,
            path=values.get("nas_backup_path", settings.nas.path),
            user=values.get("nas_username", ""),
            password=values.get("nas_password", ""),
        )

    return Credentials(
        passphrase=values.get("encryption_password", ""),
        nas=nas,
        pool=values.get("zfs_pool") or None,
    )


def save_credentials(path: Path | str, creds: Credentials, pool: str) -> None:
    """Write every recognized key, then restrict the file to mode 600.

    If the permissions cannot be set the file is removed; an unprotected
    secrets file is never left behind.
    """
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    nas = creds.nas or NasCredentials()
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    lines = [
        "# ZFS Backup System Credentials",
        f"# Created: {now}",
        "# SECURITY: Keep this file secure with chmod 600",
        "",
        "# Backup Encryption (CRITICAL - needed for restore)",
        f"encryption_password={creds.passphrase}",
        "",
        "# ZFS Pool Configuration",
        f"zfs_pool={pool}",
        "",
        "# NAS Connection Settings",
        f"nas_ip={nas.host}",
        f"nas_share={nas.share}",
        f"nas_backup_path={nas.path}",
        "",
        "# NAS Authentication",
        f"nas_username={nas.user}",
        f"nas_password={nas.password}",
        "",
    ]
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write("\n".join(lines))
    try:
        os.chmod(path, 0o600)
    except OSError as e:
        path.unlink(missing_ok=True)
        raise CredentialsError(f"Failed to set secure permissions on {path}: {e}")
