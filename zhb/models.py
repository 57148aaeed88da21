"""Data models for zfs-hybrid-backup."""
from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

TIMESTAMP_FORMAT = "%Y%m%d-%H%M"
TIMESTAMP_RE = r"\d{8}-\d{4}"

BOOT_PREFIX = "boot-partition"
INSTRUCTIONS_PREFIX = "RESTORE-HYBRID"

MIN_PASSPHRASE_LENGTH = 12


def make_timestamp(now: datetime | None = None) -> str:
    """Return the backup timestamp token (YYYYMMDD-HHMM)."""
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


class Compression(enum.Enum):
    """Compression filter applied between the data source and gpg.

    Each variant carries its file extension and the argv of its encode,
    decode and integrity-test commands. All of them filter stdin to stdout.
    """
    NONE = ("none", "", None, None, None)
    GZIP = ("gzip", "gz", ("gzip", "-c"), ("gzip", "-dc"), ("gzip", "-t"))
    XZ = ("xz", "xz", ("xz", "-c", "-T0"), ("xz", "-dc"), ("xz", "-t"))
    LZ4 = ("lz4", "lz4", ("lz4", "-c"), ("lz4", "-dc"), ("lz4", "-t"))

    def __init__(self, label, extension, encode, decode, test):
        self.label = label
        self.extension = extension
        self._encode = encode
        self._decode = decode
        self._test = test

    @property
    def encode_cmd(self) -> list[str] | None:
        return list(self._encode) if self._encode else None

    @property
    def decode_cmd(self) -> list[str] | None:
        return list(self._decode) if self._decode else None

    @property
    def test_cmd(self) -> list[str] | None:
        return list(self._test) if self._test else None

    @property
    def tool(self) -> str | None:
        return self._encode[0] if self._encode else None

    def suffix(self) -> str:
        """File-name fragment for this compression, e.g. '.gz' or ''."""
        return f".{self.extension}" if self.extension else ""

    @classmethod
    def parse(cls, value: str) -> "Compression":
        wanted = (value or "").strip().lower()
        for member in cls:
            if wanted in (member.label, member.extension) and wanted:
                return member
        raise ValueError(f"Unknown compression: {value!r}")

    @classmethod
    def from_extension(cls, extension: str | None) -> "Compression":
        if not extension:
            return cls.NONE
        for member in cls:
            if member.extension == extension:
                return member
        raise ValueError(f"Unknown compression extension: {extension!r}")


class ArtifactKind(enum.Enum):
    BOOT = "boot"
    ZFS = "zfs"


_BOOT_NAME_RE = re.compile(
    rf"^{BOOT_PREFIX}-(?P<ts>{TIMESTAMP_RE})\.tar(?:\.(?P<ext>gz|xz|lz4))?\.gpg$"
)
_ZFS_NAME_RE = re.compile(
    rf"^(?P<prefix>.+)-(?P<ts>{TIMESTAMP_RE})(?:\.(?P<ext>gz|xz|lz4))?\.gpg$"
)


def boot_artifact_name(timestamp: str, compression: Compression) -> str:
    return f"{BOOT_PREFIX}-{timestamp}.tar{compression.suffix()}.gpg"


def zfs_artifact_name(prefix: str, timestamp: str, compression: Compression) -> str:
    return f"{prefix}-{timestamp}{compression.suffix()}.gpg"


def instructions_name(timestamp: str) -> str:
    return f"{INSTRUCTIONS_PREFIX}-{timestamp}.txt"


@dataclass(frozen=True)
class Artifact:
    """A single encrypted (optionally compressed) backup file."""
    path: Path
    kind: ArtifactKind
    compression: Compression
    timestamp: str

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def size(self) -> int:
        try:
            return self.path.stat().st_size
        except OSError:
            return 0

    @classmethod
    def parse(cls, path: Path | str) -> "Artifact | None":
        """Classify a file by name; return None if it is not an artifact."""
        path = Path(path)
        m = _BOOT_NAME_RE.match(path.name)
        if m:
            return cls(path, ArtifactKind.BOOT,
                       Compression.from_extension(m.group("ext")), m.group("ts"))
        m = _ZFS_NAME_RE.match(path.name)
        if m and not m.group("prefix").startswith(BOOT_PREFIX):
            return cls(path, ArtifactKind.ZFS,
                       Compression.from_extension(m.group("ext")), m.group("ts"))
        return None


@dataclass
class BackupSet:
    """Boot + ZFS artifacts (plus instructions) sharing one timestamp."""
    timestamp: str
    boot: Artifact | None = None
    zfs: Artifact | None = None
    instructions: Path | None = None

    @property
    def complete(self) -> bool:
        return self.boot is not None and self.zfs is not None

    @property
    def incomplete(self) -> bool:
        """Exactly one of the two artifacts exists."""
        return (self.boot is None) != (self.zfs is None)

    @property
    def compression(self) -> Compression | None:
        return self.zfs.compression if self.zfs else None

    def artifacts(self) -> list[Artifact]:
        return [a for a in (self.boot, self.zfs) if a is not None]


@dataclass(frozen=True, order=True)
class Snapshot:
    """A ZFS snapshot: pool/dataset@name."""
    dataset: str
    name: str  # just the snapshot name after '@'

    @property
    def full_name(self) -> str:
        return f"{self.dataset}@{self.name}"

    @classmethod
    def parse(cls, full_name: str) -> "Snapshot":
        dataset, _, name = full_name.partition("@")
        if not name:
            raise ValueError(f"Not a snapshot: {full_name!r}")
        return cls(dataset=dataset, name=name)

    @classmethod
    def for_backup(cls, pool: str, timestamp: str) -> "Snapshot":
        return cls(dataset=pool, name=f"backup-{timestamp}")


@dataclass(frozen=True)
class Dataset:
    name: str  # e.g. rpool/ROOT/pve-1

    @property
    def pool(self) -> str:
        return self.name.split("/")[0]


@dataclass
class NasCredentials:
    host: str = ""
    share: str = ""
    path: str = ""
    user: str = ""
    password: str = ""

    @property
    def unc(self) -> str:
        return f"//{self.host}/{self.share}"

    def missing(self) -> list[str]:
        required = {"host": self.host, "share": self.share,
                    "username": self.user, "password": self.password}
        return [k for k, v in required.items() if not v]


@dataclass
class Credentials:
    passphrase: str = ""
    nas: NasCredentials | None = None
    pool: str | None = None  # zfs_pool key from the credentials file

    def problems(self) -> list[str]:
        problems = []
        if not self.passphrase:
            problems.append("encryption password is missing")
        elif len(self.passphrase) < MIN_PASSPHRASE_LENGTH:
            problems.append(
                f"encryption password is shorter than {MIN_PASSPHRASE_LENGTH} characters"
            )
        if self.nas is not None:
            missing = self.nas.missing()
            if missing:
                problems.append(f"NAS settings incomplete: missing {', '.join(missing)}")
        return problems

    @property
    def needs_setup(self) -> bool:
        return bool(self.problems())

    def scrub(self) -> None:
        """Drop secrets held in memory."""
        self.passphrase = ""
        if self.nas is not None:
            self.nas.password = ""


def partition_path(disk: str, number: int) -> str:
    """Return the device path of partition N of a disk.

    Devices whose name ends in a digit (nvme0n1, mmcblk0, loop0) use a 'p'
    separator; others (sda, vdb) append the number directly.
    """
    if disk and disk[-1].isdigit():
        return f"{disk}p{number}"
    return f"{disk}{number}"


def disk_for_partition(partition: str) -> str:
    """Strip a trailing partition suffix ('pN' or 'N') from a device path."""
    m = re.match(r"^(.*\d)p\d+$", partition)
    if m:
        return m.group(1)
    return re.sub(r"\d+$", "", partition)


@dataclass(frozen=True)
class SystemComponents:
    disk: str
    efi_partition: str
    efi_fstype: str = ""


@dataclass
class BlockDevice:
    path: str
    size: int = 0
    model: str = ""
    mountpoints: list[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        text = f"{self.path} ({human_size(self.size)})"
        if self.model:
            text += f" - {self.model}"
        if self.mountpoints:
            text += f" [Mounted at {', '.join(self.mountpoints)}]"
        return text


@dataclass
class RestorePlan:
    disk: str
    pool: str
    backup_set: BackupSet
    confirmation: str = ""

    @property
    def efi_partition(self) -> str:
        return partition_path(self.disk, 1)

    @property
    def zfs_partition(self) -> str:
        return partition_path(self.disk, 2)

    @property
    def confirmed(self) -> bool:
        return self.confirmation == "YES"


def human_size(size_bytes: int | None) -> str:
    if not size_bytes:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    minutes, secs = divmod(seconds, 60)
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


@dataclass
class NasDefaults:
    host: str = "192.168.1.100"
    share: str = "backups"
    path: str = "NAS/proxmox/system-images"


@dataclass
class Settings:
    """Tool settings; every field has a default so the YAML file is optional."""
    pool: str | None = None
    backup_prefix: str = "zfs-backup"
    compression: Compression = Compression.GZIP
    cipher: str = "AES256"
    efi_mount: str = "/boot/efi"
    temp_mount: str = "/mnt/zfs-backup-temp"
    usb_mount: str = "/mnt/usb-backup-auto"
    restore_efi_mount: str = "/mnt/efi"
    restore_source_mount: str = "/mnt/backup-source"
    credentials_file: str = "~/.zfs-backup-credentials"
    log_file: str | None = "/var/log/zfs-backup.log"
    min_free_gb: int = 15
    progress_interval: float = 10.0
    keep_snapshot: bool = False
    remove_snapshot_on_failure: bool = False
    smoke_test: bool = True
    efi_size: str = "+512M"
    nas_timeout: int = 30
    user_timeout: int = 60
    nas: NasDefaults = field(default_factory=NasDefaults)

    DEFAULT_POOL = "rpool"

    @property
    def min_free_bytes(self) -> int:
        return self.min_free_gb * 1024 ** 3

    @property
    def credentials_path(self) -> Path:
        return Path(self.credentials_file).expanduser()
