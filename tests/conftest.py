"""MockExecutor, FakeInspector and shared fixtures for testing."""
from __future__ import annotations

import io
import subprocess
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from zhb.context import RunContext
from zhb.devices import DeviceInspector
from zhb.executor import ExecutorError
from zhb.models import Credentials, NasCredentials, Settings

PASSPHRASE = "correct horse battery"


def fail(cmd: list[str], returncode: int = 1, stderr: str = "failed") -> ExecutorError:
    """Scripted failure for a MockExecutor response table."""
    return ExecutorError(cmd, returncode, stderr)


class MockExecutor:
    """
    Executor that returns pre-scripted responses for commands.

    responses: dict mapping tuple(cmd) -> stdout string, an Exception to
    raise, or a list of those consumed one per call (the last one sticks).
    If the command isn't found, raises KeyError (to catch unexpected calls
    in tests) unless ``fallback`` is given.

    popen() returns mock processes. ``outputs`` maps a program name to the
    bytes it "writes": into the file passed as stdout, or as a readable
    stdout when stdout is a pipe. ``returncodes`` and ``stderr`` are keyed
    by program name too.

    ``available`` restricts which() to the named tools; None means every
    tool is installed.
    """

    def __init__(
        self,
        responses: dict | None = None,
        outputs: dict[str, bytes] | None = None,
        returncodes: dict[str, int] | None = None,
        stderr: dict[str, bytes] | None = None,
        available: set[str] | None = None,
        fallback: str | None = None,
        label: str = "mock",
    ):
        self.responses: dict = responses or {}
        self.outputs = outputs or {}
        self.returncodes = returncodes or {}
        self.stderr = stderr or {}
        self.available = available
        self.fallback = fallback
        self._label = label
        self.calls: list[list[str]] = []  # record of all commands run
        self.popen_calls: list[list[str]] = []

    @property
    def label(self) -> str:
        return self._label

    def run(self, cmd: list[str], timeout: float | None = None) -> str:
        self.calls.append(cmd)
        key = tuple(cmd)
        if key not in self.responses:
            if self.fallback is not None:
                return self.fallback
            raise KeyError(f"MockExecutor: unexpected command: {cmd}")
        result = self.responses[key]
        if isinstance(result, list):
            result = result.pop(0) if len(result) > 1 else result[0]
        if isinstance(result, Exception):
            raise result
        return result

    def popen(self, cmd: list[str], stdin=None, stdout=None, stderr=None, **_kwargs):
        self.calls.append(cmd)
        self.popen_calls.append(cmd)
        program = cmd[0]
        data = self.outputs.get(program, b"")
        rc = self.returncodes.get(program, 0)

        if stderr is not None and hasattr(stderr, "write"):
            stderr.write(self.stderr.get(program, b""))
        if stdout is not None and hasattr(stdout, "write"):
            stdout.write(data)
            stdout.flush()

        mock_proc = MagicMock(spec=subprocess.Popen)
        mock_proc.args = cmd
        mock_proc.stdout = io.BytesIO(data) if stdout == subprocess.PIPE else None
        mock_proc.stdin = None
        mock_proc.returncode = rc
        mock_proc.poll.return_value = rc
        mock_proc.wait.return_value = rc
        return mock_proc

    def which(self, name: str) -> str | None:
        if self.available is None or name in self.available:
            return f"/usr/sbin/{name}"
        return None

    def ran(self, *prefix: str) -> list[list[str]]:
        """Recorded commands starting with ``prefix``."""
        return [c for c in self.calls if tuple(c[:len(prefix)]) == prefix]


class FakeInspector(DeviceInspector):
    """DeviceInspector whose answers come from plain attributes."""

    def __init__(self, executor, block_devices=(), fstypes=None, mounts=None,
                 vdevs=None, links=None, disks=None):
        super().__init__(executor)
        self.block_devices = set(block_devices)
        self.fstypes = fstypes or {}
        self.mounts = mounts or {}  # mount point -> source device
        self.vdevs = vdevs or {}  # pool -> vdev paths
        self.links = links or {}  # by-id alias -> real path
        self.disks = disks or []

    def list_disks(self):
        return list(self.disks)

    def fstype(self, device):
        return self.fstypes.get(device, "")

    def mount_source(self, mountpoint):
        return self.mounts.get(mountpoint)

    def is_mountpoint(self, path):
        return path in self.mounts

    def is_block_device(self, path):
        return path in self.block_devices

    def realpath(self, path):
        return self.links.get(path, path)

    def pool_vdevs(self, pool):
        return list(self.vdevs.get(pool, []))


def make_settings(tmp_path: Path, **overrides) -> Settings:
    """Settings whose mount points and files all live under tmp_path."""
    efi = tmp_path / "efi"
    efi.mkdir(exist_ok=True)
    (efi / "EFI").mkdir(exist_ok=True)
    (efi / "EFI" / "grubx64.efi").write_bytes(b"\x00" * 64)
    settings = Settings(
        efi_mount=str(efi),
        temp_mount=str(tmp_path / "mnt-nas"),
        usb_mount=str(tmp_path / "mnt-usb"),
        restore_efi_mount=str(tmp_path / "mnt-efi"),
        restore_source_mount=str(tmp_path / "mnt-source"),
        credentials_file=str(tmp_path / "credentials"),
        log_file=None,
        progress_interval=0,
    )
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


def make_context(tmp_path: Path, executor=None, inspector=None, auto: bool = False,
                 pool: str = "rpool", nas: NasCredentials | None = None,
                 passphrase: str = PASSPHRASE, **settings) -> RunContext:
    executor = executor or MockExecutor()
    inspector = inspector or FakeInspector(executor)
    return RunContext(
        settings=make_settings(tmp_path, **settings),
        credentials=Credentials(passphrase=passphrase, nas=nas),
        executor=executor,
        inspector=inspector,
        auto=auto,
        pool=pool,
    )


def nas_credentials() -> NasCredentials:
    return NasCredentials(host="192.168.1.50", share="backups", path="hosts/pve",
                          user="backup", password="s3cret")


def write_artifact(directory: Path, name: str, data: bytes = b"\x8c\x0d" + b"x" * 100) -> Path:
    path = directory / name
    path.write_bytes(data)
    return path


@pytest.fixture
def verbose(request):
    """True if -v was passed to pytest."""
    return request.config.getoption("--verbose", default=False)
