"""Tests for zhb.integrity."""
from __future__ import annotations

import os
import shutil
import struct

import pytest

from zhb.executor import LocalExecutor
from zhb.integrity import (
    IntegrityReport,
    _broken_pipe,
    analyze_directory,
    backup_type,
    estimate_size,
    looks_like_gpg,
    verify_artifact,
)
from zhb.models import Artifact, ArtifactKind, Compression
from zhb.streams import encrypt_stages, pipeline_to_file
from tests.conftest import PASSPHRASE, MockExecutor, write_artifact

TS = "20250307-0205"
ZFS_HEAD = struct.pack("<QQ", 0, 0x2F5BACBAC) + b"\x00" * 400
TAR_HEAD = b"\x00" * 257 + b"ustar\x0000" + b"\x00" * 250


class ScriptedExecutor(MockExecutor):
    """gpg output and per-pipeline exit codes chosen by the pipeline's later stages."""

    def __init__(self, plain: bytes, valid_compressions=("gzip",), receive_output=b"",
                 decrypt_ok=True):
        super().__init__()
        self.plain = plain
        self.valid = set(valid_compressions)
        self.receive_output = receive_output
        self.decrypt_ok = decrypt_ok

    def popen(self, cmd, **kwargs):
        if cmd[0] == "gpg":
            self.outputs["gpg"] = self.plain if self.decrypt_ok else b""
            self.returncodes["gpg"] = 0 if self.decrypt_ok else 2
        elif "-t" in cmd:
            self.returncodes[cmd[0]] = 0 if cmd[0] in self.valid else 1
        elif cmd[0] in ("gzip", "xz", "lz4"):
            self.outputs[cmd[0]] = self.plain
        elif cmd[0] == "zfs":
            self.stderr["zfs"] = self.receive_output
            self.returncodes["zfs"] = 1
        return super().popen(cmd, **kwargs)


def zfs_artifact(tmp_path, ext="gz") -> Artifact:
    path = write_artifact(tmp_path, f"zfs-backup-{TS}.{ext}.gpg", b"\x8c\x0d" + b"x" * 100)
    return Artifact.parse(path)


def boot_artifact(tmp_path) -> Artifact:
    return Artifact.parse(write_artifact(tmp_path, f"boot-partition-{TS}.tar.gz.gpg"))


def test_looks_like_gpg():
    assert looks_like_gpg(b"\x8c\x0d\x04")   # old-format symmetric session key packet
    assert looks_like_gpg(b"\xc3\x0d\x04")   # new-format tag 3
    assert not looks_like_gpg(b"\x1f\x8b")   # gzip
    assert not looks_like_gpg(b"")


def test_zfs_artifact_passes_all_five_checks(tmp_path):
    ex = ScriptedExecutor(ZFS_HEAD, receive_output=b"would receive full stream of x@backup")
    report = verify_artifact(ex, zfs_artifact(tmp_path), PASSPHRASE)
    assert [c.name for c in report.checks] == [
        "File integrity", "Decryption", "Decompression", "Content header", "ZFS stream",
    ]
    assert report.passed == report.total == 5
    assert report.tier == "passed"
    assert report.detected_compression is Compression.GZIP


def test_boot_artifact_has_four_checks(tmp_path):
    ex = ScriptedExecutor(TAR_HEAD)
    report = verify_artifact(ex, boot_artifact(tmp_path), PASSPHRASE)
    assert report.total == 4
    assert report.tier == "passed"
    assert not any(cmd[0] == "zfs" for cmd in ex.popen_calls)


def test_decrypt_failure_stops_checks(tmp_path):
    ex = ScriptedExecutor(ZFS_HEAD, decrypt_ok=False)
    report = verify_artifact(ex, zfs_artifact(tmp_path), "wrong passphrase")
    assert [c.passed for c in report.checks] == [True, False]
    assert report.score == 20.0
    assert report.tier == "failed"


def test_missing_file_fails_first_check(tmp_path):
    artifact = Artifact(tmp_path / f"zfs-backup-{TS}.gz.gpg", ArtifactKind.ZFS,
                        Compression.GZIP, TS)
    report = verify_artifact(MockExecutor(), artifact, PASSPHRASE)
    assert len(report.checks) == 1
    assert report.passed == 0


def test_detects_other_compression(tmp_path):
    ex = ScriptedExecutor(ZFS_HEAD, valid_compressions=("xz",),
                          receive_output=b"cannot receive: destination does not exist")
    report = verify_artifact(ex, zfs_artifact(tmp_path), PASSPHRASE)
    assert report.detected_compression is Compression.XZ
    assert "expected gzip" in report.checks[2].detail
    assert report.tier == "passed"


def test_wrong_content_is_partial(tmp_path):
    ex = ScriptedExecutor(TAR_HEAD, receive_output=b"would receive")
    report = verify_artifact(ex, zfs_artifact(tmp_path), PASSPHRASE)
    assert report.passed == 4
    assert report.score == 80.0
    assert report.tier == "partial"


def test_inconclusive_dry_run_is_soft_pass(tmp_path):
    ex = ScriptedExecutor(ZFS_HEAD, receive_output=b"some unexpected output")
    report = verify_artifact(ex, zfs_artifact(tmp_path), PASSPHRASE)
    assert report.checks[-1].passed
    assert report.checks[-1].detail == "inconclusive"


@pytest.mark.parametrize("passed,tier", [(4, "passed"), (3, "partial"), (2, "failed")])
def test_boot_tiers(tmp_path, passed, tier):
    report = IntegrityReport(boot_artifact(tmp_path))
    for i in range(4):
        report.add(f"check {i}", i < passed)
    assert report.tier == tier


def test_estimate_size(tmp_path):
    artifact = zfs_artifact(tmp_path)
    estimate = estimate_size(artifact)
    assert estimate.low == artifact.size * 2
    assert estimate.high == artifact.size * 4
    assert estimate.recommended_disk == artifact.size * 4 + 10 * 1024 ** 3


def test_analyze_directory(tmp_path):
    write_artifact(tmp_path, f"boot-partition-{TS}.tar.gz.gpg")
    write_artifact(tmp_path, f"zfs-backup-{TS}.gz.gpg")
    write_artifact(tmp_path, "zfs-backup-20250101-0100.gpg")
    sets = analyze_directory(tmp_path)
    assert backup_type(sets) == "hybrid"
    assert backup_type(sets[1:]) == "zfs-only"
    assert backup_type([]) == "unknown"


def test_uninstalled_decompressors_and_zfs_are_skipped(tmp_path):
    ex = ScriptedExecutor(ZFS_HEAD)
    ex.available = {"gpg"}
    path = write_artifact(tmp_path, f"zfs-backup-{TS}.gpg", b"\x8c\x0d" + b"x" * 100)
    report = verify_artifact(ex, Artifact.parse(path), PASSPHRASE)
    assert report.detected_compression is Compression.NONE
    assert report.checks[-1].detail == "skipped (zfs not installed)"
    assert report.tier == "passed"
    assert [cmd[0] for cmd in ex.popen_calls] == ["gpg", "gpg"]


class UnstartableExecutor(ScriptedExecutor):
    """which() finds xz and lz4, but starting them fails."""

    def popen(self, cmd, **kwargs):
        if cmd[0] in ("xz", "lz4"):
            raise FileNotFoundError(2, "No such file or directory", cmd[0])
        return super().popen(cmd, **kwargs)


def test_decompressor_that_cannot_start_does_not_abort(tmp_path):
    ex = UnstartableExecutor(ZFS_HEAD, valid_compressions=(), receive_output=b"would receive")
    report = verify_artifact(ex, zfs_artifact(tmp_path, ext="xz"), PASSPHRASE)
    assert len(report.checks) == report.total == 5
    assert [c.passed for c in report.checks] == [True, True, False, False, True]
    assert report.tier == "partial"


needs_tools = pytest.mark.skipif(
    shutil.which("gpg") is None or shutil.which("gzip") is None,
    reason="gpg and gzip required",
)


class EarlyExitReceive(LocalExecutor):
    """Real gpg and gzip; `zfs receive -n` stands in as a script that quits after the header."""

    RECEIVE = ("head -c 512 >/dev/null; "
               "echo \"cannot open 'zhb-integrity-test': dataset does not exist\" >&2; exit 1")

    def popen(self, cmd, **kwargs):
        if cmd[0] == "zfs":
            cmd = ["sh", "-c", self.RECEIVE]
        return super().popen(cmd, **kwargs)

    def which(self, name):
        if name == "zfs":
            return "/sbin/zfs"
        return super().which(name)


@needs_tools
def test_real_artifact_passes_when_receive_stops_reading_early(tmp_path, monkeypatch):
    home = tmp_path / "gnupg"
    home.mkdir(mode=0o700)
    monkeypatch.setenv("GNUPGHOME", str(home))
    src = tmp_path / "stream"
    src.write_bytes(ZFS_HEAD + os.urandom(4 * 1024 * 1024))
    path = tmp_path / f"zfs-backup-{TS}.gz.gpg"
    ex = EarlyExitReceive()
    pipeline_to_file(ex, encrypt_stages(["cat", str(src)], Compression.GZIP, "AES256",
                                        PASSPHRASE), path).check()

    report = verify_artifact(ex, Artifact.parse(path), PASSPHRASE)
    assert report.checks[-1].name == "ZFS stream"
    assert report.checks[-1].passed, report.checks[-1].detail
    assert report.passed == report.total == 5
    assert report.tier == "passed"


class TruncatedStreamExecutor(ScriptedExecutor):
    """`gzip -dc` runs out of input before the end of the stream."""

    def popen(self, cmd, **kwargs):
        proc = super().popen(cmd, **kwargs)
        if cmd == ["gzip", "-dc"]:
            proc.wait.return_value = 1
        return proc


def test_upstream_failure_other_than_broken_pipe_fails_dry_run(tmp_path):
    ex = TruncatedStreamExecutor(ZFS_HEAD, receive_output=b"cannot receive: invalid stream")
    ex.stderr["gzip"] = b"gzip: stdin: unexpected end of file"
    report = verify_artifact(ex, zfs_artifact(tmp_path), PASSPHRASE)
    assert not report.checks[-1].passed
    assert "gzip exited 1" in report.checks[-1].detail


@pytest.mark.parametrize("rc,stderr,broken", [
    (-13, "", True),
    (2, "gpg: [stdout]: write error: Broken pipe", True),
    (1, "gzip: stdin: unexpected end of file", False),
])
def test_broken_pipe_detection(rc, stderr, broken):
    assert _broken_pipe(rc, stderr) is broken
