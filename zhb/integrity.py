"""Layered verification of backup artifacts, without touching any pool."""
from __future__ import annotations

import signal
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from zhb import zfs
from zhb.errors import PipelineError
from zhb.models import Artifact, ArtifactKind, BackupSet, Compression, human_size
from zhb.output import debug, info, status, warning
from zhb.restore import discover_backup_sets
from zhb.streams import decrypt_stages, read_head, run_pipeline, sniff_header

if TYPE_CHECKING:
    from zhb.executor import Executor

SMALL_FILE_BYTES = 1024 * 1024
HEAD_BYTES = 2048
DRY_RUN_TARGET = "zhb-integrity-test/restore"
DRY_RUN_MARKERS = ("would receive", "does not exist", "cannot receive")

PARTIAL_THRESHOLD = 60.0


def looks_like_gpg(data: bytes) -> bool:
    """True if the data opens with an OpenPGP packet header for encrypted content."""
    if not data or not data[0] & 0x80:
        return False
    first = data[0]
    if first & 0x40:
        tag = first & 0x3F
    else:
        tag = (first >> 2) & 0x0F
    # symmetric session key, public-key session key, encrypted data packets
    return tag in (1, 3, 9, 18, 20)


@dataclass
class CheckResult:
    name: str
    passed: bool
    detail: str = ""


@dataclass
class IntegrityReport:
    artifact: Artifact
    checks: list[CheckResult] = field(default_factory=list)
    detected_compression: Compression | None = None

    @property
    def total(self) -> int:
        return 5 if self.artifact.kind is ArtifactKind.ZFS else 4

    @property
    def passed(self) -> int:
        return sum(1 for c in self.checks if c.passed)

    @property
    def score(self) -> float:
        return 100.0 * self.passed / self.total

    @property
    def tier(self) -> str:
        if self.passed == self.total:
            return "passed"
        if self.score >= PARTIAL_THRESHOLD:
            return "partial"
        return "failed"

    def add(self, name: str, passed: bool, detail: str = "") -> bool:
        self.checks.append(CheckResult(name, passed, detail))
        if passed:
            status(f"{name} check passed" + (f": {detail}" if detail else ""))
        else:
            warning(f"{name} check failed" + (f": {detail}" if detail else ""))
        return passed


def check_file(artifact: Artifact) -> tuple[bool, str]:
    path = artifact.path
    if not path.is_file():
        return False, f"file not found: {path}"
    size = path.stat().st_size
    if size == 0:
        return False, f"file is empty: {path}"
    with open(path, "rb") as f:
        head = f.read(16)
    if not looks_like_gpg(head):
        warning(f"{path.name} doesn't appear to be GPG encrypted")
    if size < SMALL_FILE_BYTES:
        warning(f"{path.name} is very small (< 1MB) - may be incomplete")
    return True, human_size(size)


def check_decrypt(executor: "Executor", artifact: Artifact, passphrase: str) -> bool:
    data, _ = read_head(executor, decrypt_stages(artifact.path, Compression.NONE, passphrase),
                        1024)
    return bool(data)


def detect_compression(executor: "Executor", artifact: Artifact, passphrase: str,
                       declared: Compression) -> Compression | None:
    """Test-decompress the whole stream: the declared algorithm first, then the others.

    Algorithms whose tool is not installed are skipped.
    """
    candidates = [declared] + [c for c in Compression if c is not declared and c.test_cmd]
    for compression in candidates:
        if compression.test_cmd is None:
            continue
        if executor.which(compression.tool) is None:
            debug(f"{compression.tool} not installed, skipping {compression.label} test")
            continue
        debug(f"Testing {compression.label} decompression of {artifact.name}")
        stages = decrypt_stages(artifact.path, Compression.NONE, passphrase,
                                sink=compression.test_cmd)
        try:
            result = run_pipeline(executor, stages)
        except PipelineError as e:
            warning(str(e))
            continue
        if result.ok:
            return compression
    if declared is Compression.NONE:
        return Compression.NONE
    return None


def check_header(executor: "Executor", artifact: Artifact, passphrase: str,
                 compression: Compression) -> str | None:
    try:
        data, _ = read_head(executor, decrypt_stages(artifact.path, compression, passphrase),
                            HEAD_BYTES)
    except PipelineError as e:
        warning(str(e))
        return None
    return sniff_header(data)


def _broken_pipe(rc: int, stderr: str) -> bool:
    # zfs receive -n stops reading after the stream header
    return rc == -signal.SIGPIPE or "broken pipe" in stderr.lower()


def check_receive_dry_run(executor: "Executor", artifact: Artifact, passphrase: str,
                          compression: Compression) -> tuple[bool, str]:
    """Feed the stream to `zfs receive -n -v`; an unclear answer is a soft pass."""
    if executor.which("zfs") is None:
        warning("zfs not installed, skipping ZFS compatibility test")
        return True, "skipped (zfs not installed)"
    stages = decrypt_stages(artifact.path, compression, passphrase,
                            sink=zfs.receive_dry_run_cmd(DRY_RUN_TARGET))
    try:
        with tempfile.TemporaryFile() as out:
            result = run_pipeline(executor, stages, stdout=out)
            out.seek(0)
            text = out.read().decode(errors="replace") + result.stderr[-1]
    except PipelineError as e:
        warning(f"ZFS compatibility test inconclusive: {e}")
        return True, "inconclusive"
    upstream = [
        f"{argv[0]} exited {rc}"
        for argv, rc, err in zip(result.argvs[:-1], result.returncodes[:-1], result.stderr[:-1])
        if rc != 0 and not _broken_pipe(rc, err)
    ]
    if upstream:
        return False, "; ".join(upstream)
    if any(marker in text for marker in DRY_RUN_MARKERS):
        return True, "stream accepted by zfs receive dry run"
    warning("ZFS compatibility test inconclusive")
    return True, "inconclusive"


def verify_artifact(executor: "Executor", artifact: Artifact, passphrase: str,
                    compression: Compression | None = None) -> IntegrityReport:
    """Run the ordered checks on one artifact.

    One point per check. A failed file or decrypt check stops the run;
    the remaining checks count as failed.
    """
    report = IntegrityReport(artifact)
    declared = compression or artifact.compression
    info(f"Validating {artifact.name}")

    ok, detail = check_file(artifact)
    if not report.add("File integrity", ok, detail):
        return report

    if not report.add("Decryption", check_decrypt(executor, artifact, passphrase)):
        return report

    detected = detect_compression(executor, artifact, passphrase, declared)
    report.detected_compression = detected
    if detected is None:
        report.add("Decompression", False, f"not a valid {declared.label} stream")
        detected = declared
    elif detected is not declared:
        report.add("Decompression", True, f"{detected.label} (expected {declared.label})")
    else:
        report.add("Decompression", True, detected.label)

    expected = "zfs" if artifact.kind is ArtifactKind.ZFS else "tar"
    found = check_header(executor, artifact, passphrase, detected)
    report.add("Content header", found == expected,
               f"{found or 'unrecognized'} stream" if found != expected else f"{found} stream")

    if artifact.kind is ArtifactKind.ZFS:
        ok, detail = check_receive_dry_run(executor, artifact, passphrase, detected)
        report.add("ZFS stream", ok, detail)
    return report


def print_report(report: IntegrityReport) -> None:
    print()
    print("VALIDATION RESULTS")
    print("==================")
    print(f"File: {report.artifact.name}")
    print(f"Checks passed: {report.passed}/{report.total} ({report.score:.0f}%)")
    if report.tier == "passed":
        status("Backup validation PASSED")
    elif report.tier == "partial":
        warning("Backup validation PARTIAL - some checks failed")
    else:
        warning("Backup validation FAILED")


@dataclass
class SizeEstimate:
    compressed: int
    low: int
    high: int

    @property
    def recommended_disk(self) -> int:
        return self.high + 10 * 1024 ** 3


def estimate_size(artifact: Artifact, low_ratio: int = 2, high_ratio: int = 4) -> SizeEstimate:
    size = artifact.size
    return SizeEstimate(compressed=size, low=size * low_ratio, high=size * high_ratio)


def print_size_estimate(estimate: SizeEstimate) -> None:
    info(f"Compressed size: {human_size(estimate.compressed)}")
    info(f"Estimated uncompressed: {human_size(estimate.low)} - {human_size(estimate.high)}")
    info(f"Recommended target disk: {human_size(estimate.recommended_disk)} minimum")


def backup_type(sets: list[BackupSet]) -> str:
    """'hybrid' if any set has both artifacts, 'zfs-only' if only pool streams exist."""
    if any(s.complete for s in sets):
        return "hybrid"
    if any(s.zfs is not None for s in sets):
        return "zfs-only"
    return "unknown"


def analyze_directory(directory: Path) -> list[BackupSet]:
    sets = discover_backup_sets(directory)
    kind = backup_type(sets)
    if kind == "hybrid":
        status("Detected HYBRID backup (boot partition + ZFS)")
    elif kind == "zfs-only":
        status("Detected ZFS-only backup")
    else:
        warning("Could not determine backup type")
    for backup_set in sets:
        if backup_set.incomplete:
            warning(f"Backup set {backup_set.timestamp} is incomplete")
    return sets
