"""Process pipelines: tool | tool | tool, with gpg fed its passphrase on a pipe."""
from __future__ import annotations

import contextlib
import os
import shlex
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, TYPE_CHECKING

from zhb.errors import PipelineError
from zhb.models import Compression, format_duration
from zhb.output import log

if TYPE_CHECKING:
    from zhb.executor import Executor

ZFS_STREAM_MAGIC = 0x2F5BACBAC
TAR_MAGIC = b"ustar"


@dataclass
class Stage:
    """One process in a pipeline.

    When ``passphrase`` is set, the secret is written into an anonymous pipe
    and the process is told to read it with ``--passphrase-fd``. It never
    appears on a command line or in the environment.
    """
    argv: list[str]
    passphrase: str | None = field(default=None, repr=False)


@dataclass
class PipelineResult:
    argvs: list[list[str]]
    returncodes: list[int]
    stderr: list[str]

    @property
    def ok(self) -> bool:
        return all(rc == 0 for rc in self.returncodes)

    @property
    def description(self) -> str:
        return describe(self.argvs)

    def failed_stages(self) -> list[str]:
        return [
            f"{argv[0]} exited {rc}" + (f": {err.strip()}" if err.strip() else "")
            for argv, rc, err in zip(self.argvs, self.returncodes, self.stderr)
            if rc != 0
        ]

    def check(self) -> "PipelineResult":
        if not self.ok:
            raise PipelineError(
                f"Pipeline failed: {self.description} ({'; '.join(self.failed_stages())})"
            )
        return self


def describe(argvs: list[list[str]]) -> str:
    return " | ".join(shlex.join(argv) for argv in argvs)


def gpg_encrypt_cmd(cipher: str) -> list[str]:
    return [
        "gpg", "--batch", "--yes", "--pinentry-mode", "loopback",
        "--symmetric", "--cipher-algo", cipher, "--compress-algo", "none",
        "-o", "-",
    ]


def gpg_decrypt_cmd(path: Path | str) -> list[str]:
    return [
        "gpg", "--batch", "--yes", "--quiet", "--pinentry-mode", "loopback",
        "--decrypt", str(path),
    ]


def encrypt_stages(source: list[str], compression: Compression, cipher: str,
                   passphrase: str) -> list[Stage]:
    """source | [compressor] | gpg --symmetric"""
    stages = [Stage(source)]
    if compression.encode_cmd:
        stages.append(Stage(compression.encode_cmd))
    stages.append(Stage(gpg_encrypt_cmd(cipher), passphrase=passphrase))
    return stages


def decrypt_stages(path: Path | str, compression: Compression, passphrase: str,
                   sink: list[str] | None = None) -> list[Stage]:
    """gpg --decrypt | [decompressor] | [sink]"""
    stages = [Stage(gpg_decrypt_cmd(path), passphrase=passphrase)]
    if compression.decode_cmd:
        stages.append(Stage(compression.decode_cmd))
    if sink:
        stages.append(Stage(sink))
    return stages


def _with_passphrase_fd(argv: list[str], fd: int) -> list[str]:
    return [argv[0], "--passphrase-fd", str(fd)] + argv[1:]


class _Launched:
    """Processes of a started pipeline and their stderr capture files."""

    def __init__(self):
        self.procs: list[subprocess.Popen] = []
        self.argvs: list[list[str]] = []
        self.errs: list[IO[bytes]] = []

    def kill_running(self) -> None:
        for proc in self.procs:
            if proc.poll() is None:
                proc.kill()

    def wait(self) -> PipelineResult:
        returncodes = [proc.wait() for proc in self.procs]
        stderr = []
        for err in self.errs:
            err.seek(0)
            stderr.append(err.read().decode(errors="replace"))
        return PipelineResult(self.argvs, returncodes, stderr)

    def close(self) -> None:
        for err in self.errs:
            err.close()


def _launch(executor: "Executor", stages: list[Stage], stdin, stdout) -> _Launched:
    if not stages:
        raise ValueError("A pipeline needs at least one stage")
    launched = _Launched()
    upstream = stdin
    try:
        for i, stage in enumerate(stages):
            last = i == len(stages) - 1
            err = tempfile.TemporaryFile()
            launched.errs.append(err)
            argv = list(stage.argv)
            kwargs = {}
            read_fd = None
            if stage.passphrase is not None:
                read_fd, write_fd = os.pipe()
                try:
                    os.write(write_fd, stage.passphrase.encode() + b"\n")
                finally:
                    os.close(write_fd)
                argv = _with_passphrase_fd(argv, read_fd)
                kwargs["pass_fds"] = (read_fd,)
            try:
                proc = executor.popen(
                    argv,
                    stdin=upstream,
                    stdout=stdout if last else subprocess.PIPE,
                    stderr=err,
                    **kwargs,
                )
            except OSError as e:
                raise PipelineError(f"Cannot start {argv[0]}: {e}") from e
            finally:
                if read_fd is not None:
                    os.close(read_fd)
            # Let the upstream process receive SIGPIPE if this one dies
            if launched.procs:
                launched.procs[-1].stdout.close()
            launched.procs.append(proc)
            launched.argvs.append(stage.argv)
            upstream = proc.stdout
    except BaseException:
        launched.kill_running()
        for proc in launched.procs:
            proc.wait()
        launched.close()
        raise
    return launched


def run_pipeline(
    executor: "Executor",
    stages: list[Stage],
    stdin: IO[bytes] | int | None = None,
    stdout: IO[bytes] | int | None = None,
) -> PipelineResult:
    """Run stages connected by pipes and wait for all of them.

    The result carries every exit status; call ``check()`` to turn any
    non-zero status into a PipelineError. An exception while waiting
    (including Interrupted) kills the remaining processes first.
    """
    log.debug(f"Pipeline: {describe([s.argv for s in stages])}")
    launched = _launch(executor, stages, stdin, stdout)
    try:
        return launched.wait()
    except BaseException:
        launched.kill_running()
        for proc in launched.procs:
            proc.wait()
        raise
    finally:
        launched.close()


def read_head(executor: "Executor", stages: list[Stage], nbytes: int) -> tuple[bytes, PipelineResult]:
    """Read the first ``nbytes`` of a pipeline's output, then stop it.

    Stages still running after the read are killed, so their exit status
    may be negative; callers judge success by the bytes returned.
    """
    log.debug(f"Pipeline (head {nbytes}): {describe([s.argv for s in stages])}")
    launched = _launch(executor, stages, None, subprocess.PIPE)
    try:
        out = launched.procs[-1].stdout
        chunks = []
        remaining = nbytes
        while remaining > 0:
            chunk = out.read(remaining)
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        out.close()
        launched.kill_running()
        return b"".join(chunks), launched.wait()
    except BaseException:
        launched.kill_running()
        for proc in launched.procs:
            proc.wait()
        raise
    finally:
        launched.close()


def pipeline_to_file(executor: "Executor", stages: list[Stage], dest: Path,
                     progress_interval: float | None = None) -> PipelineResult:
    """Run a pipeline whose output is written to ``dest``.

    With ``progress_interval`` a ProgressReporter logs the growth of the file.
    """
    with open(dest, "wb") as f:
        with contextlib.ExitStack() as stack:
            if progress_interval:
                stack.enter_context(ProgressReporter(dest, progress_interval))
            return run_pipeline(executor, stages, stdout=f)


def sniff_header(data: bytes) -> str | None:
    """Identify decompressed stream content: 'zfs', 'tar' or None.

    A ZFS send stream opens with a DRR_BEGIN record whose 64-bit magic
    sits at bytes 8..16 in the sender's byte order.
    """
    if len(data) >= 16:
        magic = data[8:16]
        if ZFS_STREAM_MAGIC in (int.from_bytes(magic, "little"), int.from_bytes(magic, "big")):
            return "zfs"
    if data[257:262] == TAR_MAGIC:
        return "tar"
    return None


class ProgressReporter:
    """Background thread that periodically logs how far an output file has grown."""

    def __init__(self, path: Path | str, interval: float = 10.0, label: str = "Progress"):
        self.path = Path(path)
        self.interval = interval
        self.label = label
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._started = 0.0

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("ProgressReporter already started")
        self._started = time.monotonic()
        self._thread = threading.Thread(target=self._run, name="progress_reporter", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()

    def __enter__(self) -> "ProgressReporter":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()

    def line(self) -> str:
        try:
            written = self.path.stat().st_size
        except OSError:
            written = 0
        elapsed = time.monotonic() - self._started
        mb = written / (1024 * 1024)
        rate = mb / elapsed if elapsed > 0 else 0.0
        return f"{self.label}: {mb:.0f} MB written, {format_duration(elapsed)} elapsed, {rate:.1f} MB/s"

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            message = self.line()
            print(f"  {message}", flush=True)
            log.info(message)
