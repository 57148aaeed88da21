"""Runs the system tools (zfs, gpg, sgdisk, mount, ...) on the local host."""
from __future__ import annotations

import os
import shlex
import shutil
import subprocess
from typing import Protocol, runtime_checkable

SBIN_DIRS = ("/sbin", "/usr/sbin", "/usr/local/sbin")


class ExecutorError(Exception):
    """A tool returned non-zero; keeps argv, exit status and captured stderr."""

    def __init__(self, cmd: list[str], returncode: int, stderr: str):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr or ""
        detail = self.stderr.strip().splitlines()[-1] if self.stderr.strip() else "no output"
        super().__init__(f"{shlex.join(self.cmd)} failed (exit {returncode}): {detail}")


@runtime_checkable
class Executor(Protocol):
    """What the pipelines need from a command runner."""

    @property
    def label(self) -> str: ...

    def run(self, cmd: list[str], timeout: float | None = None) -> str:
        """Return stdout as text; raise ExecutorError on a non-zero exit."""
        ...

    def popen(self, cmd: list[str], **kwargs) -> subprocess.Popen:
        """Start one stage of a byte pipeline."""
        ...

    def which(self, name: str) -> str | None: ...


class LocalExecutor:
    @property
    def label(self) -> str:
        return "local"

    def run(self, cmd: list[str], timeout: float | None = None) -> str:
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ExecutorError(cmd, 124, f"timed out after {timeout}s") from e
        except OSError as e:
            raise ExecutorError(cmd, 127, str(e)) from e
        if result.returncode != 0:
            raise ExecutorError(cmd, result.returncode, result.stderr)
        return result.stdout

    def popen(self, cmd: list[str], **kwargs) -> subprocess.Popen:
        return subprocess.Popen(cmd, text=False, **kwargs)

    def which(self, name: str) -> str | None:
        """Find an executable in PATH or the common sbin locations.

        Cron provides a limited PATH that often lacks /sbin and /usr/sbin.
        """
        found = shutil.which(name)
        if found:
            return found
        for prefix in SBIN_DIRS:
            candidate = os.path.join(prefix, name)
            if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
                return candidate
        return None


def succeeds(executor: Executor, cmd: list[str], timeout: float | None = None) -> bool:
    """Return True if the command exits 0."""
    try:
        executor.run(cmd, timeout=timeout)
        return True
    except ExecutorError:
        return False
