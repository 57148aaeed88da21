"""Exception hierarchy for zfs-hybrid-backup."""
from __future__ import annotations


class ZhbError(Exception):
    """Base class for every failure the CLI reports as exit code 1."""


class ConfigError(ZhbError):
    pass


class CredentialsError(ZhbError):
    pass


class PrerequisiteError(ZhbError):
    pass


class DetectionError(ZhbError):
    pass


class MountError(ZhbError):
    pass


class TargetError(ZhbError):
    pass


class InsufficientSpaceError(ZhbError):
    def __init__(self, path: str, available: int, required: int):
        self.path = path
        self.available = available
        self.required = required
        gib = 1024 ** 3
        super().__init__(
            f"Insufficient space on {path}: need {required // gib}GB, "
            f"have {available // gib}GB"
        )


class SnapshotError(ZhbError):
    pass


class PipelineError(ZhbError):
    pass


class BackupError(ZhbError):
    pass


class RestoreError(ZhbError):
    pass


class PromptTimeout(ZhbError):
    pass


class Cancelled(ZhbError):
    """The operator declined to continue. Not a failure."""


class Interrupted(Exception):
    """Raised from a signal handler so cleanup blocks unwind."""
    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"Interrupted by signal {signum}")
