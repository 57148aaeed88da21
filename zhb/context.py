"""Per-run state shared by the backup, restore and integrity flows."""
from __future__ import annotations

import contextlib
import signal
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator

from zhb.errors import Interrupted
from zhb.output import debug

if TYPE_CHECKING:
    from zhb.devices import DeviceInspector
    from zhb.executor import Executor
    from zhb.models import Credentials, Settings

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


@dataclass
class RunContext:
    """Everything one invocation needs. Closing it scrubs the secrets."""
    settings: "Settings"
    credentials: "Credentials"
    executor: "Executor"
    inspector: "DeviceInspector"
    auto: bool = False
    pool: str = "rpool"

    @property
    def user_timeout(self) -> float:
        return float(self.settings.user_timeout)

    def close(self) -> None:
        debug("Clearing credentials from memory")
        self.credentials.scrub()

    def __enter__(self) -> "RunContext":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def _raise_interrupted(signum, _frame):
    raise Interrupted(signum)


@contextlib.contextmanager
def signals_interrupt() -> Iterator[None]:
    """Turn SIGTERM and SIGHUP into Interrupted while the block runs."""
    previous = {}
    for signum in HANDLED_SIGNALS:
        previous[signum] = signal.signal(signum, _raise_interrupted)
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
