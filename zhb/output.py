"""Console status lines and the timestamped log file."""
from __future__ import annotations

import logging
import os
import re
import sys

# ANSI color codes (respect NO_COLOR convention: https://no-color.org)
if os.environ.get("NO_COLOR") is not None:
    GREEN = RED = YELLOW = BLUE = CYAN = RESET = ""
else:
    GREEN = "\033[32m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    CYAN = "\033[36m"
    RESET = "\033[0m"

LOGGER_NAME = "zhb"
_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")

log = logging.getLogger(LOGGER_NAME)
_debug_enabled = False


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


class _PlainFormatter(logging.Formatter):
    """Timestamped lines with color codes removed."""

    def __init__(self):
        super().__init__("%(asctime)s - %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        return strip_ansi(super().format(record))


def setup_logging(log_file: str | None, debug: bool = False) -> None:
    """Attach the append-only file handler to the 'zhb' logger.

    A log file that cannot be opened only produces a warning; the run goes on.
    """
    global _debug_enabled
    _debug_enabled = debug
    for handler in log.handlers.copy():
        log.removeHandler(handler)
        handler.close()
    log.setLevel(logging.DEBUG if debug else logging.INFO)
    log.propagate = False
    if not log_file:
        log.addHandler(logging.NullHandler())
        return
    try:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    except OSError as e:
        log.addHandler(logging.NullHandler())
        warning(f"Cannot open log file {log_file}: {e}")
        return
    handler.setFormatter(_PlainFormatter())
    log.addHandler(handler)


def status(msg: str) -> None:
    print(f"{GREEN}[OK] {msg}{RESET}")
    log.info(msg)


def info(msg: str) -> None:
    print(f"{BLUE}[INFO] {msg}{RESET}")
    log.info(msg)


def warning(msg: str) -> None:
    print(f"{YELLOW}[WARNING] {msg}{RESET}", file=sys.stderr)
    log.warning(msg)


def error(msg: str) -> None:
    print(f"{RED}[ERROR] {msg}{RESET}", file=sys.stderr)
    log.error(msg)


def debug(msg: str) -> None:
    if _debug_enabled:
        print(f"{CYAN}[DEBUG] {msg}{RESET}")
    log.debug(msg)


def header(title: str) -> None:
    print(f"\n{'=' * 60}")
    print(title)
    print("=" * 60)
    log.info(title)
